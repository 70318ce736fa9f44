"""
Tests for SCIM 2.0 provisioning: the service and the /scim/v2 endpoints.
"""

import asyncio

import pytest

from conftest import APP_URL
from src.scim.auth import (
    extract_bearer_token,
    hash_scim_token,
    issue_scim_token,
    revoke_scim_token,
    verify_scim_token,
)
from src.scim.service import SCIMService
from src.scim.types import (
    ERROR_SCHEMA,
    LIST_RESPONSE_SCHEMA,
    PATCH_OP_SCHEMA,
    USER_SCHEMA,
    SCIMError,
)
from src.storage.directory import InMemoryDirectoryStore
from src.types.directory import Organization
from src.types.security import OrganizationRole

ORG_ID = "org-acme"


def user_body(email, given="Jane", family="Doe", **extra):
    body = {
        "schemas": [USER_SCHEMA],
        "userName": email,
        "name": {"givenName": given, "familyName": family},
        "emails": [{"value": email, "type": "work", "primary": True}],
        "active": True,
    }
    body.update(extra)
    return body


def patch_body(*operations):
    return {"schemas": [PATCH_OP_SCHEMA], "Operations": list(operations)}


@pytest.fixture
def scim_store():
    store = InMemoryDirectoryStore()
    asyncio.run(store.save_organization(Organization(id=ORG_ID, slug="acme", name="Acme")))
    return store


@pytest.fixture
def service(scim_store):
    return SCIMService(scim_store, app_url=APP_URL, page_size=2)


# =============================================================================
# Tokens
# =============================================================================


class TestSCIMTokens:
    """Tests for bearer token issue, verification and revocation."""

    def test_extract_bearer_token(self):
        assert extract_bearer_token("Bearer abc") == "abc"
        assert extract_bearer_token("bearer   abc ") == "abc"
        assert extract_bearer_token("Basic abc") is None
        assert extract_bearer_token("Bearer ") is None
        assert extract_bearer_token(None) is None

    @pytest.mark.asyncio
    async def test_only_digest_is_stored(self):
        store = InMemoryDirectoryStore()
        organization = await store.save_organization(
            Organization(id=ORG_ID, slug="acme", name="Acme")
        )
        token = await issue_scim_token(store, organization)
        stored = await store.get_organization(ORG_ID)

        assert stored.scim.enabled
        assert stored.scim.bearer_token_hash == hash_scim_token(token)
        assert token not in stored.model_dump_json()
        assert verify_scim_token(stored, token)
        assert not verify_scim_token(stored, token + "x")

    @pytest.mark.asyncio
    async def test_rotation_and_revocation(self):
        store = InMemoryDirectoryStore()
        organization = await store.save_organization(
            Organization(id=ORG_ID, slug="acme", name="Acme")
        )
        old = await issue_scim_token(store, organization)
        new = await issue_scim_token(store, organization)
        stored = await store.get_organization(ORG_ID)
        assert not verify_scim_token(stored, old)
        assert verify_scim_token(stored, new)

        await revoke_scim_token(store, organization)
        stored = await store.get_organization(ORG_ID)
        assert not stored.scim.enabled
        assert not verify_scim_token(stored, new)

    def test_unknown_organization(self):
        assert not verify_scim_token(None, "token")


# =============================================================================
# Service: Users
# =============================================================================


class TestSCIMUsers:
    """Tests for SCIM user provisioning."""

    @pytest.mark.asyncio
    async def test_create_user(self, service, scim_store):
        resource = await service.create_user(ORG_ID, user_body("Jane@Acme.com"))

        assert resource["userName"] == "jane@acme.com"
        assert resource["name"]["givenName"] == "Jane"
        assert resource["name"]["familyName"] == "Doe"
        assert resource["active"] is True
        assert resource["meta"]["location"] == (
            f"{APP_URL}/scim/v2/{ORG_ID}/Users/{resource['id']}"
        )
        membership = await scim_store.get_membership(ORG_ID, resource["id"])
        assert membership.role == OrganizationRole.MEMBER

    @pytest.mark.asyncio
    async def test_create_links_existing_account(self, service, scim_store):
        """An account from another organization is reused, not duplicated."""
        existing = await scim_store.create_user("jane@acme.com", name="Jane")
        resource = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        assert resource["id"] == existing.id

    @pytest.mark.asyncio
    async def test_create_duplicate_member(self, service):
        await service.create_user(ORG_ID, user_body("jane@acme.com"))
        with pytest.raises(SCIMError) as exc_info:
            await service.create_user(ORG_ID, user_body("jane@acme.com"))

        assert exc_info.value.status == 409
        assert exc_info.value.scim_type == "uniqueness"

    @pytest.mark.asyncio
    async def test_opaque_user_name_uses_primary_email(self, service):
        body = user_body("jdoe")
        body["emails"] = [
            {"value": "other@acme.com"},
            {"value": "jane@acme.com", "primary": True},
        ]
        resource = await service.create_user(ORG_ID, body)
        assert resource["userName"] == "jane@acme.com"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [{"userName": ""}, {"name": {}}, ["not", "an", "object"]])
    async def test_create_rejects_bad_bodies(self, service, body):
        with pytest.raises(SCIMError) as exc_info:
            await service.create_user(ORG_ID, body)
        assert exc_info.value.status == 400

    @pytest.mark.asyncio
    async def test_get_unknown_user(self, service):
        with pytest.raises(SCIMError) as exc_info:
            await service.get_user(ORG_ID, "missing")
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_list_pagination(self, service):
        """startIndex is 1-based and count is clamped to the page size."""
        for email in ("a@acme.com", "b@acme.com", "c@acme.com"):
            await service.create_user(ORG_ID, user_body(email))

        page = await service.list_users(ORG_ID, start_index=2, count=1)
        assert page["schemas"] == [LIST_RESPONSE_SCHEMA]
        assert page["totalResults"] == 3
        assert page["startIndex"] == 2
        assert page["itemsPerPage"] == 1
        assert page["Resources"][0]["userName"] == "b@acme.com"

        clamped = await service.list_users(ORG_ID, start_index=0, count=1000)
        assert clamped["startIndex"] == 1
        assert clamped["itemsPerPage"] == 2

        empty = await service.list_users(ORG_ID, count=-5)
        assert empty["itemsPerPage"] == 0
        assert empty["totalResults"] == 3

    @pytest.mark.asyncio
    async def test_list_with_filter(self, service):
        await service.create_user(ORG_ID, user_body("jane@acme.com"))
        await service.create_user(ORG_ID, user_body("john@acme.com", given="John"))

        result = await service.list_users(ORG_ID, 'userName eq "JANE@acme.com"')
        assert result["totalResults"] == 1
        assert result["Resources"][0]["userName"] == "jane@acme.com"

    @pytest.mark.asyncio
    async def test_list_with_unsupported_attribute(self, service):
        await service.create_user(ORG_ID, user_body("jane@acme.com"))
        with pytest.raises(SCIMError) as exc_info:
            await service.list_users(ORG_ID, 'title eq "Engineer"')
        assert exc_info.value.scim_type == "invalidFilter"

    @pytest.mark.asyncio
    async def test_replace_user(self, service):
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        replaced = await service.replace_user(
            ORG_ID, created["id"], user_body("jane.doe@acme.com", given="Janet")
        )

        assert replaced["userName"] == "jane.doe@acme.com"
        assert replaced["displayName"] == "Janet Doe"

    @pytest.mark.asyncio
    async def test_replace_with_taken_email(self, service):
        await service.create_user(ORG_ID, user_body("john@acme.com"))
        jane = await service.create_user(ORG_ID, user_body("jane@acme.com"))

        with pytest.raises(SCIMError) as exc_info:
            await service.replace_user(ORG_ID, jane["id"], user_body("john@acme.com"))
        assert exc_info.value.status == 409

    @pytest.mark.asyncio
    async def test_replace_inactive_removes_membership(self, service, scim_store):
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        replaced = await service.replace_user(
            ORG_ID, created["id"], user_body("jane@acme.com", active=False)
        )

        assert replaced["active"] is False
        assert await scim_store.get_membership(ORG_ID, created["id"]) is None

    @pytest.mark.asyncio
    async def test_patch_deactivate_with_string_boolean(self, service, scim_store):
        """Azure AD sends active as a string."""
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        resource = await service.patch_user(
            ORG_ID,
            created["id"],
            patch_body({"op": "Replace", "path": "active", "value": "False"}),
        )

        assert resource["active"] is False
        assert await scim_store.get_membership(ORG_ID, created["id"]) is None
        assert await scim_store.get_user(created["id"]) is not None

    @pytest.mark.asyncio
    async def test_patch_without_path(self, service):
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        resource = await service.patch_user(
            ORG_ID,
            created["id"],
            patch_body(
                {
                    "op": "replace",
                    "value": {"name.givenName": "Janet", "userName": "janet@acme.com"},
                }
            ),
        )

        assert resource["name"]["givenName"] == "Janet"
        assert resource["name"]["familyName"] == "Doe"
        assert resource["userName"] == "janet@acme.com"

    @pytest.mark.asyncio
    async def test_patch_requires_patch_schema(self, service, scim_store):
        """A PATCH body without the PatchOp schema changes nothing."""
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        body = {"Operations": [{"op": "replace", "path": "displayName", "value": "X"}]}

        with pytest.raises(SCIMError) as exc_info:
            await service.patch_user(ORG_ID, created["id"], body)

        assert exc_info.value.scim_type == "invalidSyntax"
        assert (await scim_store.get_user(created["id"])).name == "Jane Doe"

    @pytest.mark.asyncio
    async def test_patch_unknown_operation(self, service):
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        with pytest.raises(SCIMError) as exc_info:
            await service.patch_user(
                ORG_ID, created["id"], patch_body({"op": "move", "path": "displayName"})
            )
        assert exc_info.value.scim_type == "invalidSyntax"

    @pytest.mark.asyncio
    async def test_patch_is_all_or_nothing(self, service, scim_store):
        """A bad operation anywhere in the request leaves the user untouched."""
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        body = patch_body(
            {"op": "replace", "path": "displayName", "value": "Renamed"},
            {"op": "replace", "path": "nickName", "value": "JJ"},
        )

        with pytest.raises(SCIMError) as exc_info:
            await service.patch_user(ORG_ID, created["id"], body)

        assert exc_info.value.scim_type == "invalidPath"
        assert (await scim_store.get_user(created["id"])).name == "Jane Doe"

    @pytest.mark.asyncio
    async def test_delete_user_removes_membership_only(self, service, scim_store):
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        await service.delete_user(ORG_ID, created["id"])

        assert await scim_store.get_membership(ORG_ID, created["id"]) is None
        assert await scim_store.get_user(created["id"]) is not None
        with pytest.raises(SCIMError) as exc_info:
            await service.delete_user(ORG_ID, created["id"])
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_deactivated_user_can_be_reactivated(self, service, scim_store):
        """A deactivated user stays readable and comes back with the former role."""
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        await scim_store.add_membership(ORG_ID, created["id"], OrganizationRole.ADMIN)
        await service.patch_user(
            ORG_ID, created["id"], patch_body({"op": "replace", "path": "active", "value": False})
        )

        fetched = await service.get_user(ORG_ID, created["id"])
        assert fetched["active"] is False

        resource = await service.patch_user(
            ORG_ID, created["id"], patch_body({"op": "replace", "value": {"active": True}})
        )

        assert resource["active"] is True
        membership = await scim_store.get_membership(ORG_ID, created["id"])
        assert membership.role == OrganizationRole.ADMIN

    @pytest.mark.asyncio
    async def test_replace_reactivates(self, service, scim_store):
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        await service.replace_user(ORG_ID, created["id"], user_body("jane@acme.com", active=False))

        replaced = await service.replace_user(ORG_ID, created["id"], user_body("jane@acme.com"))

        assert replaced["active"] is True
        assert await scim_store.get_membership(ORG_ID, created["id"]) is not None

    @pytest.mark.asyncio
    async def test_patch_without_active_keeps_user_deactivated(self, service):
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        await service.replace_user(ORG_ID, created["id"], user_body("jane@acme.com", active=False))

        resource = await service.patch_user(
            ORG_ID,
            created["id"],
            patch_body({"op": "replace", "path": "displayName", "value": "Janet Doe"}),
        )

        assert resource["active"] is False
        assert resource["displayName"] == "Janet Doe"

    @pytest.mark.asyncio
    async def test_delete_deactivated_user(self, service):
        created = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        await service.replace_user(ORG_ID, created["id"], user_body("jane@acme.com", active=False))

        await service.delete_user(ORG_ID, created["id"])

        with pytest.raises(SCIMError) as exc_info:
            await service.get_user(ORG_ID, created["id"])
        assert exc_info.value.status == 404

    @pytest.mark.asyncio
    async def test_shared_account_identity_cannot_be_changed(self, service, scim_store):
        """A token for one organization cannot rename an account another organization uses."""
        await scim_store.save_organization(Organization(id="org-b", slug="b", name="B"))
        ceo = await scim_store.create_user("ceo@b.com", name="Bea Boss")
        await scim_store.add_membership("org-b", ceo.id, OrganizationRole.OWNER)

        linked = await service.create_user(ORG_ID, user_body("ceo@b.com", given="Bea", family="Boss"))
        assert linked["id"] == ceo.id

        with pytest.raises(SCIMError) as exc_info:
            await service.replace_user(ORG_ID, ceo.id, user_body("hijacked@acme.com"))
        assert exc_info.value.status == 409
        assert exc_info.value.scim_type == "uniqueness"

        with pytest.raises(SCIMError):
            await service.patch_user(
                ORG_ID,
                ceo.id,
                patch_body({"op": "replace", "path": "userName", "value": "hijacked@acme.com"}),
            )
        with pytest.raises(SCIMError):
            await service.patch_user(
                ORG_ID,
                ceo.id,
                patch_body({"op": "replace", "path": "displayName", "value": "Someone Else"}),
            )

        stored = await scim_store.get_user(ceo.id)
        assert stored.email == "ceo@b.com"
        assert stored.name == "Bea Boss"

    @pytest.mark.asyncio
    async def test_shared_account_can_still_be_deactivated(self, service, scim_store):
        await scim_store.save_organization(Organization(id="org-b", slug="b", name="B"))
        ceo = await scim_store.create_user("ceo@b.com", name="Bea Boss")
        await scim_store.add_membership("org-b", ceo.id, OrganizationRole.OWNER)
        await service.create_user(ORG_ID, user_body("ceo@b.com", given="Bea", family="Boss"))

        resource = await service.replace_user(
            ORG_ID, ceo.id, user_body("ceo@b.com", given="Bea", family="Boss", active=False)
        )

        assert resource["active"] is False
        assert await scim_store.get_membership("org-b", ceo.id) is not None


# =============================================================================
# Service: Groups
# =============================================================================


class TestSCIMGroups:
    """Tests for SCIM group provisioning."""

    @pytest.mark.asyncio
    async def test_create_group_with_members(self, service):
        jane = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        group = await service.create_group(
            ORG_ID, {"displayName": "Engineering", "members": [{"value": jane["id"]}]}
        )

        assert group["displayName"] == "Engineering"
        assert group["members"][0]["value"] == jane["id"]
        assert group["members"][0]["display"] == "Jane Doe"

    @pytest.mark.asyncio
    async def test_members_must_belong_to_organization(self, service, scim_store):
        outsider = await scim_store.create_user("outsider@globex.com")
        with pytest.raises(SCIMError) as exc_info:
            await service.create_group(
                ORG_ID, {"displayName": "Eng", "members": [{"value": outsider.id}]}
            )

        assert exc_info.value.scim_type == "invalidValue"
        assert await scim_store.list_groups(ORG_ID) == []

    @pytest.mark.asyncio
    async def test_duplicate_group_name(self, service):
        await service.create_group(ORG_ID, {"displayName": "Engineering"})
        with pytest.raises(SCIMError) as exc_info:
            await service.create_group(ORG_ID, {"displayName": "Engineering"})
        assert exc_info.value.status == 409

    @pytest.mark.asyncio
    async def test_patch_members(self, service):
        jane = await service.create_user(ORG_ID, user_body("jane@acme.com"))
        john = await service.create_user(ORG_ID, user_body("john@acme.com", given="John"))
        group = await service.create_group(ORG_ID, {"displayName": "Engineering"})

        added = await service.patch_group(
            ORG_ID,
            group["id"],
            patch_body(
                {
                    "op": "add",
                    "path": "members",
                    "value": [{"value": jane["id"]}, {"value": john["id"]}],
                }
            ),
        )
        assert {m["value"] for m in added["members"]} == {jane["id"], john["id"]}

        removed = await service.patch_group(
            ORG_ID,
            group["id"],
            patch_body({"op": "remove", "path": f'members[value eq "{jane["id"]}"]'}),
        )
        assert [m["value"] for m in removed["members"]] == [john["id"]]

    @pytest.mark.asyncio
    async def test_patch_rename_without_path(self, service):
        group = await service.create_group(ORG_ID, {"displayName": "Engineering"})
        patched = await service.patch_group(
            ORG_ID,
            group["id"],
            patch_body({"op": "replace", "value": {"displayName": "Platform"}}),
        )
        assert patched["displayName"] == "Platform"

    @pytest.mark.asyncio
    async def test_patch_group_all_or_nothing(self, service, scim_store):
        group = await service.create_group(ORG_ID, {"displayName": "Engineering"})
        body = patch_body(
            {"op": "replace", "path": "displayName", "value": "Platform"},
            {"op": "add", "path": "owners", "value": "x"},
        )

        with pytest.raises(SCIMError) as exc_info:
            await service.patch_group(ORG_ID, group["id"], body)

        assert exc_info.value.scim_type == "invalidPath"
        stored = await scim_store.get_group(ORG_ID, group["id"])
        assert stored.display_name == "Engineering"

    @pytest.mark.asyncio
    async def test_list_groups_filter(self, service):
        await service.create_group(ORG_ID, {"displayName": "Engineering"})
        await service.create_group(ORG_ID, {"displayName": "Sales"})

        result = await service.list_groups(ORG_ID, 'displayName eq "sales"')
        assert [g["displayName"] for g in result["Resources"]] == ["Sales"]

    @pytest.mark.asyncio
    async def test_delete_group(self, service):
        group = await service.create_group(ORG_ID, {"displayName": "Engineering"})
        await service.delete_group(ORG_ID, group["id"])
        with pytest.raises(SCIMError):
            await service.get_group(ORG_ID, group["id"])


# =============================================================================
# Routes
# =============================================================================


@pytest.fixture
def scim_token(admin_client, organization):
    response = admin_client.post(f"/organizations/{organization.id}/scim/token")
    assert response.status_code == 200
    return response.json()["token"]


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestSCIMRoutes:
    """Tests for the /scim/v2 endpoints."""

    def test_missing_token(self, client, organization):
        response = client.get(f"/scim/v2/{organization.id}/Users")

        assert response.status_code == 401
        assert response.headers["content-type"].startswith("application/scim+json")
        body = response.json()
        assert body["schemas"] == [ERROR_SCHEMA]
        assert body["status"] == "401"

    def test_wrong_token(self, client, organization, scim_token):
        response = client.get(f"/scim/v2/{organization.id}/Users", headers=bearer("nope"))
        assert response.status_code == 401

    def test_token_is_scoped_to_organization(self, client, directory, organization, scim_token):
        asyncio.run(
            directory.save_organization(Organization(id="org-globex", slug="globex", name="Globex"))
        )
        response = client.get("/scim/v2/org-globex/Users", headers=bearer(scim_token))
        assert response.status_code == 401

    def test_user_lifecycle(self, client, organization, scim_token):
        base = f"/scim/v2/{organization.id}/Users"
        headers = bearer(scim_token)

        created = client.post(base, json=user_body("jane@acme.com"), headers=headers)
        assert created.status_code == 201
        assert created.headers["content-type"].startswith("application/scim+json")
        user_id = created.json()["id"]

        fetched = client.get(f"{base}/{user_id}", headers=headers)
        assert fetched.json()["userName"] == "jane@acme.com"

        listed = client.get(
            base, params={"filter": 'userName eq "jane@acme.com"'}, headers=headers
        ).json()
        assert listed["totalResults"] == 1

        patched = client.patch(
            f"{base}/{user_id}",
            json=patch_body({"op": "replace", "path": "active", "value": False}),
            headers=headers,
        )
        assert patched.status_code == 200
        assert patched.json()["active"] is False

        fetched = client.get(f"{base}/{user_id}", headers=headers)
        assert fetched.status_code == 200
        assert fetched.json()["active"] is False

        reactivated = client.patch(
            f"{base}/{user_id}",
            json=patch_body({"op": "replace", "path": "active", "value": True}),
            headers=headers,
        )
        assert reactivated.status_code == 200
        assert reactivated.json()["active"] is True

    def test_delete_user(self, client, organization, scim_token):
        base = f"/scim/v2/{organization.id}/Users"
        headers = bearer(scim_token)
        user_id = client.post(base, json=user_body("jane@acme.com"), headers=headers).json()["id"]

        response = client.delete(f"{base}/{user_id}", headers=headers)
        assert response.status_code == 204
        assert client.delete(f"{base}/{user_id}", headers=headers).status_code == 404

    def test_duplicate_user(self, client, organization, scim_token):
        base = f"/scim/v2/{organization.id}/Users"
        headers = bearer(scim_token)
        client.post(base, json=user_body("jane@acme.com"), headers=headers)

        response = client.post(base, json=user_body("jane@acme.com"), headers=headers)
        assert response.status_code == 409
        assert response.json()["scimType"] == "uniqueness"

    def test_invalid_json(self, client, organization, scim_token):
        response = client.post(
            f"/scim/v2/{organization.id}/Users",
            content=b"{not json",
            headers={**bearer(scim_token), "Content-Type": "application/scim+json"},
        )
        assert response.status_code == 400
        assert response.json()["scimType"] == "invalidSyntax"

    def test_invalid_filter(self, client, organization, scim_token):
        response = client.get(
            f"/scim/v2/{organization.id}/Users",
            params={"filter": "userName is jane"},
            headers=bearer(scim_token),
        )
        assert response.status_code == 400
        assert response.json()["scimType"] == "invalidFilter"

    def test_invalid_query_parameter(self, client, organization, scim_token):
        response = client.get(
            f"/scim/v2/{organization.id}/Users",
            params={"startIndex": "first"},
            headers=bearer(scim_token),
        )
        assert response.status_code == 400
        assert response.json()["scimType"] == "invalidValue"

    def test_group_lifecycle(self, client, organization, admin_user, scim_token):
        base = f"/scim/v2/{organization.id}/Groups"
        headers = bearer(scim_token)

        created = client.post(
            base,
            json={"displayName": "Admins", "members": [{"value": admin_user.id}]},
            headers=headers,
        )
        assert created.status_code == 201
        group_id = created.json()["id"]

        patched = client.patch(
            f"{base}/{group_id}",
            json=patch_body({"op": "remove", "path": "members"}),
            headers=headers,
        )
        assert patched.json()["members"] == []

        assert client.delete(f"{base}/{group_id}", headers=headers).status_code == 204
        assert client.get(f"{base}/{group_id}", headers=headers).status_code == 404

    def test_revoked_token(self, admin_client, organization, scim_token):
        admin_client.delete(f"/organizations/{organization.id}/scim/token")
        response = admin_client.get(
            f"/scim/v2/{organization.id}/Users", headers=bearer(scim_token)
        )
        assert response.status_code == 401
