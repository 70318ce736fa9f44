"""
SCIM 2.0 provisioning service.

Maps SCIM Users onto directory users plus their organization membership,
and SCIM Groups onto organization teams. Deleting or deactivating a SCIM
user removes the membership and keeps the account; a deactivated user
stays readable and is restored by setting ``active`` back to true.
Accounts that also belong to other organizations keep their userName
and name.

All failures are raised as ``SCIMError`` so the HTTP layer can render them
with the SCIM error schema. PATCH requests are fully validated before any
change is written.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple, TypeVar

from pydantic import ValidationError

from src.auth.sso.helpers import scim_base_url
from src.config import get_settings
from src.scim.filters import SCIMFilter, matches, parse_filter
from src.scim.types import (
    GROUP_SCHEMA,
    LIST_RESPONSE_SCHEMA,
    PATCH_OP_SCHEMA,
    USER_SCHEMA,
    SCIMError,
    SCIMGroupRequest,
    SCIMNotFoundError,
    SCIMPatchOperation,
    SCIMPatchRequest,
    SCIMUserRequest,
)
from src.storage.directory import DirectoryStore, new_id
from src.types.directory import Group, Membership, User
from src.types.security import OrganizationRole

logger = logging.getLogger(__name__)

T = TypeVar("T")

PATCH_OPERATIONS = ("add", "remove", "replace")

_MEMBER_FILTER_PREFIX = "members[value eq "


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _invalid_value(detail: str) -> SCIMError:
    return SCIMError(400, detail, "invalidValue")


def _invalid_syntax(detail: str) -> SCIMError:
    return SCIMError(400, detail, "invalidSyntax")


def _invalid_path(path: Optional[str]) -> SCIMError:
    return SCIMError(400, f"Unsupported attribute path: {path}", "invalidPath")


def _parse_body(model, body: Any):
    if not isinstance(body, dict):
        raise _invalid_syntax("Request body must be a JSON object")
    try:
        return model.model_validate(body)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise _invalid_value(f"Invalid value for {location or 'body'}: {first.get('msg')}")


def _as_bool(value: Any) -> bool:
    # Some IdPs send booleans as strings ("False")
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise _invalid_value("active must be a boolean")


def _as_string(value: Any, attribute: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise _invalid_value(f"{attribute} must be a non-empty string")
    return value.strip()


def _split_name(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    parts = (name or "").split()
    if not parts:
        return None, None
    return parts[0], " ".join(parts[1:]) or None


def _join_name(given: Optional[str], family: Optional[str]) -> Optional[str]:
    joined = " ".join(p for p in (given, family) if p)
    return joined or None


@dataclass
class _UserChanges:
    """Accumulated effect of a user PATCH request."""

    name: Optional[str] = None
    name_set: bool = False
    email: Optional[str] = None
    active: Optional[bool] = None


@dataclass
class _GroupChanges:
    display_name: Optional[str] = None
    member_ids: List[str] = field(default_factory=list)


class SCIMService:
    """SCIM Users and Groups for one directory store."""

    def __init__(
        self,
        store: DirectoryStore,
        app_url: Optional[str] = None,
        page_size: Optional[int] = None,
    ):
        settings = get_settings()
        self.store = store
        self.app_url = (app_url or settings.app.app_url).rstrip("/")
        self.page_size = page_size or settings.scim.scim_page_size

    # -------------------------------------------------------------------------
    # Shared helpers
    # -------------------------------------------------------------------------

    def base_url(self, organization_id: str) -> str:
        return scim_base_url(self.app_url, organization_id)

    def _window(
        self, resources: List[T], start_index: Optional[int], count: Optional[int]
    ) -> Tuple[int, List[T]]:
        """
        Apply 1-based ``startIndex`` and ``count``.

        startIndex below 1 is treated as 1; count is clamped to
        0..page_size and defaults to page_size.
        """
        start = max(1, start_index or 1)
        size = self.page_size if count is None else max(0, min(count, self.page_size))
        return start, resources[start - 1:start - 1 + size]

    @staticmethod
    def _list_response(
        total: int, start: int, resources: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        return {
            "schemas": [LIST_RESPONSE_SCHEMA],
            "totalResults": total,
            "startIndex": start,
            "itemsPerPage": len(resources),
            "Resources": resources,
        }

    @staticmethod
    def _require_patch_schema(body: Any) -> SCIMPatchRequest:
        if not isinstance(body, dict):
            raise _invalid_syntax("Request body must be a JSON object")
        schemas = body.get("schemas")
        if not isinstance(schemas, list) or PATCH_OP_SCHEMA not in schemas:
            raise _invalid_syntax(f"schemas must include {PATCH_OP_SCHEMA}")
        operations = body.get("Operations")
        if not isinstance(operations, list) or not operations:
            raise _invalid_syntax("Operations must be a non-empty list")
        try:
            request = SCIMPatchRequest.model_validate(body)
        except ValidationError:
            raise _invalid_syntax("Malformed PATCH operation")
        for operation in request.operations:
            if operation.op.lower() not in PATCH_OPERATIONS:
                raise _invalid_syntax(f"Unsupported PATCH operation: {operation.op}")
        return request

    # -------------------------------------------------------------------------
    # Users
    # -------------------------------------------------------------------------

    def user_resource(
        self,
        organization_id: str,
        user: User,
        membership: Optional[Membership],
    ) -> Dict[str, Any]:
        """Render a directory user as a SCIM User."""
        given, family = _split_name(user.name)
        last_modified = user.updated_at
        if membership is not None and membership.updated_at > last_modified:
            last_modified = membership.updated_at

        resource: Dict[str, Any] = {
            "schemas": [USER_SCHEMA],
            "id": user.id,
            "userName": user.email,
            "name": {
                key: value
                for key, value in (
                    ("formatted", user.name),
                    ("givenName", given),
                    ("familyName", family),
                )
                if value
            },
            "displayName": user.name or user.email,
            "emails": [{"value": user.email, "type": "work", "primary": True}],
            "active": membership is not None,
            "meta": {
                "resourceType": "User",
                "created": _iso(user.created_at),
                "lastModified": _iso(last_modified),
                "location": f"{self.base_url(organization_id)}/Users/{user.id}",
            },
        }
        if user.image:
            resource["photos"] = [{"value": user.image, "type": "photo", "primary": True}]
        return resource

    @staticmethod
    def _user_attribute_values(user: User, attribute: str) -> List[Any]:
        given, family = _split_name(user.name)
        if attribute in ("username", "emails.value", 'emails[type eq "work"].value', "emails"):
            return [user.email]
        if attribute == "displayname":
            return [user.name or user.email]
        if attribute == "name.formatted":
            return [user.name]
        if attribute == "name.givenname":
            return [given]
        if attribute == "name.familyname":
            return [family]
        if attribute == "id":
            return [user.id]
        if attribute == "active":
            return [True]
        raise SCIMError(400, f"Unsupported filter attribute: {attribute}", "invalidFilter")

    async def _get_member(
        self, organization_id: str, user_id: str
    ) -> Tuple[User, Optional[Membership]]:
        """
        A provisioned user and their membership.

        Users this organization deactivated are still found, with no
        membership, so they can be read and reactivated.
        """
        membership = await self.store.get_membership(organization_id, user_id)
        known = membership is not None or (
            await self.store.get_deactivated_membership(organization_id, user_id) is not None
        )
        user = await self.store.get_user(user_id) if known else None
        if user is None:
            raise SCIMNotFoundError("User")
        return user, membership

    async def _ensure_identity_editable(
        self,
        organization_id: str,
        user: User,
        email: str,
        name: Optional[str],
    ) -> None:
        """Accounts shared with other organizations keep their userName and name."""
        if email == user.email and name == user.name:
            return
        memberships = await self.store.list_memberships_for_user(user.id)
        if any(m.organization_id != organization_id for m in memberships):
            raise SCIMError(
                409,
                "User also belongs to other organizations; userName and name cannot be changed",
                "uniqueness",
            )

    async def _set_active(
        self,
        organization_id: str,
        user_id: str,
        membership: Optional[Membership],
        active: Optional[bool],
    ) -> Optional[Membership]:
        """Apply an ``active`` value; None leaves the state as it is."""
        if active is False:
            if membership is not None:
                await self.store.deactivate_membership(organization_id, user_id)
                logger.info(f"SCIM deactivated user {user_id} in org {organization_id}")
            return None
        if membership is None:
            if not active:
                return None
            logger.info(f"SCIM reactivated user {user_id} in org {organization_id}")
            return await self.store.reactivate_membership(organization_id, user_id)
        await self.store.touch_membership(organization_id, user_id)
        return await self.store.get_membership(organization_id, user_id)

    async def list_users(
        self,
        organization_id: str,
        filter_expression: Optional[str] = None,
        start_index: Optional[int] = None,
        count: Optional[int] = None,
    ) -> Dict[str, Any]:
        scim_filter = parse_filter(filter_expression)
        members = await self.store.list_members(organization_id)
        if scim_filter is not None:
            members = [
                (user, membership)
                for user, membership in members
                if matches(scim_filter, self._user_attribute_values(user, scim_filter.attribute))
            ]
        start, page = self._window(members, start_index, count)
        return self._list_response(
            len(members),
            start,
            [self.user_resource(organization_id, user, m) for user, m in page],
        )

    async def get_user(self, organization_id: str, user_id: str) -> Dict[str, Any]:
        user, membership = await self._get_member(organization_id, user_id)
        return self.user_resource(organization_id, user, membership)

    async def create_user(self, organization_id: str, body: Any) -> Dict[str, Any]:
        request: SCIMUserRequest = _parse_body(SCIMUserRequest, body)
        email = request.resolved_email()
        if not email:
            raise _invalid_value("userName or a primary email must be an email address")

        user = await self.store.get_user_by_email(email)
        membership: Optional[Membership] = None
        if user is not None:
            if await self.store.get_membership(organization_id, user.id):
                raise SCIMError(409, "User already exists in this organization", "uniqueness")
            membership = await self.store.reactivate_membership(organization_id, user.id)
        else:
            user = await self.store.create_user(email, name=request.resolved_name())

        if membership is None:
            membership = await self.store.add_membership(
                organization_id, user.id, OrganizationRole.MEMBER
            )
        logger.info(f"SCIM provisioned user {user.id} into org {organization_id}")
        return self.user_resource(organization_id, user, membership)

    async def replace_user(
        self, organization_id: str, user_id: str, body: Any
    ) -> Dict[str, Any]:
        user, membership = await self._get_member(organization_id, user_id)
        request: SCIMUserRequest = _parse_body(SCIMUserRequest, body)
        email = request.resolved_email()
        if not email:
            raise _invalid_value("userName or a primary email must be an email address")

        name = request.resolved_name()
        await self._ensure_email_available(email, user.id)
        await self._ensure_identity_editable(organization_id, user, email, name)
        if email != user.email or name != user.name:
            user.email = email
            user.name = name
            user = await self.store.update_user(user)

        membership = await self._set_active(organization_id, user_id, membership, request.active)
        return self.user_resource(organization_id, user, membership)

    async def _ensure_email_available(self, email: str, user_id: str) -> None:
        holder = await self.store.get_user_by_email(email)
        if holder is not None and holder.id != user_id:
            raise SCIMError(409, "userName is already in use", "uniqueness")

    def _apply_user_operation(
        self, user: User, operation: SCIMPatchOperation, changes: _UserChanges
    ) -> None:
        op = operation.op.lower()
        path = (operation.path or "").strip().lower()
        value = operation.value

        current_name = changes.name if changes.name_set else user.name

        if not path:
            if op == "remove" or not isinstance(value, dict):
                raise _invalid_syntax("An operation without a path needs an object value")
            for key, item in value.items():
                self._apply_user_operation(
                    user, SCIMPatchOperation(op=op, path=key, value=item), changes
                )
            return

        if path == "active":
            changes.active = False if op == "remove" else _as_bool(value)
            return

        if path in ("displayname", "name.formatted"):
            changes.name = None if op == "remove" else _as_string(value, path)
            changes.name_set = True
            return

        if path == "name" and op != "remove":
            if not isinstance(value, dict):
                raise _invalid_value("name must be an object")
            given, family = _split_name(current_name)
            changes.name = _join_name(
                value.get("givenName", given), value.get("familyName", family)
            ) or value.get("formatted")
            changes.name_set = True
            return

        if path in ("name.givenname", "name.familyname") and op != "remove":
            given, family = _split_name(current_name)
            if path == "name.givenname":
                given = _as_string(value, path)
            else:
                family = _as_string(value, path)
            changes.name = _join_name(given, family)
            changes.name_set = True
            return

        if path in ("username", 'emails[type eq "work"].value') and op != "remove":
            email = _as_string(value, path).lower()
            if "@" not in email:
                raise _invalid_value("userName must be an email address")
            changes.email = email
            return

        raise _invalid_path(operation.path)

    async def patch_user(
        self, organization_id: str, user_id: str, body: Any
    ) -> Dict[str, Any]:
        request = self._require_patch_schema(body)
        user, membership = await self._get_member(organization_id, user_id)

        changes = _UserChanges()
        for operation in request.operations:
            self._apply_user_operation(user, operation, changes)

        email = changes.email or user.email
        name = changes.name if changes.name_set else user.name
        if email != user.email:
            await self._ensure_email_available(email, user.id)
        await self._ensure_identity_editable(organization_id, user, email, name)

        if email != user.email or name != user.name:
            user.email = email
            user.name = name
            user = await self.store.update_user(user)

        membership = await self._set_active(organization_id, user_id, membership, changes.active)
        return self.user_resource(organization_id, user, membership)

    async def delete_user(self, organization_id: str, user_id: str) -> None:
        if not await self.store.remove_membership(organization_id, user_id):
            raise SCIMNotFoundError("User")
        logger.info(f"SCIM removed user {user_id} from org {organization_id}")

    # -------------------------------------------------------------------------
    # Groups
    # -------------------------------------------------------------------------

    async def group_resource(self, organization_id: str, group: Group) -> Dict[str, Any]:
        base = self.base_url(organization_id)
        members = []
        for member_id in group.member_ids:
            user = await self.store.get_user(member_id)
            if user is None:
                continue
            members.append(
                {
                    "value": user.id,
                    "display": user.name or user.email,
                    "type": "User",
                    "$ref": f"{base}/Users/{user.id}",
                }
            )
        return {
            "schemas": [GROUP_SCHEMA],
            "id": group.id,
            "displayName": group.display_name,
            "members": members,
            "meta": {
                "resourceType": "Group",
                "created": _iso(group.created_at),
                "lastModified": _iso(group.updated_at),
                "location": f"{base}/Groups/{group.id}",
            },
        }

    @staticmethod
    def _group_attribute_values(group: Group, attribute: str) -> List[Any]:
        if attribute == "displayname":
            return [group.display_name]
        if attribute == "id":
            return [group.id]
        if attribute in ("members", "members.value"):
            return list(group.member_ids)
        raise SCIMError(400, f"Unsupported filter attribute: {attribute}", "invalidFilter")

    async def _get_group(self, organization_id: str, group_id: str) -> Group:
        group = await self.store.get_group(organization_id, group_id)
        if group is None:
            raise SCIMNotFoundError("Group")
        return group

    async def _resolve_members(self, organization_id: str, member_ids: Iterable[str]) -> List[str]:
        resolved: List[str] = []
        for member_id in member_ids:
            if member_id in resolved:
                continue
            if await self.store.get_membership(organization_id, member_id) is None:
                raise _invalid_value(f"User {member_id} is not a member of this organization")
            resolved.append(member_id)
        return resolved

    async def _ensure_group_name_available(
        self, organization_id: str, display_name: str, group_id: Optional[str] = None
    ) -> None:
        existing = await self.store.get_group_by_name(organization_id, display_name)
        if existing is not None and existing.id != group_id:
            raise SCIMError(409, "Group with this name already exists", "uniqueness")

    async def list_groups(
        self,
        organization_id: str,
        filter_expression: Optional[str] = None,
        start_index: Optional[int] = None,
        count: Optional[int] = None,
    ) -> Dict[str, Any]:
        scim_filter: Optional[SCIMFilter] = parse_filter(filter_expression)
        groups = await self.store.list_groups(organization_id)
        if scim_filter is not None:
            groups = [
                g
                for g in groups
                if matches(scim_filter, self._group_attribute_values(g, scim_filter.attribute))
            ]

        start, page = self._window(groups, start_index, count)
        return self._list_response(
            len(groups),
            start,
            [await self.group_resource(organization_id, g) for g in page],
        )

    async def get_group(self, organization_id: str, group_id: str) -> Dict[str, Any]:
        group = await self._get_group(organization_id, group_id)
        return await self.group_resource(organization_id, group)

    async def create_group(self, organization_id: str, body: Any) -> Dict[str, Any]:
        request: SCIMGroupRequest = _parse_body(SCIMGroupRequest, body)
        display_name = request.display_name.strip()
        await self._ensure_group_name_available(organization_id, display_name)
        member_ids = await self._resolve_members(
            organization_id, (m.value for m in request.members)
        )
        group = await self.store.save_group(
            Group(
                id=new_id(),
                organization_id=organization_id,
                display_name=display_name,
                member_ids=member_ids,
            )
        )
        logger.info(f"SCIM created group {group.id} in org {organization_id}")
        return await self.group_resource(organization_id, group)

    async def replace_group(
        self, organization_id: str, group_id: str, body: Any
    ) -> Dict[str, Any]:
        group = await self._get_group(organization_id, group_id)
        request: SCIMGroupRequest = _parse_body(SCIMGroupRequest, body)
        display_name = request.display_name.strip()
        await self._ensure_group_name_available(organization_id, display_name, group.id)
        group.display_name = display_name
        group.member_ids = await self._resolve_members(
            organization_id, (m.value for m in request.members)
        )
        group = await self.store.save_group(group)
        return await self.group_resource(organization_id, group)

    @staticmethod
    def _member_values(value: Any) -> List[str]:
        items = value if isinstance(value, list) else [value]
        member_ids = []
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("value"), str):
                raise _invalid_value("members entries must be objects with a value")
            member_ids.append(item["value"])
        return member_ids

    async def patch_group(
        self, organization_id: str, group_id: str, body: Any
    ) -> Dict[str, Any]:
        request = self._require_patch_schema(body)
        group = await self._get_group(organization_id, group_id)

        changes = _GroupChanges(member_ids=list(group.member_ids))
        for operation in request.operations:
            op = operation.op.lower()
            raw_path = (operation.path or "").strip()
            path = raw_path.lower()
            value = operation.value

            if not path and op in ("add", "replace") and isinstance(value, dict):
                if "displayName" in value:
                    changes.display_name = _as_string(value["displayName"], "displayName")
                if "members" in value:
                    added = self._member_values(value["members"])
                    if op == "replace":
                        changes.member_ids = []
                    changes.member_ids.extend(m for m in added if m not in changes.member_ids)
            elif path == "displayname" and op in ("add", "replace"):
                changes.display_name = _as_string(value, "displayName")
            elif path == "members" and op == "add":
                added = self._member_values(value)
                changes.member_ids.extend(m for m in added if m not in changes.member_ids)
            elif path == "members" and op == "replace":
                changes.member_ids = list(dict.fromkeys(self._member_values(value)))
            elif path == "members" and op == "remove":
                if value is None:
                    changes.member_ids = []
                else:
                    removed = set(self._member_values(value))
                    changes.member_ids = [m for m in changes.member_ids if m not in removed]
            elif op == "remove" and path.startswith(_MEMBER_FILTER_PREFIX) and path.endswith("]"):
                member_filter = parse_filter(raw_path[len("members["):-1])
                if member_filter is None or member_filter.operator != "eq":
                    raise _invalid_path(operation.path)
                changes.member_ids = [
                    m for m in changes.member_ids if m != member_filter.value
                ]
            else:
                raise _invalid_path(operation.path)

        if changes.display_name is not None:
            await self._ensure_group_name_available(
                organization_id, changes.display_name, group.id
            )
            group.display_name = changes.display_name

        new_members = [m for m in changes.member_ids if m not in group.member_ids]
        await self._resolve_members(organization_id, new_members)
        group.member_ids = changes.member_ids

        group = await self.store.save_group(group)
        return await self.group_resource(organization_id, group)

    async def delete_group(self, organization_id: str, group_id: str) -> None:
        if not await self.store.delete_group(organization_id, group_id):
            raise SCIMNotFoundError("Group")
        logger.info(f"SCIM deleted group {group_id} in org {organization_id}")
