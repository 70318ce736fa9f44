"""
Assemble the per-organization security contexts for a user.
"""

import logging
from typing import List

from src.storage.directory import DirectoryStore
from src.types.security import UserSecurityContext

logger = logging.getLogger(__name__)


async def load_security_contexts(
    store: DirectoryStore, user_id: str
) -> List[UserSecurityContext]:
    """
    One context per membership, carrying that organization's saved policy
    (None when it never saved one) and active SSO configuration.
    """
    contexts = []
    for membership in await store.list_memberships_for_user(user_id):
        organization = await store.get_organization(membership.organization_id)
        if organization is None:
            logger.warning(
                f"Membership of user {user_id} references missing org "
                f"{membership.organization_id}"
            )
            continue
        contexts.append(
            UserSecurityContext(
                organization_id=organization.id,
                organization_slug=organization.slug,
                role=membership.role,
                security_policy=await store.get_security_policy(organization.id),
                sso_config=await store.get_sso_config(organization.id),
            )
        )
    return contexts
