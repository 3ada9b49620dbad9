"""
Membership Flattener for the IAM Engine.

Expands group -> application and group -> user declarations into individual
membership records with stable composite keys.
"""

import logging
from typing import Dict, Mapping

from ..models import Group, GroupMembership, MemberKind

logger = logging.getLogger(__name__)

USER_ID_PREFIX_LENGTH = 8


def application_membership_key(group_key: str, application_key: str) -> str:
    return f"{group_key}-app-{application_key}"


def user_membership_key(group_key: str, user_entry: str) -> str:
    # Prefix collisions between two user ids in the same group collapse to one record.
    return f"{group_key}-user-{user_entry[:USER_ID_PREFIX_LENGTH]}"


def flatten_memberships(groups: Mapping[str, Group]) -> Dict[str, GroupMembership]:
    """
    Flatten group membership declarations into join records.

    Groups with external membership produce nothing. The same composite key
    always collapses to a single record, so flattening the same input twice
    yields the same set of keys.

    Args:
        groups: Group records keyed by symbolic name

    Returns:
        Membership records keyed by composite key
    """
    memberships: Dict[str, GroupMembership] = {}

    for group_key in sorted(groups):
        group = groups[group_key]
        if group.external_membership:
            logger.debug(f"Skipping membership of group {group_key}: managed externally")
            continue

        for application_key in group.application_keys:
            key = application_membership_key(group_key, application_key)
            memberships.setdefault(key, GroupMembership(
                key=key,
                group_key=group_key,
                member_kind=MemberKind.APPLICATION,
                member=application_key,
            ))

        for user_entry in group.user_ids:
            key = user_membership_key(group_key, user_entry)
            existing = memberships.get(key)
            if existing is not None:
                if existing.member != user_entry:
                    logger.warning(
                        f"Membership key {key} already used by user {existing.member[:8]}...; "
                        f"second user with the same prefix in group {group_key} is dropped"
                    )
                continue
            memberships[key] = GroupMembership(
                key=key,
                group_key=group_key,
                member_kind=MemberKind.USER,
                member=user_entry,
            )

    return memberships
