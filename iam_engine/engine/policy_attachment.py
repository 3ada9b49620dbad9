"""
Policy Attachment Resolver for the IAM Engine.

The backend policy resource accepts a single principal while the
configuration lets a policy list several users, groups and applications.
This module narrows the lists to one principal, first element wins, and
reports every discarded entry.
"""

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from ..models import EntityKind, Policy

logger = logging.getLogger(__name__)


class PrincipalSelection(BaseModel):
    """Outcome of narrowing a policy's principal lists."""
    kind: Optional[EntityKind] = Field(None, description="users, groups or applications; None when principal-less")
    reference: Optional[str] = Field(None, description="Selected entry, symbolic key or raw user id")
    discarded: List[str] = Field(default_factory=list)
    diagnostics: List[str] = Field(default_factory=list)

    @property
    def principal_less(self) -> bool:
        return self.kind is None


def select_principal(policy_key: str, policy: Policy) -> PrincipalSelection:
    """
    Pick the single principal a policy is attached to.

    Precedence is user list, then group list, then application list; within
    a list the first entry wins. Every other entry is discarded with a
    diagnostic. A policy with no principal and no_principal unset is still
    provisioned principal-less, with a warning.

    Args:
        policy_key: Symbolic key of the policy (for diagnostics)
        policy: Policy record

    Returns:
        PrincipalSelection describing the attachment
    """
    candidates = [
        (EntityKind.USER, policy.user_ids),
        (EntityKind.GROUP, policy.group_keys),
        (EntityKind.APPLICATION, policy.application_keys),
    ]

    selection = PrincipalSelection()
    for kind, entries in candidates:
        if not entries:
            continue
        if selection.kind is None:
            selection.kind = kind
            selection.reference = entries[0]
            dropped = entries[1:]
        else:
            dropped = entries
        for entry in dropped:
            selection.discarded.append(f"{kind.value}.{entry}")

    if selection.discarded:
        message = (
            f"Policy {policy_key} attaches to {selection.kind.value}.{selection.reference} only; "
            f"discarded: {', '.join(selection.discarded)}"
        )
        selection.diagnostics.append(message)
        logger.warning(message)

    if selection.kind is not None and policy.no_principal:
        message = f"Policy {policy_key} sets no_principal but lists principals; no_principal is ignored"
        selection.diagnostics.append(message)
        logger.warning(message)

    if selection.kind is None and not policy.no_principal:
        message = (
            f"Policy {policy_key} names no principal and does not set no_principal; "
            f"provisioning it principal-less"
        )
        selection.diagnostics.append(message)
        logger.warning(message)

    return selection
