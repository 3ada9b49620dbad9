"""
Deletion Protection Gate for the IAM Engine.

The backend's own "prevent destroy" switch cannot be driven by a runtime
flag, so protection is modelled as shadow nodes in the dependency graph.
Each shadow node sits in front of its companion entity and fails whenever
the plan would delete or replace that entity, which blocks the companion.
"""

import logging
from enum import Enum
from typing import Dict, Iterable, Optional

from ..exceptions import ProtectedDeletionAttempt
from ..models import EngineSettings, EntityKind, NodeRef, PlanAction

logger = logging.getLogger(__name__)

PROTECTABLE_KINDS = (EntityKind.APPLICATION, EntityKind.GROUP, EntityKind.POLICY)
DESTRUCTIVE_ACTIONS = (PlanAction.DELETE, PlanAction.REPLACE)


class ProtectionMode(str, Enum):
    PROTECTED = "protected"
    UNPROTECTED = "unprotected"


def shadow_ref(companion: NodeRef) -> NodeRef:
    return NodeRef(EntityKind.DELETION_PROTECTION, str(companion))


def companion_of(shadow: NodeRef) -> NodeRef:
    return NodeRef.parse(shadow.key)


class DeletionProtectionGate:
    """Stateless gate; consults only the current toggle and the current plan."""

    def __init__(self, settings: Optional[EngineSettings] = None):
        self.settings = settings or EngineSettings()

    @property
    def mode(self) -> ProtectionMode:
        if self.settings.deletion_protection:
            return ProtectionMode.PROTECTED
        return ProtectionMode.UNPROTECTED

    def protects(self, kind: EntityKind) -> bool:
        return self.mode == ProtectionMode.PROTECTED and kind in PROTECTABLE_KINDS

    def shadow_nodes(self, refs: Iterable[NodeRef]) -> Dict[NodeRef, NodeRef]:
        """
        Shadow nodes to add to the graph.

        Args:
            refs: Companion nodes in the plan

        Returns:
            Mapping shadow -> companion, empty when protection is off
        """
        return {shadow_ref(ref): ref for ref in refs if self.protects(ref.kind)}

    def enforce(self, companion: NodeRef, action: Optional[PlanAction]):
        """
        Veto destructive actions on a protected companion.

        Raises:
            ProtectedDeletionAttempt: if the plan deletes or replaces the companion
        """
        if self.protects(companion.kind) and action in DESTRUCTIVE_ACTIONS:
            logger.error(f"Deletion protection refused to {action.value} {companion}")
            raise ProtectedDeletionAttempt(companion, action.value)
