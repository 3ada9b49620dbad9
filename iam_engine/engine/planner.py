"""
Planner for the IAM Engine.

Compares the desired Entity Model with the applied state and decides, per
node, whether it is created, updated in place, replaced or deleted.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..models import EntityKind, EntityModel, NodeRef, PlanAction
from .resolver import ReferenceResolver
from .state_manager import StateEntry, StateManager

logger = logging.getLogger(__name__)

# Fields the backend cannot change in place. API keys in particular keep
# their access/secret pair across every other edit.
FORCE_NEW_FIELDS = {
    EntityKind.API_KEY: ("application_key", "user_id", "expires_at"),
    EntityKind.GROUP_MEMBERSHIP: ("group_key", "member_kind", "member"),
    EntityKind.USER: ("email",),
    EntityKind.SSH_KEY: ("public_key", "project_id"),
}


def declared_fields(ref: NodeRef, record: BaseModel,
                    default_project_id: Optional[str] = None) -> Dict[str, Any]:
    """Symbolic fields a node is applied with, as stored in state."""
    fields = record.model_dump(mode="json")
    if ref.kind == EntityKind.SSH_KEY and not fields.get("project_id"):
        fields["project_id"] = default_project_id
    return fields


class Plan:
    """Actions to apply, per node, plus the applied entries that get removed."""

    def __init__(self):
        self.actions: Dict[NodeRef, PlanAction] = {}
        self.fields: Dict[NodeRef, Dict[str, Any]] = {}
        self.depends_on: Dict[NodeRef, List[NodeRef]] = {}
        self.deletions: Dict[NodeRef, StateEntry] = {}
        self.replacements: Dict[NodeRef, StateEntry] = {}

    def action_for(self, ref: NodeRef) -> Optional[PlanAction]:
        return self.actions.get(ref)

    def refs(self, action: Optional[PlanAction] = None) -> List[NodeRef]:
        """Nodes in the plan, optionally filtered by action."""
        return [ref for ref, a in self.actions.items() if action is None or a == action]

    def summary(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in PlanAction if action != PlanAction.GUARD}
        for action in self.actions.values():
            counts[action.value] += 1
        return counts

    def describe(self) -> List[Dict[str, str]]:
        """Flat rows for display."""
        return [
            {"node": str(ref), "action": action.value}
            for ref, action in sorted(self.actions.items(), key=lambda item: str(item[0]))
        ]


def build_plan(model: EntityModel, state: Optional[StateManager] = None,
               default_project_id: Optional[str] = None) -> Plan:
    """
    Diff the desired model against the applied state.

    Args:
        model: Validated Entity Model, memberships already flattened
        state: Applied state, None for a first run
        default_project_id: Project used by SSH keys without their own

    Returns:
        Plan covering every desired node and every stale state entry
    """
    plan = Plan()
    resolver = ReferenceResolver(model)

    for ref, record in model.iter_refs():
        fields = declared_fields(ref, record, default_project_id)
        plan.fields[ref] = fields
        plan.depends_on[ref] = resolver.dependencies_of(ref, record)

        entry = state.get(ref) if state else None
        if entry is None:
            plan.actions[ref] = PlanAction.CREATE
        elif _requires_replacement(ref, entry.fields, fields):
            plan.actions[ref] = PlanAction.REPLACE
        else:
            plan.actions[ref] = PlanAction.UPDATE

    _propagate_replacements(plan)

    if state:
        for ref in plan.refs(PlanAction.REPLACE):
            plan.replacements[ref] = state.get(ref)

        for entry in state.all_entries():
            if entry.ref not in plan.actions:
                plan.actions[entry.ref] = PlanAction.DELETE
                plan.deletions[entry.ref] = entry

    logger.info(f"Built plan: {plan.summary()}")
    return plan


def _requires_replacement(ref: NodeRef, applied: Dict[str, Any], desired: Dict[str, Any]) -> bool:
    for name in FORCE_NEW_FIELDS.get(ref.kind, ()):
        if applied.get(name) != desired.get(name):
            logger.debug(f"{ref}: field {name} changed, replacement required")
            return True
    return False


def _propagate_replacements(plan: Plan):
    """Replace nodes whose force-new fields bind an identifier that is about to change."""
    changed = True
    while changed:
        changed = False
        for ref, deps in plan.depends_on.items():
            if plan.actions[ref] != PlanAction.UPDATE or ref.kind not in FORCE_NEW_FIELDS:
                continue
            replaced = [dep for dep in deps if plan.actions.get(dep) in (PlanAction.CREATE, PlanAction.REPLACE)]
            if replaced:
                logger.debug(f"{ref}: replaced because {replaced[0]} gets a new identifier")
                plan.actions[ref] = PlanAction.REPLACE
                changed = True
