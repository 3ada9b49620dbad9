"""
Reconcile Workflow for the IAM Engine.

Runs one full pass from declared entities to provisioned resources:
validate, flatten memberships, plan against applied state, build the
dependency graph, walk it through the provisioner, then aggregate the audit
report. The caller always gets a single ReconcileReport back.
"""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from ..audit.aggregator import build_audit_report
from ..audit.audit_logger import AuditLogger
from ..connectors.base_connector import BaseProvisioner, ProvisionerResult
from ..engine.executor import GraphExecutor, summarize_outcomes
from ..engine.graph import build_dependency_graph
from ..engine.membership import flatten_memberships
from ..engine.planner import Plan, build_plan
from ..engine.policy_attachment import PrincipalSelection, select_principal
from ..engine.protection import DeletionProtectionGate, companion_of
from ..engine.resolver import ReferenceResolver
from ..engine.state_manager import StateManager
from ..engine.validator import Validator
from ..exceptions import CycleDetected, ProvisioningError
from ..models import (
    EngineSettings,
    EntityKind,
    EntityModel,
    NodeOutcome,
    NodeRef,
    NodeStatus,
    PlanAction,
    ReconcileReport,
)

logger = logging.getLogger(__name__)


class ReconcileWorkflow:
    """
    Drives a declared Entity Model to the backend.

    Validation failures and dependency cycles stop the run before anything
    is provisioned. Once the walk starts, a failure only affects the failing
    node and whatever depends on it.
    """

    def __init__(self, provisioner: BaseProvisioner, settings: Optional[EngineSettings] = None,
                 state_manager: Optional[StateManager] = None,
                 audit_logger: Optional[AuditLogger] = None):
        """
        Initialize the workflow.

        Args:
            provisioner: Backend that creates, updates and deletes resources
            settings: Module-wide toggles
            state_manager: Applied state, defaults to settings.state_file
            audit_logger: Provisioning audit log, defaults to settings.audit_dir
        """
        self.settings = settings or EngineSettings()
        self.provisioner = provisioner
        self.state_manager = state_manager or StateManager(self.settings.state_file)
        if audit_logger is None and self.settings.audit_dir:
            audit_logger = AuditLogger(self.settings.audit_dir)
        self.audit_logger = audit_logger

        self.validator = Validator(self.settings)
        self.gate = DeletionProtectionGate(self.settings)
        self.run_id = str(uuid.uuid4())
        self.started_at: Optional[datetime] = None
        self.completed_at: Optional[datetime] = None

        self._model: Optional[EntityModel] = None
        self._plan: Optional[Plan] = None
        self._resolver: Optional[ReferenceResolver] = None
        self._selections: Dict[str, PrincipalSelection] = {}

        logger.info(f"Initialized ReconcileWorkflow {self.run_id}")

    def plan(self, model: EntityModel) -> Plan:
        """
        Validate and plan without provisioning anything.

        Raises:
            ValidationError: if the model has violations
            CycleDetected: if the dependency graph is cyclic
        """
        self.validator.check(model)
        model.set_memberships(flatten_memberships(model.groups))
        plan = build_plan(model, self.state_manager, self.settings.project_id)
        build_dependency_graph(plan, self.gate)
        return plan

    def execute(self, model: EntityModel,
                cancel_event: Optional[threading.Event] = None) -> ReconcileReport:
        """
        Reconcile the model against the backend.

        Args:
            model: Declared entities
            cancel_event: When set, no new node is dispatched

        Returns:
            ReconcileReport covering validation, resolution and provisioning
        """
        self.started_at = datetime.now(timezone.utc)
        report = ReconcileReport(run_id=self.run_id, started_at=self.started_at)

        violations = self.validator.validate(model)
        if violations:
            report.success = False
            report.violations = violations
            report.error = f"Validation failed with {len(violations)} violation(s)"
            return self._finish(report)

        model.set_memberships(flatten_memberships(model.groups))
        self._selections = {key: select_principal(key, policy) for key, policy in model.policies.items()}
        for selection in self._selections.values():
            report.diagnostics.extend(selection.diagnostics)

        plan = build_plan(model, self.state_manager, self.settings.project_id)
        try:
            graph = build_dependency_graph(plan, self.gate)
        except CycleDetected as e:
            logger.error(str(e))
            report.success = False
            report.error = str(e)
            return self._finish(report)

        self._model = model
        self._plan = plan
        self._resolver = ReferenceResolver(model)

        executor = GraphExecutor(graph, self._handle_node, self.settings.max_parallelism, cancel_event)
        outcomes = executor.run()
        self._collect(report, outcomes)

        report.audit = build_audit_report(model)
        report.success = not (report.failed or report.blocked or report.not_attempted)

        succeeded, failed, blocked, skipped = summarize_outcomes(outcomes)
        logger.info(
            f"Reconcile {self.run_id} finished: {succeeded} succeeded, {failed} failed, "
            f"{blocked} blocked, {skipped} not attempted"
        )
        return self._finish(report)

    def _handle_node(self, ref: NodeRef, action: PlanAction) -> Optional[str]:
        """Apply one node. Runs in a worker thread."""
        if ref.kind == EntityKind.DELETION_PROTECTION:
            companion = companion_of(ref)
            self.gate.enforce(companion, self._plan.action_for(companion))
            return None

        if action == PlanAction.DELETE:
            entry = self._plan.deletions[ref]
            self._expect(ref, "delete", self.provisioner.delete(ref.kind, entry.identifier))
            self.state_manager.remove(ref)
            return entry.identifier

        record = self._model.get(ref.kind, ref.key)
        selection = self._selections.get(ref.key) if ref.kind == EntityKind.POLICY else None
        desired = self._resolver.resolved_fields(ref, record, self.settings.project_id, selection)

        if action == PlanAction.UPDATE:
            identifier = self.state_manager.get(ref).identifier
            result = self._expect(ref, "update", self.provisioner.update(ref.kind, identifier, desired))
            self._record_state(ref, identifier)
        else:
            if action == PlanAction.REPLACE:
                previous = self.state_manager.get(ref)
                self._expect(ref, "delete", self.provisioner.delete(ref.kind, previous.identifier))
                self.state_manager.remove(ref)
            identifier, result = self._create(ref, desired)

        observed = dict(desired)
        observed.update(result.observed)
        self._model.assign_identifier(ref, identifier, observed)
        return identifier

    def _create(self, ref: NodeRef, desired: Dict[str, Any]) -> Tuple[str, ProvisionerResult]:
        """
        Create a node and record it in state.

        SSH keys cannot be created disabled: they are created enabled and
        disabled by a second, separate update.
        """
        disable_after_create = ref.kind == EntityKind.SSH_KEY and desired.get("disabled")
        payload = dict(desired, disabled=False) if disable_after_create else desired

        result = self._expect(ref, "create", self.provisioner.create(ref.kind, ref.key, payload))
        identifier = result.identifier
        self._record_state(ref, identifier)

        if disable_after_create:
            result = self._expect(ref, "update", self.provisioner.update(ref.kind, identifier, desired))
        return identifier, result

    def _expect(self, ref: NodeRef, operation: str, result: ProvisionerResult) -> ProvisionerResult:
        """Audit a provisioner call and turn failures into ProvisioningError."""
        if self.audit_logger is not None:
            self.audit_logger.log_outcome(
                run_id=self.run_id,
                node=str(ref),
                action=operation,
                success=result.success,
                identifier=result.identifier,
                error=None if result.success else (result.error or result.message),
            )

        if not result.success:
            raise ProvisioningError(ref, f"{operation} failed: {result.message}", result.error)

        return result

    def _record_state(self, ref: NodeRef, identifier: str):
        self.state_manager.record(ref, identifier, self._plan.fields[ref], self._plan.depends_on[ref])

    def _collect(self, report: ReconcileReport, outcomes: Dict[NodeRef, NodeOutcome]):
        for ref in sorted(outcomes, key=str):
            outcome = outcomes[ref]
            name = str(ref)
            report.outcomes[name] = outcome
            if outcome.status == NodeStatus.SUCCEEDED:
                report.succeeded.append(name)
            elif outcome.status == NodeStatus.FAILED:
                report.failed[name] = outcome.error or "unknown error"
            elif outcome.status == NodeStatus.BLOCKED:
                report.blocked.append(name)
            else:
                report.not_attempted.append(name)

    def _finish(self, report: ReconcileReport) -> ReconcileReport:
        self.completed_at = datetime.now(timezone.utc)
        report.completed_at = self.completed_at
        return report

    def get_execution_summary(self) -> Dict[str, Any]:
        """Get summary of the workflow run."""
        return {
            "run_id": self.run_id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "plan": self._plan.summary() if self._plan else {},
            "state": self.state_manager.get_summary(),
        }
