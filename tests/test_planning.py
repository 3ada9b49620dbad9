"""
Tests for planning, graph construction and the Deletion Protection Gate.
"""

import pytest

from iam_engine.engine import DeletionProtectionGate, StateManager, build_dependency_graph, build_plan
from iam_engine.engine.planner import declared_fields
from iam_engine.engine.protection import ProtectionMode, companion_of, shadow_ref
from iam_engine.exceptions import CycleDetected, ProtectedDeletionAttempt
from iam_engine.models import (
    ApiKey,
    Application,
    EngineSettings,
    EntityKind,
    EntityModel,
    Group,
    NodeRef,
    PlanAction,
    User,
)
from iam_engine.engine.membership import flatten_memberships

APP = NodeRef(EntityKind.APPLICATION, "terraform")
KEY = NodeRef(EntityKind.API_KEY, "terraform_key")
GROUP = NodeRef(EntityKind.GROUP, "admins")
MEMBERSHIP = NodeRef(EntityKind.GROUP_MEMBERSHIP, "admins-app-terraform")


def make_model(expires_at=None):
    model = EntityModel(
        applications={"terraform": Application(name="terraform")},
        api_keys={"terraform_key": ApiKey(application_key="terraform", expires_at=expires_at)},
        groups={"admins": Group(name="admins", application_keys=["terraform"])},
    )
    model.set_memberships(flatten_memberships(model.groups))
    return model


def applied_state(model):
    """State as it would look after applying the model once."""
    state = StateManager()
    plan = build_plan(model)
    for ref, record in model.iter_refs():
        state.record(ref, f"id-{ref.key}", declared_fields(ref, record), plan.depends_on[ref])
    return state


class TestBuildPlan:
    """Test cases for build_plan."""

    def test_first_run_creates_everything(self):
        plan = build_plan(make_model())

        assert set(plan.refs()) == {APP, KEY, GROUP, MEMBERSHIP}
        assert set(plan.refs(PlanAction.CREATE)) == {APP, KEY, GROUP, MEMBERSHIP}
        assert plan.depends_on[KEY] == [APP]
        assert plan.depends_on[MEMBERSHIP] == [GROUP, APP]
        assert plan.summary() == {"create": 4, "update": 0, "replace": 0, "delete": 0}

    def test_unchanged_model_updates_in_place(self):
        state = applied_state(make_model())

        plan = build_plan(make_model(), state)

        assert set(plan.refs(PlanAction.UPDATE)) == {APP, KEY, GROUP, MEMBERSHIP}

    def test_expiration_change_replaces_api_key(self):
        state = applied_state(make_model())

        plan = build_plan(make_model(expires_at="2030-01-01T00:00:00Z"), state)

        assert plan.action_for(KEY) == PlanAction.REPLACE
        assert plan.action_for(APP) == PlanAction.UPDATE

    def test_description_change_keeps_api_key(self):
        state = applied_state(make_model())
        model = make_model()
        model.api_keys["terraform_key"] = ApiKey(application_key="terraform", description="rotated label")

        plan = build_plan(model, state)

        assert plan.action_for(KEY) == PlanAction.UPDATE

    def test_recreated_application_replaces_its_api_key(self):
        state = applied_state(make_model())
        state.remove(APP)

        plan = build_plan(make_model(), state)

        assert plan.action_for(APP) == PlanAction.CREATE
        assert plan.action_for(KEY) == PlanAction.REPLACE
        assert plan.action_for(MEMBERSHIP) == PlanAction.REPLACE
        assert plan.action_for(GROUP) == PlanAction.UPDATE

    def test_removed_entities_are_deleted(self):
        state = applied_state(make_model())
        model = EntityModel(applications={"terraform": Application(name="terraform")})

        plan = build_plan(model, state)

        assert plan.action_for(APP) == PlanAction.UPDATE
        assert set(plan.refs(PlanAction.DELETE)) == {KEY, GROUP, MEMBERSHIP}
        assert plan.deletions[KEY].identifier == "id-terraform_key"


class TestDependencyGraph:
    """Test cases for build_dependency_graph."""

    def test_edges_run_from_dependency_to_dependent(self):
        graph = build_dependency_graph(build_plan(make_model()))

        assert graph.has_edge(APP, KEY)
        assert graph.has_edge(GROUP, MEMBERSHIP)
        assert graph.has_edge(APP, MEMBERSHIP)
        assert graph.nodes[KEY]["action"] == PlanAction.CREATE

    def test_dependents_are_deleted_first(self):
        state = applied_state(make_model())

        graph = build_dependency_graph(build_plan(EntityModel(), state))

        assert graph.has_edge(KEY, APP)
        assert graph.has_edge(MEMBERSHIP, GROUP)
        assert graph.has_edge(MEMBERSHIP, APP)

    def test_replaced_node_is_removed_before_its_old_dependency(self):
        state = applied_state(make_model())
        deploy = NodeRef(EntityKind.APPLICATION, "deploy")
        model = EntityModel(
            applications={"deploy": Application(name="deploy")},
            api_keys={"terraform_key": ApiKey(application_key="deploy")},
        )

        plan = build_plan(model, state)
        graph = build_dependency_graph(plan)

        assert plan.action_for(KEY) == PlanAction.REPLACE
        assert plan.action_for(APP) == PlanAction.DELETE
        assert plan.replacements[KEY].identifier == "id-terraform_key"
        assert graph.has_edge(deploy, KEY)
        assert graph.has_edge(KEY, APP)

    def test_stale_node_is_removed_before_replaced_dependency(self):
        alice = NodeRef(EntityKind.USER, "alice")
        stale_key = NodeRef(EntityKind.API_KEY, "alice_key")
        state = StateManager()
        state.record(alice, "id-alice", {"email": "old@example.com", "username": "alice"})
        state.record(stale_key, "id-alice_key", {"user_id": "alice"}, [alice])
        model = EntityModel(users={"alice": User(email="alice@example.com", username="alice")})

        plan = build_plan(model, state)
        graph = build_dependency_graph(plan)

        assert plan.action_for(alice) == PlanAction.REPLACE
        assert plan.action_for(stale_key) == PlanAction.DELETE
        assert graph.has_edge(stale_key, alice)

    def test_cycle_is_detected(self):
        state = StateManager()
        first = NodeRef(EntityKind.APPLICATION, "first")
        second = NodeRef(EntityKind.APPLICATION, "second")
        state.record(first, "id-1", {}, [second])
        state.record(second, "id-2", {}, [first])

        with pytest.raises(CycleDetected) as exc_info:
            build_dependency_graph(build_plan(EntityModel(), state))

        assert exc_info.value.cycle
        assert "applications.first" in str(exc_info.value)

    def test_shadow_nodes_guard_protected_kinds(self):
        gate = DeletionProtectionGate(EngineSettings(deletion_protection=True))

        graph = build_dependency_graph(build_plan(make_model()), gate)

        assert graph.has_edge(shadow_ref(APP), APP)
        assert graph.has_edge(shadow_ref(GROUP), GROUP)
        assert shadow_ref(KEY) not in graph
        assert graph.nodes[shadow_ref(APP)]["action"] == PlanAction.GUARD
        assert graph.nodes[shadow_ref(APP)]["companion"] == APP

    def test_no_shadow_nodes_when_unprotected(self):
        gate = DeletionProtectionGate(EngineSettings(deletion_protection=False))

        graph = build_dependency_graph(build_plan(make_model()), gate)

        assert not any(ref.kind == EntityKind.DELETION_PROTECTION for ref in graph.nodes)


class TestDeletionProtectionGate:
    """Test cases for DeletionProtectionGate."""

    def test_mode_follows_setting(self):
        assert DeletionProtectionGate(EngineSettings(deletion_protection=True)).mode == ProtectionMode.PROTECTED
        assert DeletionProtectionGate(EngineSettings()).mode == ProtectionMode.UNPROTECTED

    @pytest.mark.parametrize("action", [PlanAction.DELETE, PlanAction.REPLACE])
    def test_destructive_actions_are_refused(self, action):
        gate = DeletionProtectionGate(EngineSettings(deletion_protection=True))

        with pytest.raises(ProtectedDeletionAttempt) as exc_info:
            gate.enforce(GROUP, action)

        assert exc_info.value.node == GROUP
        assert exc_info.value.action == action.value

    @pytest.mark.parametrize("action", [PlanAction.CREATE, PlanAction.UPDATE])
    def test_constructive_actions_pass(self, action):
        DeletionProtectionGate(EngineSettings(deletion_protection=True)).enforce(GROUP, action)

    def test_unprotected_kinds_and_mode_pass(self):
        DeletionProtectionGate(EngineSettings(deletion_protection=True)).enforce(KEY, PlanAction.DELETE)
        DeletionProtectionGate(EngineSettings()).enforce(APP, PlanAction.DELETE)

    def test_shadow_ref_round_trip(self):
        assert companion_of(shadow_ref(MEMBERSHIP)) == MEMBERSHIP
