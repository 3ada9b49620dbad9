"""
Tests for applied state persistence, the audit aggregator, the audit
logger and the resolved model exporter.
"""

import json
from concurrent.futures import ThreadPoolExecutor

import pytest

from iam_engine.audit import AuditLogger, build_audit_report
from iam_engine.engine import StateManager
from iam_engine.exporter import export_resolved
from iam_engine.models import (
    ApiKey,
    Application,
    EntityKind,
    EntityModel,
    NodeRef,
    SshKey,
    User,
)

PUBLIC_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIBcD"
APP = NodeRef(EntityKind.APPLICATION, "terraform")


def make_model():
    return EntityModel(
        applications={"terraform": Application(name="terraform")},
        api_keys={
            "forever": ApiKey(application_key="terraform"),
            "expiring": ApiKey(application_key="terraform", expires_at="2030-01-01T00:00:00Z"),
            "pending": ApiKey(application_key="terraform"),
        },
        users={"alice": User(email="alice@example.com", username="alice")},
        ssh_keys={
            "bastion": SshKey(name="bastion", public_key=PUBLIC_KEY, disabled=True),
            "laptop": SshKey(name="laptop", public_key=PUBLIC_KEY),
        },
    )


class TestStateManager:
    """Test cases for StateManager."""

    def test_in_memory_state(self):
        state = StateManager()

        state.record(APP, "app-1", {"name": "terraform"})

        assert state.get(APP).identifier == "app-1"
        assert state.get_summary() == {"total_entries": 1, "entries_by_kind": {"applications": 1}}
        assert state.remove(APP) is True
        assert state.remove(APP) is False

    def test_state_persists_to_file(self, tmp_path):
        path = tmp_path / "state" / "applied.json"
        key = NodeRef(EntityKind.API_KEY, "terraform_key")

        StateManager(path).record(key, "key-1", {"application_key": "terraform"}, [APP])
        reloaded = StateManager(path)

        entry = reloaded.get(key)
        assert entry.identifier == "key-1"
        assert entry.fields == {"application_key": "terraform"}
        assert entry.depends_on == ["applications.terraform"]
        assert "api_keys.terraform_key" in json.loads(path.read_text())["entries"]

    def test_in_memory_copy_is_not_persisted(self, tmp_path):
        path = tmp_path / "applied.json"
        state = StateManager(path)
        state.record(APP, "app-1", {"name": "terraform"})

        copy = state.in_memory_copy()
        copy.record(NodeRef(EntityKind.USER, "alice"), "user-1", {"username": "alice"})
        copy.remove(APP)

        assert copy.storage_path is None
        assert state.get(APP).identifier == "app-1"
        assert StateManager(path).get_summary() == {"total_entries": 1, "entries_by_kind": {"applications": 1}}

    def test_hydrate_fills_declared_nodes_only(self):
        state = StateManager()
        state.record(APP, "app-1", {"name": "terraform"})
        state.record(NodeRef(EntityKind.APPLICATION, "removed"), "app-2", {"name": "removed"})
        model = make_model()

        assert state.hydrate(model) == 1
        assert model.identifier_of(APP) == "app-1"
        assert model.observed_of(APP) == {"name": "terraform"}


class TestAuditReport:
    """Test cases for build_audit_report."""

    @pytest.fixture
    def resolved_model(self):
        model = make_model()
        model.assign_identifier(APP, "app-1")
        for key in ("forever", "expiring"):
            record = model.api_keys[key]
            model.assign_identifier(NodeRef(EntityKind.API_KEY, key), f"key-{key}", record.model_dump())
        model.assign_identifier(NodeRef(EntityKind.SSH_KEY, "bastion"), "ssh-1", {"disabled": True})
        model.assign_identifier(NodeRef(EntityKind.SSH_KEY, "laptop"), "ssh-2", {"disabled": False})
        return model

    def test_only_resolved_entities_count(self, resolved_model):
        report = build_audit_report(resolved_model)

        assert report.counts["applications"] == 1
        assert report.counts["api_keys"] == 2
        assert report.counts["users"] == 0
        assert report.api_keys_without_expiration == ["forever"]

    def test_ssh_keys_split_by_disabled_state(self, resolved_model):
        report = build_audit_report(resolved_model)

        assert report.ssh_keys_disabled == ["bastion"]
        assert report.ssh_keys_active == ["laptop"]

    def test_empty_model(self):
        report = build_audit_report(EntityModel())

        assert report.api_keys_without_expiration == []
        assert all(count == 0 for count in report.counts.values())


class TestExporter:
    """Test cases for export_resolved."""

    def test_sensitive_fields_are_separated(self):
        model = make_model()
        ref = NodeRef(EntityKind.API_KEY, "forever")
        model.assign_identifier(ref, "key-1", {"application_key": "app-1", "access_key": "SCW1", "secret_key": "s"})
        model.assign_identifier(NodeRef(EntityKind.USER, "alice"), "user-1",
                                {"email": "alice@example.com", "username": "alice"})

        export = export_resolved(model)

        assert export.entity(EntityKind.API_KEY, "forever") == {"identifier": "key-1", "application_key": "app-1"}
        assert export.sensitive["api_keys"]["forever"]["fields"] == {"access_key": "SCW1", "secret_key": "s"}
        assert export.entity(EntityKind.USER, "alice") == {"identifier": "user-1", "username": "alice"}
        assert export.sensitive["users"]["alice"]["fields"] == {"email": "alice@example.com"}
        assert "pending" not in export.public["api_keys"]


class TestAuditLogger:
    """Test cases for AuditLogger."""

    def test_log_and_read_back(self, tmp_path):
        audit_logger = AuditLogger(str(tmp_path))

        audit_logger.log_outcome("run-1", "applications.terraform", "create", True, identifier="app-1")
        audit_logger.log_outcome("run-2", "groups.admins", "delete", False, error="not found")

        events = audit_logger.get_events(run_id="run-2")
        assert len(events) == 1
        assert events[0].node == "groups.admins"
        assert events[0].error_message == "not found"
        assert len(audit_logger.get_events()) == 2

    def test_events_most_recent_first(self, tmp_path):
        audit_logger = AuditLogger(str(tmp_path))
        for i in range(3):
            audit_logger.log_outcome("run-1", f"users.user{i}", "create", True)

        events = audit_logger.get_events(limit=2)

        assert [e.node for e in events] == ["users.user2", "users.user1"]

    def test_concurrent_writes_keep_lines_intact(self, tmp_path):
        audit_logger = AuditLogger(str(tmp_path))
        metadata = {"fields": {f"field_{i}": "x" * 200 for i in range(20)}}

        def log_many(worker):
            for i in range(50):
                audit_logger.log_outcome("run-1", f"users.user{worker}-{i}", "create", True, metadata=metadata)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(log_many, range(8)))

        lines = [line for path in tmp_path.glob("*.jsonl") for line in path.read_text().splitlines()]
        assert len(lines) == 400
        assert {json.loads(line)["node"] for line in lines} == {
            f"users.user{w}-{i}" for w in range(8) for i in range(50)
        }
