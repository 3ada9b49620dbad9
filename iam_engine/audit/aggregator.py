"""
Audit Aggregator for the IAM Engine.

Read-only summary of the resolved model for periodic security review:
counts per entity class, API keys that never expire and SSH keys split by
disabled state. Only entities that resolved are taken into account, so it
is safe to run after a partial apply.
"""

from ..models import AuditReport, EntityKind, EntityModel, NodeRef, RESOURCE_KINDS


def build_audit_report(model: EntityModel) -> AuditReport:
    report = AuditReport()

    for kind in RESOURCE_KINDS:
        resolved = [key for key in model.records(kind) if model.is_resolved(NodeRef(kind, key))]
        report.counts[kind.value] = len(resolved)

    for key in sorted(model.api_keys):
        ref = NodeRef(EntityKind.API_KEY, key)
        if not model.is_resolved(ref):
            continue
        expires_at = model.observed_of(ref).get("expires_at", model.api_keys[key].expires_at)
        if not expires_at:
            report.api_keys_without_expiration.append(key)

    for key in sorted(model.ssh_keys):
        ref = NodeRef(EntityKind.SSH_KEY, key)
        if not model.is_resolved(ref):
            continue
        disabled = model.observed_of(ref).get("disabled", model.ssh_keys[key].disabled)
        if disabled:
            report.ssh_keys_disabled.append(key)
        else:
            report.ssh_keys_active.append(key)

    return report
