"""
Resolved Model Exporter for the IAM Engine.

Publishes, per entity class, ``key -> {identifier, fields}`` for every
resolved entity. Secret material and personal data go to a separate
sensitive view that callers must never log.
"""

from typing import Any, Dict

from pydantic import BaseModel, Field

from .models import EntityKind, EntityModel, NodeRef, RESOURCE_KINDS

SENSITIVE_FIELDS = {
    EntityKind.API_KEY: ("access_key", "secret_key"),
    EntityKind.USER: ("email",),
}


class ResolvedExport(BaseModel):
    """Public and sensitive views of the resolved model."""
    public: Dict[str, Dict[str, Dict[str, Any]]] = Field(default_factory=dict)
    sensitive: Dict[str, Dict[str, Dict[str, Any]]] = Field(default_factory=dict)

    def entity(self, kind: EntityKind, key: str) -> Dict[str, Any]:
        """Public fields of one entity, flattened with its identifier."""
        entry = self.public[kind.value][key]
        return {"identifier": entry["identifier"], **entry["fields"]}


def export_resolved(model: EntityModel) -> ResolvedExport:
    """
    Export every resolved entity.

    Fields are the ones the provisioner was given plus whatever it reported
    back; symbolic references therefore carry the identifier of the entity
    they point at.
    """
    export = ResolvedExport()

    for kind in RESOURCE_KINDS:
        public: Dict[str, Dict[str, Any]] = {}
        sensitive: Dict[str, Dict[str, Any]] = {}
        hidden = SENSITIVE_FIELDS.get(kind, ())

        for key in sorted(model.records(kind)):
            ref = NodeRef(kind, key)
            identifier = model.identifier_of(ref)
            if identifier is None:
                continue

            fields = dict(model.observed_of(ref))
            secret = {name: fields.pop(name) for name in hidden if name in fields}
            public[key] = {"identifier": identifier, "fields": fields}
            if secret:
                sensitive[key] = {"identifier": identifier, "fields": secret}

        export.public[kind.value] = public
        if hidden:
            export.sensitive[kind.value] = sensitive

    return export
