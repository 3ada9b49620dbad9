"""
Reference Resolver for the IAM Engine.

Turns symbolic keys into the identifiers assigned by the provisioner. Only
called once the referenced node has completed, which the dependency graph
guarantees; anything else is an internal invariant failure.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from ..exceptions import ReferenceResolutionError
from ..models import EntityKind, EntityModel, MemberKind, NodeRef
from .policy_attachment import PrincipalSelection, select_principal

logger = logging.getLogger(__name__)


class ReferenceResolver:
    """Resolves symbolic references against a validated Entity Model."""

    def __init__(self, model: EntityModel):
        self.model = model

    def resolve(self, kind: EntityKind, key: str) -> str:
        """
        Resolve one symbolic reference to its identifier.

        Args:
            kind: Entity kind the reference points at
            key: Symbolic key of the referenced entity

        Returns:
            Identifier assigned by the provisioner

        Raises:
            ReferenceResolutionError: if the key is undeclared or unresolved
        """
        if not self.model.has(kind, key):
            raise ReferenceResolutionError(kind.value, key)

        identifier = self.model.identifier_of(NodeRef(kind, key))
        if identifier is None:
            raise ReferenceResolutionError(kind.value, key, "not resolved yet")
        return identifier

    def resolve_user(self, entry: str) -> str:
        """Resolve a user entry: declared user key or raw user id."""
        if self.model.has(EntityKind.USER, entry):
            return self.resolve(EntityKind.USER, entry)
        return entry

    def user_dependency(self, entry: str) -> Optional[NodeRef]:
        """Graph node a user entry depends on, None for raw ids."""
        if self.model.has(EntityKind.USER, entry):
            return NodeRef(EntityKind.USER, entry)
        return None

    def dependencies_of(self, ref: NodeRef, record: BaseModel) -> List[NodeRef]:
        """
        Nodes whose identifiers a record needs before it can be provisioned.

        Applications, groups, users and SSH keys depend on nothing declared;
        the SSH key project is a raw id supplied by settings.
        """
        deps: List[Optional[NodeRef]] = []

        if ref.kind == EntityKind.API_KEY:
            if record.application_key:
                deps.append(NodeRef(EntityKind.APPLICATION, record.application_key))
            if record.user_id:
                deps.append(self.user_dependency(record.user_id))

        elif ref.kind == EntityKind.GROUP_MEMBERSHIP:
            deps.append(NodeRef(EntityKind.GROUP, record.group_key))
            if record.member_kind == MemberKind.APPLICATION:
                deps.append(NodeRef(EntityKind.APPLICATION, record.member))
            else:
                deps.append(self.user_dependency(record.member))

        elif ref.kind == EntityKind.POLICY:
            deps.extend(self.user_dependency(entry) for entry in record.user_ids)
            deps.extend(NodeRef(EntityKind.GROUP, key) for key in record.group_keys)
            deps.extend(NodeRef(EntityKind.APPLICATION, key) for key in record.application_keys)

        unique: List[NodeRef] = []
        for dep in deps:
            if dep is not None and dep not in unique:
                unique.append(dep)
        return unique

    def resolved_fields(self, ref: NodeRef, record: BaseModel,
                        default_project_id: Optional[str] = None,
                        selection: Optional[PrincipalSelection] = None) -> Dict[str, Any]:
        """
        Build the provisioner payload for a record.

        Symbolic references are replaced, under the same field name, by the
        identifier of the entity they point at.
        """
        fields = record.model_dump(mode="json")

        if ref.kind == EntityKind.API_KEY:
            if record.application_key:
                fields["application_key"] = self.resolve(EntityKind.APPLICATION, record.application_key)
            if record.user_id:
                fields["user_id"] = self.resolve_user(record.user_id)

        elif ref.kind == EntityKind.GROUP:
            for name in ("application_keys", "user_ids"):
                fields.pop(name)

        elif ref.kind == EntityKind.GROUP_MEMBERSHIP:
            fields.pop("key")
            fields["group_key"] = self.resolve(EntityKind.GROUP, record.group_key)
            if record.member_kind == MemberKind.APPLICATION:
                fields["member"] = self.resolve(EntityKind.APPLICATION, record.member)
            else:
                fields["member"] = self.resolve_user(record.member)

        elif ref.kind == EntityKind.POLICY:
            if selection is None:
                selection = select_principal(ref.key, record)
            for name in ("user_ids", "group_keys", "application_keys"):
                fields.pop(name)
            fields["no_principal"] = selection.principal_less
            fields["principal_kind"] = selection.kind.value if selection.kind else None
            fields["principal_id"] = None
            if selection.kind == EntityKind.USER:
                fields["principal_id"] = self.resolve_user(selection.reference)
            elif selection.kind is not None:
                fields["principal_id"] = self.resolve(selection.kind, selection.reference)

        elif ref.kind == EntityKind.SSH_KEY:
            fields["project_id"] = record.project_id or default_project_id

        return fields
