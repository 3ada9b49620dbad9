"""
Core data models for the IAM Engine.

This module defines the Pydantic records for every declared IAM entity,
the module-wide settings, the in-memory Entity Model that carries
write-once identifier slots, and the report types returned to callers.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional, Tuple

from pydantic import BaseModel, Field

from .exceptions import IdentifierAlreadyAssigned


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class EntityKind(str, Enum):
    """Entity classes known to the engine."""
    APPLICATION = "applications"
    API_KEY = "api_keys"
    GROUP = "groups"
    GROUP_MEMBERSHIP = "group_memberships"
    POLICY = "policies"
    USER = "users"
    SSH_KEY = "ssh_keys"
    DELETION_PROTECTION = "deletion_protection"


DECLARED_KINDS = (
    EntityKind.APPLICATION,
    EntityKind.API_KEY,
    EntityKind.GROUP,
    EntityKind.POLICY,
    EntityKind.USER,
    EntityKind.SSH_KEY,
)

RESOURCE_KINDS = DECLARED_KINDS + (EntityKind.GROUP_MEMBERSHIP,)


class NodeRef(NamedTuple):
    """Reference to one node of the dependency graph."""
    kind: EntityKind
    key: str

    def __str__(self) -> str:
        return f"{self.kind.value}.{self.key}"

    @classmethod
    def parse(cls, value: str) -> "NodeRef":
        """Inverse of str(): 'applications.terraform' -> NodeRef."""
        kind, _, key = value.partition(".")
        return cls(EntityKind(kind), key)


class PlanAction(str, Enum):
    """What the reconciler intends to do with a node."""
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    GUARD = "guard"


class MemberKind(str, Enum):
    APPLICATION = "application"
    USER = "user"


class EngineSettings(BaseModel):
    """Module-wide toggles threaded into the validator, gate and reconciler."""
    organization_id: Optional[str] = Field(None, description="Organization owning the entities")
    project_id: Optional[str] = Field(None, description="Default project for SSH keys")
    require_api_key_expiration: bool = Field(False, description="Every API key must expire")
    api_key_max_validity_days: int = Field(0, ge=0, description="Maximum API key validity, 0 = unlimited")
    deletion_protection: bool = Field(False, description="Refuse delete/replace of applications, groups and policies")
    max_parallelism: int = Field(4, ge=1, description="Concurrent provisioner dispatches")
    state_file: Optional[str] = Field(None, description="JSON file holding the applied state")
    audit_dir: Optional[str] = Field(None, description="Directory for JSONL provisioning audit logs")


class Application(BaseModel):
    """IAM application (non-human principal)."""
    name: str
    description: str = ""
    tags: List[str] = Field(default_factory=list)


class ApiKey(BaseModel):
    """API key bound to exactly one application or user."""
    application_key: Optional[str] = Field(None, description="Symbolic key of the owning application")
    user_id: Optional[str] = Field(None, description="Declared user key or raw user id")
    description: str = ""
    expires_at: Optional[str] = Field(None, description="YYYY-MM-DDTHH:MM:SSZ")
    default_project_id: Optional[str] = None


class Group(BaseModel):
    """IAM group with optional managed membership."""
    name: str
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    application_keys: List[str] = Field(default_factory=list)
    user_ids: List[str] = Field(default_factory=list)
    external_membership: bool = False


class GroupMembership(BaseModel):
    """Join record produced by flattening a group; never declared directly."""
    key: str
    group_key: str
    member_kind: MemberKind
    member: str


class PolicyRule(BaseModel):
    """Permission sets granted over an organization and/or projects."""
    permission_set_names: List[str] = Field(default_factory=list)
    organization_id: Optional[str] = None
    project_ids: List[str] = Field(default_factory=list)


class Policy(BaseModel):
    """IAM policy; the backend attaches it to at most one principal."""
    name: str
    description: str = ""
    tags: List[str] = Field(default_factory=list)
    no_principal: bool = False
    user_ids: List[str] = Field(default_factory=list)
    group_keys: List[str] = Field(default_factory=list)
    application_keys: List[str] = Field(default_factory=list)
    rules: List[PolicyRule] = Field(default_factory=list)


class User(BaseModel):
    """Human user. Status fields are assigned by the provisioner."""
    email: str
    username: str
    tags: List[str] = Field(default_factory=list)
    send_password_email: bool = False
    send_welcome_email: bool = False


class SshKey(BaseModel):
    """SSH public key registered in a project."""
    name: str
    public_key: str
    project_id: Optional[str] = Field(None, description="Defaults to the module-wide project")
    disabled: bool = False


RECORD_TYPES = {
    EntityKind.APPLICATION: Application,
    EntityKind.API_KEY: ApiKey,
    EntityKind.GROUP: Group,
    EntityKind.GROUP_MEMBERSHIP: GroupMembership,
    EntityKind.POLICY: Policy,
    EntityKind.USER: User,
    EntityKind.SSH_KEY: SshKey,
}


class EntityModel:
    """
    In-memory representation of every declared entity.

    Holds records per entity kind plus one identifier slot per node. Slots
    are written once, by the worker that provisions the node, and read by
    downstream resolution.
    """

    def __init__(
        self,
        applications: Optional[Mapping[str, Application]] = None,
        api_keys: Optional[Mapping[str, ApiKey]] = None,
        groups: Optional[Mapping[str, Group]] = None,
        policies: Optional[Mapping[str, Policy]] = None,
        users: Optional[Mapping[str, User]] = None,
        ssh_keys: Optional[Mapping[str, SshKey]] = None,
    ):
        self._records: Dict[EntityKind, Dict[str, BaseModel]] = {
            EntityKind.APPLICATION: dict(applications or {}),
            EntityKind.API_KEY: dict(api_keys or {}),
            EntityKind.GROUP: dict(groups or {}),
            EntityKind.GROUP_MEMBERSHIP: {},
            EntityKind.POLICY: dict(policies or {}),
            EntityKind.USER: dict(users or {}),
            EntityKind.SSH_KEY: dict(ssh_keys or {}),
        }
        self._identifiers: Dict[NodeRef, str] = {}
        self._observed: Dict[NodeRef, Dict[str, Any]] = {}

    @property
    def applications(self) -> Dict[str, Application]:
        return self._records[EntityKind.APPLICATION]

    @property
    def api_keys(self) -> Dict[str, ApiKey]:
        return self._records[EntityKind.API_KEY]

    @property
    def groups(self) -> Dict[str, Group]:
        return self._records[EntityKind.GROUP]

    @property
    def group_memberships(self) -> Dict[str, GroupMembership]:
        return self._records[EntityKind.GROUP_MEMBERSHIP]

    @property
    def policies(self) -> Dict[str, Policy]:
        return self._records[EntityKind.POLICY]

    @property
    def users(self) -> Dict[str, User]:
        return self._records[EntityKind.USER]

    @property
    def ssh_keys(self) -> Dict[str, SshKey]:
        return self._records[EntityKind.SSH_KEY]

    def records(self, kind: EntityKind) -> Dict[str, BaseModel]:
        """Get the key -> record mapping for one entity kind."""
        return self._records[kind]

    def get(self, kind: EntityKind, key: str) -> Optional[BaseModel]:
        return self._records[kind].get(key)

    def has(self, kind: EntityKind, key: str) -> bool:
        return key in self._records[kind]

    def iter_refs(self) -> Iterator[Tuple[NodeRef, BaseModel]]:
        """Iterate over every record with its node reference."""
        for kind in RESOURCE_KINDS:
            for key, record in self._records[kind].items():
                yield NodeRef(kind, key), record

    def set_memberships(self, memberships: Mapping[str, GroupMembership]):
        """Replace the derived membership records."""
        self._records[EntityKind.GROUP_MEMBERSHIP] = dict(memberships)

    def assign_identifier(self, ref: NodeRef, identifier: str,
                          observed: Optional[Dict[str, Any]] = None):
        """
        Record the identifier returned by the provisioner.

        Raises:
            IdentifierAlreadyAssigned: if the slot was already written
        """
        if ref in self._identifiers:
            raise IdentifierAlreadyAssigned(f"Identifier for {ref} is already set")
        self._identifiers[ref] = identifier
        self._observed[ref] = dict(observed or {})

    def identifier_of(self, ref: NodeRef) -> Optional[str]:
        return self._identifiers.get(ref)

    def is_resolved(self, ref: NodeRef) -> bool:
        return ref in self._identifiers

    def observed_of(self, ref: NodeRef) -> Dict[str, Any]:
        return self._observed.get(ref, {})

    def counts(self) -> Dict[str, int]:
        """Number of declared records per entity kind."""
        return {kind.value: len(records) for kind, records in self._records.items()}


class ViolationKind(str, Enum):
    FORMAT = "format"
    CONSTRAINT = "constraint"
    POLICY = "policy"
    REFERENCE = "reference"


class Violation(BaseModel):
    """A single static validation failure."""
    kind: ViolationKind
    entity_kind: EntityKind
    key: str
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.entity_kind.value}.{self.key}.{self.field}: {self.message}"


class NodeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    BLOCKED = "blocked"
    NOT_ATTEMPTED = "not_attempted"


class NodeOutcome(BaseModel):
    """Result of walking one graph node."""
    node: str
    status: NodeStatus
    action: Optional[PlanAction] = None
    identifier: Optional[str] = None
    error: Optional[str] = None
    blocked_by: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ProvisioningRecord(BaseModel):
    """Audit record for one provisioner call outcome."""
    id: str = Field(..., description="Unique audit record ID")
    timestamp: datetime = Field(default_factory=_utcnow)
    run_id: str
    node: str
    action: str
    success: bool
    identifier: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class AuditReport(BaseModel):
    """Security-posture summary over the resolved model."""
    generated_at: datetime = Field(default_factory=_utcnow)
    counts: Dict[str, int] = Field(default_factory=dict)
    api_keys_without_expiration: List[str] = Field(default_factory=list)
    ssh_keys_disabled: List[str] = Field(default_factory=list)
    ssh_keys_active: List[str] = Field(default_factory=list)


class ReconcileReport(BaseModel):
    """Single structured report covering validation, resolution and provisioning."""
    run_id: str
    started_at: datetime
    completed_at: Optional[datetime] = None
    success: bool = True
    error: Optional[str] = None
    violations: List[Violation] = Field(default_factory=list)
    diagnostics: List[str] = Field(default_factory=list)
    succeeded: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    blocked: List[str] = Field(default_factory=list)
    not_attempted: List[str] = Field(default_factory=list)
    outcomes: Dict[str, NodeOutcome] = Field(default_factory=dict)
    audit: Optional[AuditReport] = None
