"""
Exception taxonomy for the IAM Engine.

Validation errors are batched and raised before any provisioning happens.
Everything raised after the graph walk starts is scoped to a single node and
recorded on that node's outcome instead of aborting the run.
"""

from typing import Any, List, Optional


class IAMEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(IAMEngineError):
    """One or more static violations found before resolution."""

    def __init__(self, violations: List[Any]):
        self.violations = list(violations)
        lines = [str(v) for v in self.violations]
        super().__init__(
            f"{len(self.violations)} validation violation(s):\n  - " + "\n  - ".join(lines)
        )

    def keys(self) -> List[str]:
        """Entity keys named by the violations, in report order."""
        return [v.key for v in self.violations]


class ConstraintViolation(ValidationError):
    """Exclusivity or structural constraint broken."""


class PolicyViolation(ValidationError):
    """Module-wide expiration policy broken."""


class ReferenceResolutionError(IAMEngineError):
    """A symbolic reference could not be resolved during the graph walk."""

    def __init__(self, kind: str, key: str, reason: str = "not declared"):
        self.kind = kind
        self.key = key
        super().__init__(f"Cannot resolve {kind}.{key}: {reason}")


class IdentifierAlreadyAssigned(IAMEngineError):
    """An identifier slot was written more than once."""


class CycleDetected(IAMEngineError):
    """The dependency graph is not acyclic."""

    def __init__(self, cycle: List[Any]):
        self.cycle = list(cycle)
        path = " -> ".join(str(edge[0]) for edge in self.cycle)
        if self.cycle:
            path += f" -> {self.cycle[-1][1]}"
        super().__init__(f"Dependency cycle detected: {path}")


class ProvisioningError(IAMEngineError):
    """The provisioner refused or failed an operation for one node."""

    def __init__(self, node: Any, message: str, cause: Optional[str] = None):
        self.node = node
        self.cause = cause
        super().__init__(f"{node}: {message}")


class ProtectedDeletionAttempt(IAMEngineError):
    """A plan tried to remove or replace an entity guarded by deletion protection."""

    def __init__(self, node: Any, action: str):
        self.node = node
        self.action = action
        super().__init__(
            f"Refusing to {action} {node}: deletion protection is enabled for this entity"
        )


class ConfigurationError(IAMEngineError):
    """A configuration document could not be turned into typed records."""
