"""
Base Provisioner Classes for the IAM Engine.

This module defines the Resource Provisioner contract the engine drives,
plus an in-memory provisioner used for dry runs and tests.
"""

import logging
import secrets
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models import EntityKind

logger = logging.getLogger(__name__)


class ProvisionerResult:
    """Result of a provisioner operation."""

    def __init__(self, success: bool, message: str = "", identifier: Optional[str] = None,
                 observed: Optional[Dict[str, Any]] = None, error: Optional[str] = None):
        self.success = success
        self.message = message
        self.identifier = identifier
        self.observed = observed or {}
        self.error = error

    def __bool__(self):
        return self.success

    def __str__(self):
        return f"{'✓' if self.success else '✗'} {self.message}"


class BaseProvisioner(ABC):
    """
    Abstract base class for resource provisioners.

    A provisioner creates, updates and deletes backend resources and assigns
    their identifiers. ``create`` must be idempotent per (kind, key), so a
    retried create returns the resource created the first time.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        """
        Initialize the provisioner.

        Args:
            config: Configuration dictionary with API credentials, endpoints, etc.
        """
        self.config = config or {}
        logger.info(f"Initialized {self.__class__.__name__}")

    @abstractmethod
    def create(self, kind: EntityKind, key: str, desired: Dict[str, Any]) -> ProvisionerResult:
        """
        Create a resource.

        Args:
            kind: Entity kind
            key: Symbolic key, used with kind as the idempotency key
            desired: Fully resolved payload

        Returns:
            ProvisionerResult carrying the identifier and observed fields
        """

    @abstractmethod
    def update(self, kind: EntityKind, identifier: str, desired: Dict[str, Any]) -> ProvisionerResult:
        """
        Update a resource in place.

        Returns:
            ProvisionerResult carrying the observed fields
        """

    @abstractmethod
    def delete(self, kind: EntityKind, identifier: str) -> ProvisionerResult:
        """
        Delete a resource.

        Returns:
            ProvisionerResult acknowledging the deletion
        """


class MockProvisioner(BaseProvisioner):
    """
    In-memory provisioner.

    Assigns uuid identifiers, generates API-key access/secret pairs and user
    status fields, and reproduces the backend rule that SSH keys cannot be
    created disabled. Every call is appended to ``calls`` in order.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 fail_on: Optional[Iterable[Tuple[EntityKind, str]]] = None):
        """
        Initialize the mock provisioner.

        Args:
            config: Unused, kept for interface parity
            fail_on: (kind, key) pairs whose create always fails
        """
        super().__init__(config)
        self.resources: Dict[str, Dict[str, Any]] = {}
        self.created: Dict[Tuple[EntityKind, str], str] = {}
        self.calls: List[Dict[str, Any]] = []
        self.fail_on = set(fail_on or [])
        self._lock = threading.Lock()

    def create(self, kind: EntityKind, key: str, desired: Dict[str, Any]) -> ProvisionerResult:
        self._record("create", kind, key=key, fields=desired)

        if (kind, key) in self.fail_on:
            return ProvisionerResult(False, f"Simulated failure creating {kind.value}.{key}",
                                     error="simulated failure")

        if kind == EntityKind.SSH_KEY and desired.get("disabled"):
            return ProvisionerResult(False, "SSH keys cannot be created disabled",
                                     error="disabled must be false on creation")

        with self._lock:
            existing = self.created.get((kind, key))
            if existing is not None:
                resource = self.resources[existing]
                return ProvisionerResult(True, f"{kind.value}.{key} already exists",
                                         identifier=existing, observed=dict(resource["observed"]))

            identifier = str(uuid.uuid4())
            observed = dict(desired)
            observed.update(self._generated_fields(kind))
            self.created[(kind, key)] = identifier
            self.resources[identifier] = {"kind": kind, "key": key, "observed": observed, "deleted": False}

        logger.info(f"Mock created {kind.value}.{key}")
        return ProvisionerResult(True, f"Created {kind.value}.{key}",
                                 identifier=identifier, observed=dict(observed))

    def update(self, kind: EntityKind, identifier: str, desired: Dict[str, Any]) -> ProvisionerResult:
        self._record("update", kind, key=self._key_of(identifier), identifier=identifier, fields=desired)

        with self._lock:
            resource = self.resources.get(identifier)
            if resource is None or resource["deleted"]:
                return ProvisionerResult(False, f"{kind.value} {identifier} not found", error="not found")
            if (kind, resource["key"]) in self.fail_on:
                return ProvisionerResult(False, f"Simulated failure updating {kind.value} {identifier}",
                                         error="simulated failure")
            resource["observed"].update(desired)
            observed = dict(resource["observed"])

        logger.info(f"Mock updated {kind.value} {identifier}")
        return ProvisionerResult(True, f"Updated {kind.value} {identifier}",
                                 identifier=identifier, observed=observed)

    def delete(self, kind: EntityKind, identifier: str) -> ProvisionerResult:
        self._record("delete", kind, key=self._key_of(identifier), identifier=identifier)

        with self._lock:
            resource = self.resources.get(identifier)
            if resource is None:
                return ProvisionerResult(False, f"{kind.value} {identifier} not found", error="not found")
            resource["deleted"] = True
            self.created.pop((kind, resource["key"]), None)

        logger.info(f"Mock deleted {kind.value} {identifier}")
        return ProvisionerResult(True, f"Deleted {kind.value} {identifier}", identifier=identifier)

    def adopt(self, kind: EntityKind, key: str, identifier: str, observed: Dict[str, Any]):
        """Register a resource that already exists, so updates and deletes against it succeed."""
        with self._lock:
            self.created[(kind, key)] = identifier
            self.resources[identifier] = {"kind": kind, "key": key, "observed": dict(observed), "deleted": False}

    def calls_for(self, kind: EntityKind, key: Optional[str] = None) -> List[Dict[str, Any]]:
        """Calls made for one kind, optionally narrowed to one key."""
        with self._lock:
            calls = list(self.calls)
        result = []
        for call in calls:
            if call["kind"] != kind:
                continue
            if key is not None and call.get("key") != key:
                continue
            result.append(call)
        return result

    def get_mock_state(self) -> Dict[str, Any]:
        """Get live (non-deleted) resources for inspection."""
        with self._lock:
            return {
                identifier: dict(resource)
                for identifier, resource in self.resources.items()
                if not resource["deleted"]
            }

    def _key_of(self, identifier: str) -> Optional[str]:
        with self._lock:
            resource = self.resources.get(identifier)
        return resource["key"] if resource else None

    def _record(self, operation: str, kind: EntityKind, **details: Any):
        with self._lock:
            entry = {
                "seq": len(self.calls),
                "operation": operation,
                "kind": kind,
                "at": datetime.now(timezone.utc),
            }
            entry.update(details)
            self.calls.append(entry)

    @staticmethod
    def _generated_fields(kind: EntityKind) -> Dict[str, Any]:
        now = datetime.now(timezone.utc).isoformat()
        if kind == EntityKind.API_KEY:
            return {
                "access_key": "SCW" + secrets.token_hex(8).upper(),
                "secret_key": str(uuid.uuid4()),
                "created_at": now,
            }
        if kind == EntityKind.USER:
            return {
                "two_factor_enabled": False,
                "last_login_at": None,
                "status": "activated",
                "type": "member",
                "created_at": now,
            }
        return {"created_at": now}
