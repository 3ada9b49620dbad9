"""
Scaleway IAM Connector for the IAM Engine.

Provisions applications, API keys, groups, group memberships, policies,
users and SSH keys through the Scaleway IAM HTTP API.
"""

import logging
from typing import Any, Dict, Optional

import requests

from ..models import EntityKind
from .base_connector import BaseProvisioner, ProvisionerResult

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.scaleway.com/iam/v1alpha1"

RESOURCE_PATHS = {
    EntityKind.APPLICATION: "applications",
    EntityKind.API_KEY: "api-keys",
    EntityKind.GROUP: "groups",
    EntityKind.POLICY: "policies",
    EntityKind.USER: "users",
    EntityKind.SSH_KEY: "ssh-keys",
}

# Fields the API accepts on PATCH, per kind.
UPDATABLE_FIELDS = {
    EntityKind.APPLICATION: ("name", "description", "tags"),
    EntityKind.API_KEY: ("description", "default_project_id"),
    EntityKind.GROUP: ("name", "description", "tags"),
    EntityKind.POLICY: ("name", "description", "tags", "user_id", "group_id",
                        "application_id", "no_principal"),
    EntityKind.USER: ("tags",),
    EntityKind.SSH_KEY: ("name", "disabled"),
}


class ScalewayConnector(BaseProvisioner):
    """Scaleway IAM provisioner backed by the public REST API."""

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 session: Optional[requests.Session] = None):
        super().__init__(config)

        token = self.config.get("secret_key") or self.config.get("token")
        if not token:
            raise ValueError("Scaleway secret key is required")

        self.organization_id = self.config.get("organization_id")
        if not self.organization_id:
            raise ValueError("Scaleway organization ID is required")

        self.api_url = self.config.get("api_url", DEFAULT_API_URL).rstrip("/")
        self.timeout = self.config.get("timeout", 30)
        self.session = session or requests.Session()
        self.session.headers.update({"X-Auth-Token": token, "Content-Type": "application/json"})

    def create(self, kind: EntityKind, key: str, desired: Dict[str, Any]) -> ProvisionerResult:
        """Create a resource; memberships are added through the group endpoint."""
        if kind == EntityKind.GROUP_MEMBERSHIP:
            return self._add_member(key, desired)

        try:
            body = self._create_body(kind, desired)
            response = self.session.post(f"{self.api_url}/{RESOURCE_PATHS[kind]}",
                                         json=body, timeout=self.timeout)
            response.raise_for_status()
            data = response.json()

            identifier = data.get("access_key") if kind == EntityKind.API_KEY else data.get("id")
            logger.info(f"Created Scaleway {kind.value} {key} ({identifier})")
            return ProvisionerResult(True, f"Created {kind.value}.{key}",
                                     identifier=identifier, observed=data)

        except requests.RequestException as e:
            error_msg = f"Failed to create {kind.value}.{key}: {e}"
            logger.error(error_msg)
            return ProvisionerResult(False, error_msg, error=str(e))

    def update(self, kind: EntityKind, identifier: str, desired: Dict[str, Any]) -> ProvisionerResult:
        """Update a resource; memberships are immutable and left untouched."""
        if kind == EntityKind.GROUP_MEMBERSHIP:
            return ProvisionerResult(True, "Memberships have no updatable fields",
                                     identifier=identifier, observed=dict(desired))

        try:
            body = {name: value for name, value in self._create_body(kind, desired).items()
                    if name in UPDATABLE_FIELDS[kind]}
            response = self.session.patch(f"{self.api_url}/{RESOURCE_PATHS[kind]}/{identifier}",
                                          json=body, timeout=self.timeout)
            response.raise_for_status()

            logger.info(f"Updated Scaleway {kind.value} {identifier}")
            return ProvisionerResult(True, f"Updated {kind.value} {identifier}",
                                     identifier=identifier, observed=response.json())

        except requests.RequestException as e:
            error_msg = f"Failed to update {kind.value} {identifier}: {e}"
            logger.error(error_msg)
            return ProvisionerResult(False, error_msg, error=str(e))

    def delete(self, kind: EntityKind, identifier: str) -> ProvisionerResult:
        """Delete a resource; memberships are removed through the group endpoint."""
        try:
            if kind == EntityKind.GROUP_MEMBERSHIP:
                group_id, member_kind, member_id = identifier.split("/", 2)
                response = self.session.post(
                    f"{self.api_url}/groups/{group_id}/remove-member",
                    json={f"{member_kind}_id": member_id},
                    timeout=self.timeout,
                )
            else:
                response = self.session.delete(f"{self.api_url}/{RESOURCE_PATHS[kind]}/{identifier}",
                                               timeout=self.timeout)
            if response.status_code == 404:
                # Already removed, e.g. an API key deleted along with its application
                logger.info(f"Scaleway {kind.value} {identifier} is already gone")
                return ProvisionerResult(True, f"{kind.value} {identifier} already deleted", identifier=identifier)
            response.raise_for_status()

            logger.info(f"Deleted Scaleway {kind.value} {identifier}")
            return ProvisionerResult(True, f"Deleted {kind.value} {identifier}", identifier=identifier)

        except requests.RequestException as e:
            error_msg = f"Failed to delete {kind.value} {identifier}: {e}"
            logger.error(error_msg)
            return ProvisionerResult(False, error_msg, error=str(e))

    def _add_member(self, key: str, desired: Dict[str, Any]) -> ProvisionerResult:
        group_id = desired["group_key"]
        member_kind = desired["member_kind"]
        member_id = desired["member"]
        try:
            response = self.session.post(
                f"{self.api_url}/groups/{group_id}/add-member",
                json={f"{member_kind}_id": member_id},
                timeout=self.timeout,
            )
            response.raise_for_status()

            identifier = f"{group_id}/{member_kind}/{member_id}"
            logger.info(f"Added {member_kind} to Scaleway group {group_id} ({key})")
            return ProvisionerResult(True, f"Created group_memberships.{key}",
                                     identifier=identifier, observed=dict(desired))

        except requests.RequestException as e:
            error_msg = f"Failed to add member for group_memberships.{key}: {e}"
            logger.error(error_msg)
            return ProvisionerResult(False, error_msg, error=str(e))

    def _create_body(self, kind: EntityKind, desired: Dict[str, Any]) -> Dict[str, Any]:
        """Translate the engine payload into the API request body."""
        if kind == EntityKind.APPLICATION:
            return {
                "organization_id": self.organization_id,
                "name": desired["name"],
                "description": desired.get("description", ""),
                "tags": desired.get("tags", []),
            }

        if kind == EntityKind.API_KEY:
            body = {
                "description": desired.get("description", ""),
                "expires_at": desired.get("expires_at"),
                "default_project_id": desired.get("default_project_id"),
            }
            if desired.get("application_key"):
                body["application_id"] = desired["application_key"]
            else:
                body["user_id"] = desired["user_id"]
            return body

        if kind == EntityKind.GROUP:
            return {
                "organization_id": self.organization_id,
                "name": desired["name"],
                "description": desired.get("description", ""),
                "tags": desired.get("tags", []),
            }

        if kind == EntityKind.POLICY:
            rules = []
            for rule in desired.get("rules", []):
                api_rule = {"permission_set_names": rule["permission_set_names"]}
                if rule.get("project_ids"):
                    api_rule["project_ids"] = rule["project_ids"]
                if rule.get("organization_id"):
                    api_rule["organization_id"] = rule["organization_id"]
                rules.append(api_rule)
            body = {
                "organization_id": self.organization_id,
                "name": desired["name"],
                "description": desired.get("description", ""),
                "tags": desired.get("tags", []),
                "rules": rules,
            }
            body.update(self._principal_body(desired))
            return body

        if kind == EntityKind.USER:
            return {
                "organization_id": self.organization_id,
                "email": desired["email"],
                "tags": desired.get("tags", []),
                "member": {
                    "email": desired["email"],
                    "username": desired["username"],
                    "send_password_email": desired.get("send_password_email", False),
                    "send_welcome_email": desired.get("send_welcome_email", False),
                },
            }

        if kind == EntityKind.SSH_KEY:
            return {
                "name": desired["name"],
                "public_key": desired["public_key"],
                "project_id": desired.get("project_id"),
                "disabled": desired.get("disabled", False),
            }

        raise ValueError(f"Unsupported entity kind: {kind}")

    @staticmethod
    def _principal_body(desired: Dict[str, Any]) -> Dict[str, Any]:
        principal_kind = desired.get("principal_kind")
        if not principal_kind:
            return {"no_principal": True}
        singular = {"users": "user_id", "groups": "group_id", "applications": "application_id"}
        return {singular[principal_kind]: desired["principal_id"]}
