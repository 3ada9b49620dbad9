"""
Validation Engine for the IAM Engine.

Runs every static check against the Entity Model before any resolution or
provisioning is attempted, and reports all violations in one batch.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from ..exceptions import ConstraintViolation, PolicyViolation, ValidationError
from ..models import (
    ApiKey,
    EngineSettings,
    EntityKind,
    EntityModel,
    Group,
    Policy,
    SshKey,
    User,
    Violation,
    ViolationKind,
)

logger = logging.getLogger(__name__)

NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{0,62}$")
UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
TIMESTAMP_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}Z$")
SSH_KEY_PATTERN = re.compile(
    r"^(ssh-rsa|ssh-ed25519|ssh-ecdsa|ecdsa-sha2-nistp(256|384|521)) "
    r"[A-Za-z0-9+/]+={0,3}( \S.*)?$"
)
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def is_uuid(value: str) -> bool:
    return bool(UUID_PATTERN.match(value or ""))


def parse_timestamp(value: str) -> Optional[datetime]:
    """Parse a YYYY-MM-DDTHH:MM:SSZ timestamp, None if malformed."""
    if not TIMESTAMP_PATTERN.match(value or ""):
        return None
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


class Validator:
    """
    Static checker for a declared Entity Model.

    Every check runs independently; nothing short-circuits, so the caller
    receives the complete list of violations in one report.
    """

    def __init__(self, settings: Optional[EngineSettings] = None,
                 now: Optional[datetime] = None):
        """
        Initialize the validator.

        Args:
            settings: Module-wide toggles (expiration policy)
            now: Evaluation time for the validity window, defaults to current UTC time
        """
        self.settings = settings or EngineSettings()
        self.now = now

    def validate(self, model: EntityModel) -> List[Violation]:
        """
        Run all checks against the model.

        Returns:
            Ordered list of violations, empty when the model is valid
        """
        violations: List[Violation] = []

        for key, application in model.applications.items():
            self._check_name(violations, EntityKind.APPLICATION, key, "name", application.name)

        for key, api_key in model.api_keys.items():
            self._check_api_key(violations, model, key, api_key)

        for key, group in model.groups.items():
            self._check_group(violations, model, key, group)

        for key, policy in model.policies.items():
            self._check_policy(violations, model, key, policy)

        for key, user in model.users.items():
            self._check_user(violations, key, user)

        for key, ssh_key in model.ssh_keys.items():
            self._check_ssh_key(violations, key, ssh_key)

        if violations:
            logger.warning(f"Validation found {len(violations)} violation(s)")
        else:
            logger.debug("Validation passed")
        return violations

    def check(self, model: EntityModel):
        """
        Validate and raise when anything is wrong.

        Raises:
            ConstraintViolation: all violations are constraint violations
            PolicyViolation: all violations are expiration-policy violations
            ValidationError: mixed or other violations
        """
        violations = self.validate(model)
        if not violations:
            return

        kinds = {v.kind for v in violations}
        if kinds == {ViolationKind.CONSTRAINT}:
            raise ConstraintViolation(violations)
        if kinds == {ViolationKind.POLICY}:
            raise PolicyViolation(violations)
        raise ValidationError(violations)

    def _check_api_key(self, violations: List[Violation], model: EntityModel,
                       key: str, api_key: ApiKey):
        kind = EntityKind.API_KEY

        has_application = bool(api_key.application_key)
        has_user = bool(api_key.user_id)
        if has_application == has_user:
            state = "both are set" if has_application else "neither is set"
            violations.append(self._violation(
                ViolationKind.CONSTRAINT, kind, key, "application_key",
                f"exactly one of application_key or user_id must be set, {state}",
            ))

        if has_application:
            self._check_reference(violations, model, kind, key, "application_key",
                                  EntityKind.APPLICATION, api_key.application_key)
        if has_user:
            self._check_user_entry(violations, model, kind, key, "user_id", api_key.user_id)

        if api_key.default_project_id is not None:
            self._check_uuid(violations, kind, key, "default_project_id", api_key.default_project_id)

        expires_at = None
        if api_key.expires_at is not None:
            expires_at = parse_timestamp(api_key.expires_at)
            if expires_at is None:
                violations.append(self._violation(
                    ViolationKind.FORMAT, kind, key, "expires_at",
                    f"'{api_key.expires_at}' is not a YYYY-MM-DDTHH:MM:SSZ timestamp",
                ))

        if self.settings.require_api_key_expiration and api_key.expires_at is None:
            violations.append(self._violation(
                ViolationKind.POLICY, kind, key, "expires_at",
                "API keys must have an expiration date",
            ))

        max_days = self.settings.api_key_max_validity_days
        if max_days and expires_at is not None:
            now = self.now or datetime.now(timezone.utc)
            if expires_at > now + timedelta(days=max_days):
                violations.append(self._violation(
                    ViolationKind.POLICY, kind, key, "expires_at",
                    f"expiration {api_key.expires_at} exceeds the maximum validity of {max_days} days",
                ))

    def _check_group(self, violations: List[Violation], model: EntityModel,
                     key: str, group: Group):
        kind = EntityKind.GROUP
        self._check_name(violations, kind, key, "name", group.name)
        for application_key in group.application_keys:
            self._check_reference(violations, model, kind, key, "application_keys",
                                  EntityKind.APPLICATION, application_key)
        for entry in group.user_ids:
            self._check_user_entry(violations, model, kind, key, "user_ids", entry)

    def _check_policy(self, violations: List[Violation], model: EntityModel,
                      key: str, policy: Policy):
        kind = EntityKind.POLICY
        self._check_name(violations, kind, key, "name", policy.name)

        if not policy.rules:
            violations.append(self._violation(
                ViolationKind.CONSTRAINT, kind, key, "rules", "at least one rule is required",
            ))

        for index, rule in enumerate(policy.rules):
            field = f"rules[{index}]"
            if not rule.permission_set_names:
                violations.append(self._violation(
                    ViolationKind.CONSTRAINT, kind, key, f"{field}.permission_set_names",
                    "each rule must name at least one permission set",
                ))
            for name in rule.permission_set_names:
                self._check_name(violations, kind, key, f"{field}.permission_set_names", name)

            if rule.organization_id is None and not rule.project_ids:
                violations.append(self._violation(
                    ViolationKind.CONSTRAINT, kind, key, field,
                    "a rule must scope to an organization or to at least one project",
                ))
            if rule.organization_id is not None:
                self._check_uuid(violations, kind, key, f"{field}.organization_id", rule.organization_id)
            for project_id in rule.project_ids:
                self._check_uuid(violations, kind, key, f"{field}.project_ids", project_id)

        for entry in policy.user_ids:
            self._check_user_entry(violations, model, kind, key, "user_ids", entry)
        for group_key in policy.group_keys:
            self._check_reference(violations, model, kind, key, "group_keys",
                                  EntityKind.GROUP, group_key)
        for application_key in policy.application_keys:
            self._check_reference(violations, model, kind, key, "application_keys",
                                  EntityKind.APPLICATION, application_key)

    def _check_user(self, violations: List[Violation], key: str, user: User):
        kind = EntityKind.USER
        if not EMAIL_PATTERN.match(user.email or ""):
            violations.append(self._violation(
                ViolationKind.FORMAT, kind, key, "email", "not a valid email address",
            ))
        self._check_name(violations, kind, key, "username", user.username)

    def _check_ssh_key(self, violations: List[Violation], key: str, ssh_key: SshKey):
        kind = EntityKind.SSH_KEY
        self._check_name(violations, kind, key, "name", ssh_key.name)
        if not SSH_KEY_PATTERN.match(ssh_key.public_key or ""):
            violations.append(self._violation(
                ViolationKind.FORMAT, kind, key, "public_key",
                "expected '<ssh-rsa|ssh-ed25519|ecdsa-sha2-*> <base64>'",
            ))
        if ssh_key.project_id is not None:
            self._check_uuid(violations, kind, key, "project_id", ssh_key.project_id)

    def _check_name(self, violations: List[Violation], kind: EntityKind, key: str,
                    field: str, value: str):
        if not NAME_PATTERN.match(value or ""):
            violations.append(self._violation(
                ViolationKind.FORMAT, kind, key, field,
                f"'{value}' must start with a letter and contain only letters, digits, '_' or '-' (max 63)",
            ))

    def _check_uuid(self, violations: List[Violation], kind: EntityKind, key: str,
                    field: str, value: str):
        if not is_uuid(value):
            violations.append(self._violation(
                ViolationKind.FORMAT, kind, key, field, f"'{value}' is not a UUID",
            ))

    def _check_reference(self, violations: List[Violation], model: EntityModel,
                         kind: EntityKind, key: str, field: str,
                         target: EntityKind, reference: str):
        if not model.has(target, reference):
            violations.append(self._violation(
                ViolationKind.REFERENCE, kind, key, field,
                f"'{reference}' does not name a declared {target.value} entry",
            ))

    def _check_user_entry(self, violations: List[Violation], model: EntityModel,
                          kind: EntityKind, key: str, field: str, entry: str):
        """User entries name a declared user or carry a raw user id."""
        if model.has(EntityKind.USER, entry) or is_uuid(entry):
            return
        violations.append(self._violation(
            ViolationKind.REFERENCE, kind, key, field,
            f"'{entry}' is neither a declared user nor a user id",
        ))

    @staticmethod
    def _violation(kind: ViolationKind, entity_kind: EntityKind, key: str,
                   field: str, message: str) -> Violation:
        return Violation(kind=kind, entity_kind=entity_kind, key=key, field=field, message=message)
