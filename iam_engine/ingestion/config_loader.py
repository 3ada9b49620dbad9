"""
Configuration Loader for the IAM Engine.

Reads a YAML document with a ``settings`` block and one mapping per entity
class, and turns it into EngineSettings plus a typed Entity Model.

Example::

    settings:
      organization_id: 11111111-1111-1111-1111-111111111111
      require_api_key_expiration: false
    applications:
      terraform:
        description: CI deployments
    api_keys:
      terraform_key:
        application_key: terraform
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml
from pydantic import ValidationError as PydanticValidationError

from ..exceptions import ConfigurationError
from ..models import DECLARED_KINDS, RECORD_TYPES, EngineSettings, EntityKind, EntityModel

logger = logging.getLogger(__name__)

# Kinds whose records carry a name; it defaults to the symbolic key.
NAMED_KINDS = (EntityKind.APPLICATION, EntityKind.GROUP, EntityKind.POLICY, EntityKind.SSH_KEY)

KNOWN_SECTIONS = {"settings"} | {kind.value for kind in DECLARED_KINDS}


def load_config(path: Union[str, Path],
                overrides: Optional[Dict[str, Any]] = None) -> Tuple[EngineSettings, EntityModel]:
    """
    Load settings and entities from a YAML file.

    Args:
        path: YAML configuration file
        overrides: Settings that take precedence over the file (e.g. CLI flags)

    Returns:
        (EngineSettings, EntityModel)

    Raises:
        ConfigurationError: if the file is missing, malformed or mistyped
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    logger.info(f"Loaded configuration from {config_path}")
    return load_config_data(data, overrides)


def load_config_data(data: Dict[str, Any],
                     overrides: Optional[Dict[str, Any]] = None) -> Tuple[EngineSettings, EntityModel]:
    """Build settings and entities from an already-parsed document."""
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration root must be a mapping")

    unknown = sorted(set(data) - KNOWN_SECTIONS)
    if unknown:
        raise ConfigurationError(f"Unknown configuration section(s): {', '.join(unknown)}")

    settings_data = dict(data.get("settings") or {})
    settings_data.update({k: v for k, v in (overrides or {}).items() if v is not None})
    try:
        settings = EngineSettings(**settings_data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid settings: {e}") from e

    sections = {}
    for kind in DECLARED_KINDS:
        sections[kind.value] = _load_section(kind, data.get(kind.value) or {})

    model = EntityModel(**sections)
    logger.info(f"Configuration declares {sum(len(s) for s in sections.values())} entities")
    return settings, model


def _load_section(kind: EntityKind, section: Any) -> Dict[str, Any]:
    if not isinstance(section, dict):
        raise ConfigurationError(f"Section '{kind.value}' must be a mapping of key -> entity")

    record_type = RECORD_TYPES[kind]
    records = {}
    for key, fields in section.items():
        if fields is not None and not isinstance(fields, dict):
            raise ConfigurationError(f"Entry '{key}' in '{kind.value}' must be a mapping of field -> value")
        fields = dict(fields or {})
        if kind in NAMED_KINDS:
            fields.setdefault("name", key)
        try:
            records[str(key)] = record_type(**fields)
        except PydanticValidationError as e:
            raise ConfigurationError(f"Invalid {kind.value} entry '{key}': {e}") from e
    return records
