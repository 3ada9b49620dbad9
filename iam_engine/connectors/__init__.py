"""
Connectors Package for the IAM Engine.

This package provides the Resource Provisioner contract, an in-memory
provisioner for dry runs and tests, and the Scaleway IAM connector.
"""

from .base_connector import BaseProvisioner, MockProvisioner, ProvisionerResult
from .scaleway_connector import ScalewayConnector


def get_provisioner(config=None, mock: bool = True) -> BaseProvisioner:
    """Build the provisioner selected by configuration."""
    if mock:
        return MockProvisioner(config)
    return ScalewayConnector(config)


__all__ = [
    "BaseProvisioner",
    "MockProvisioner",
    "ProvisionerResult",
    "ScalewayConnector",
    "get_provisioner",
]
