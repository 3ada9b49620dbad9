"""
IAM Reconciliation Engine

Turns declarative IAM entity definitions (applications, API keys, groups,
policies, users and SSH keys) with symbolic cross-references into a
validated, fully resolved resource graph and provisions it in dependency
order.
"""

__version__ = "1.0.0"
__author__ = "IAM Engine Team"
__email__ = "team@example.com"

from .engine.state_manager import StateManager
from .engine.validator import Validator
from .exporter import export_resolved
from .models import EngineSettings, EntityModel
from .workflows.reconcile import ReconcileWorkflow

__all__ = [
    "EngineSettings",
    "EntityModel",
    "ReconcileWorkflow",
    "StateManager",
    "Validator",
    "export_resolved",
]
