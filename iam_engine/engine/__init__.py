"""
Engine Package for the IAM Engine.

Validation, reference resolution, membership flattening, principal
selection, planning, dependency graph construction and execution.
"""

from .executor import GraphExecutor
from .graph import build_dependency_graph
from .membership import flatten_memberships
from .planner import Plan, build_plan
from .policy_attachment import PrincipalSelection, select_principal
from .protection import DeletionProtectionGate
from .resolver import ReferenceResolver
from .state_manager import StateManager
from .validator import Validator

__all__ = [
    "GraphExecutor",
    "build_dependency_graph",
    "flatten_memberships",
    "Plan",
    "build_plan",
    "PrincipalSelection",
    "select_principal",
    "DeletionProtectionGate",
    "ReferenceResolver",
    "StateManager",
    "Validator",
]
