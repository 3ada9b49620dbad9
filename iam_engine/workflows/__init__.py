"""
Workflows Package for the IAM Engine.

This package provides the reconcile workflow that drives declared
entities to the provisioning backend.
"""

from .reconcile import ReconcileWorkflow

__all__ = ["ReconcileWorkflow"]
