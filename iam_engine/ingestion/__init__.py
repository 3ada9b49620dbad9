"""
Ingestion Package for the IAM Engine.

Loads declared entities and settings from configuration documents.
"""

from .config_loader import load_config, load_config_data

__all__ = ["load_config", "load_config_data"]
