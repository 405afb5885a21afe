# src/cellflow/core/__init__.py
"""Core infrastructure: Registry, Configuration, Manifest, DAG, Logging."""

from cellflow.core.config import EngineSettings, load_settings
from cellflow.core.logging import configure_logging, run_context
from cellflow.core.registry import CellRegistry, CellSpec
from cellflow.core.schema_factory import SchemaValidator, create_schema_model

__all__ = [
    "CellRegistry",
    "CellSpec",
    "EngineSettings",
    "SchemaValidator",
    "configure_logging",
    "create_schema_model",
    "load_settings",
    "run_context",
]
