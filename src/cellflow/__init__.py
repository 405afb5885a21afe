"""
cellflow: declarative cell workflows.

Workflows are graphs of isolated cells joined by labeled edges. A manifest
is compiled once into an immutable state machine and then run per request
with schema-checked data flow, fork-join sections and nested sub-workflows.
"""

__version__ = "0.1.0"

from cellflow.core.config import EngineSettings, load_settings
from cellflow.core.manifest import load_manifest, parse_manifest
from cellflow.core.registry import CellRegistry, CellSpec
from cellflow.engine import (
    CompiledWorkflow,
    WorkflowRunner,
    compile_workflow,
    run_workflow,
    workflow_as_cell,
)
from cellflow.system import SystemIndex, compile_system

__all__ = [
    "CellRegistry",
    "CellSpec",
    "CompiledWorkflow",
    "EngineSettings",
    "SystemIndex",
    "WorkflowRunner",
    "__version__",
    "compile_system",
    "compile_workflow",
    "load_manifest",
    "load_settings",
    "parse_manifest",
    "run_workflow",
    "workflow_as_cell",
]
