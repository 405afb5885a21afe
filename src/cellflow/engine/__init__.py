# src/cellflow/engine/__init__.py
"""Execution engine: compiler and runtime for cellflow workflows.

This module provides:
- WorkflowCompiler: manifest -> immutable CompiledWorkflow
- WorkflowRunner: runs a CompiledWorkflow as a state machine
- JoinExecutor: fork-join execution of join nodes
- workflow_as_cell: nests a compiled workflow as one opaque cell

Example:
    from cellflow.core.manifest import load_manifest
    from cellflow.engine import compile_workflow, run_workflow

    workflow = compile_workflow(load_manifest("loan.yaml"), registry)
    result = run_workflow(workflow, {"db": db}, {"applicant_id": "a-1"})
"""

from cellflow.engine.compiled import CompiledCell, CompiledJoin, CompiledWorkflow
from cellflow.engine.compiler import WorkflowCompiler, compile_workflow
from cellflow.engine.expression_parser import (
    ExpressionEvaluationError,
    ExpressionParser,
    ExpressionSecurityError,
    ExpressionSyntaxError,
)
from cellflow.engine.join_executor import JoinExecutor, JoinResult
from cellflow.engine.runner import WorkflowRunner, run_workflow
from cellflow.engine.subworkflow import register_workflow_cell, workflow_as_cell

__all__ = [
    "CompiledCell",
    "CompiledJoin",
    "CompiledWorkflow",
    "ExpressionEvaluationError",
    "ExpressionParser",
    "ExpressionSecurityError",
    "ExpressionSyntaxError",
    "JoinExecutor",
    "JoinResult",
    "WorkflowCompiler",
    "WorkflowRunner",
    "compile_workflow",
    "register_workflow_cell",
    "run_workflow",
    "workflow_as_cell",
]
