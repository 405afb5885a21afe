"""Sub-workflows: a compiled workflow exposed as one opaque cell.

The wrapping cell runs the child with a nested runner and routes on two
transitions:

    success  the child reached end or halt; its output keys are kept
    failure  anything else; the parent sees only the generic marker
             ``cellflow.error = {"failed": True, "workflow": <child id>}``

The child's trace is attached under ``cellflow.child_trace`` either way.
Internal cell names never reach the parent's data keys, so parent
predicates cannot depend on them.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from cellflow.contracts.enums import RunStatus
from cellflow.contracts.errors import SubworkflowErrorMarker
from cellflow.contracts.keys import CHILD_TRACE_KEY, ERROR_KEY, STATUS_KEY, TRACE_KEY, strip_reserved
from cellflow.contracts.schema import SchemaConfig
from cellflow.contracts.types import Resources
from cellflow.core.config import EngineSettings
from cellflow.core.registry import CellRegistry, CellSpec
from cellflow.engine.compiled import CompiledWorkflow
from cellflow.engine.runner import WorkflowRunner

slog = structlog.get_logger(__name__)

SUCCESS = "success"
FAILURE = "failure"

_SUCCESS_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.HALTED})


def subworkflow_failed(data: Mapping[str, Any]) -> bool:
    """True if ``data`` carries the generic sub-workflow failure marker."""
    marker = data.get(ERROR_KEY)
    return isinstance(marker, Mapping) and marker.get("failed") is True


def subworkflow_succeeded(data: Mapping[str, Any]) -> bool:
    return not subworkflow_failed(data)


def workflow_as_cell(
    workflow: CompiledWorkflow,
    *,
    cell_id: str | None = None,
    input: Any = None,
    output: Any = None,
    requires: tuple[str, ...] | None = None,
    settings: EngineSettings | None = None,
    doc: str | None = None,
) -> CellSpec:
    """Wrap ``workflow`` as a CellSpec with success/failure dispatch.

    Args:
        workflow: Compiled child workflow
        cell_id: Registry id (defaults to the child's manifest id)
        input: External input schema (defaults to the child's input schema)
        output: External output schema on success (defaults to dynamic);
            this, not the child's internal cells, is what the parent's
            schema chain sees
        requires: Resource keys (defaults to everything the child needs)
        settings: Settings for the nested runner
        doc: Description (defaults to the child's doc)
    """
    runner = WorkflowRunner(settings)
    marker = SubworkflowErrorMarker(failed=True, workflow=workflow.id)

    def handler(resources: Resources, data: dict[str, Any]) -> dict[str, Any]:
        child_input = strip_reserved(data)
        try:
            result = runner.run(workflow, resources, child_input)
        except Exception as exc:
            slog.warning("subworkflow_aborted", workflow=workflow.id, error=str(exc), error_type=type(exc).__name__)
            return {**data, ERROR_KEY: dict(marker), CHILD_TRACE_KEY: ()}

        child_trace = result[TRACE_KEY]
        if result[STATUS_KEY] in _SUCCESS_STATUSES:
            merged = {key: value for key, value in data.items() if key != ERROR_KEY}
            merged.update(strip_reserved(result))
            merged[CHILD_TRACE_KEY] = child_trace
            return merged

        slog.info("subworkflow_failed", workflow=workflow.id, status=str(result[STATUS_KEY]), steps=len(child_trace))
        return {**data, ERROR_KEY: dict(marker), CHILD_TRACE_KEY: child_trace}

    input_schema = SchemaConfig.from_value(input) if input is not None else _child_input_schema(workflow)
    success_schema = SchemaConfig.from_value(output)

    return CellSpec(
        id=cell_id or workflow.id,
        handler=handler,
        input_schema=input_schema,
        output_schema={SUCCESS: success_schema, FAILURE: SchemaConfig.dynamic()},
        requires=tuple(sorted(workflow.requires)) if requires is None else tuple(requires),
        doc=doc or workflow.doc,
        default_dispatches=((FAILURE, subworkflow_failed), (SUCCESS, subworkflow_succeeded)),
        child=workflow,
    )


def _child_input_schema(workflow: CompiledWorkflow) -> SchemaConfig:
    if workflow.input_validator is None:
        return SchemaConfig.dynamic()
    return workflow.input_validator.config


def register_workflow_cell(registry: CellRegistry, workflow: CompiledWorkflow, *, replace: bool = False, **kwargs: Any) -> CellSpec:
    """Wrap ``workflow`` with :func:`workflow_as_cell` and register it."""
    return registry.add(workflow_as_cell(workflow, **kwargs), replace=replace)
