"""WorkflowRunner: executes a CompiledWorkflow as a state machine.

States are cell names, join names and the terminal markers end, error and
halt. One run is sequential; only join nodes fan out.

The result is the final data record plus:
    cellflow.trace         tuple of TraceEntry, one per executed node
    cellflow.status        RunStatus
    cellflow.input_error   initial data failed the input schema (no cell ran)
    cellflow.schema_error  a cell's input or output failed its schema
    cellflow.error         a cell handler raised
    cellflow.join_error    a join member failed or members collided

Dispatch exhaustion and runaway loops are raised, not recorded.
"""

from __future__ import annotations

from typing import Any

import structlog

from cellflow.contracts.enums import RunStatus
from cellflow.contracts.errors import InputErrorRecord, RunawayWorkflowError
from cellflow.contracts.keys import (
    END,
    ERROR,
    ERROR_KEY,
    HALT,
    INPUT_ERROR_KEY,
    SCHEMA_ERROR_KEY,
    STATUS_KEY,
    TERMINAL_STATES,
    TRACE_KEY,
    strip_reserved,
)
from cellflow.contracts.trace import TraceEntry
from cellflow.contracts.types import Resources
from cellflow.core.config import EngineSettings
from cellflow.core.logging import run_context
from cellflow.engine.cell_executor import check_input, check_output, error_record, invoke
from cellflow.engine.compiled import CompiledCell, CompiledJoin, CompiledWorkflow
from cellflow.engine.dispatch import select_transition
from cellflow.engine.join_executor import JoinExecutor

slog = structlog.get_logger(__name__)

ON_ERROR_TRANSITION = "on_error"

_FINAL_STATUS = {END: RunStatus.COMPLETED, ERROR: RunStatus.ERROR, HALT: RunStatus.HALTED}


class WorkflowRunner:
    """Runs compiled workflows. Holds no per-run state; safe to share across threads."""

    def __init__(self, settings: EngineSettings | None = None, *, join_executor: JoinExecutor | None = None) -> None:
        self._settings = settings or EngineSettings()
        self._joins = join_executor or JoinExecutor(
            max_workers=self._settings.join_max_workers,
            member_retries=self._settings.join_member_retries,
            async_timeout=self._settings.async_timeout_seconds,
        )

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def run(
        self,
        workflow: CompiledWorkflow,
        resources: Resources | None = None,
        data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute ``workflow`` from its start state.

        Raises:
            DispatchError: No predicate matched a cell's output
            RunawayWorkflowError: More than ``max_steps`` nodes executed
        """
        with run_context(workflow.id):
            return self._run(workflow, resources if resources is not None else {}, dict(data or {}))

    def _run(self, workflow: CompiledWorkflow, resources: Resources, record: dict[str, Any]) -> dict[str, Any]:
        if workflow.input_validator is not None:
            errors = workflow.input_validator.validate(record)
            if errors is not None:
                slog.info("workflow_input_rejected", error_count=len(errors))
                input_error = InputErrorRecord(
                    schema=workflow.input_validator.describe(),
                    errors=errors,
                    data=strip_reserved(record),
                )
                return {**record, INPUT_ERROR_KEY: input_error, TRACE_KEY: (), STATUS_KEY: RunStatus.INPUT_ERROR}
            record = workflow.input_validator.coerce(record)

        trace: list[TraceEntry] = []
        state = workflow.start
        steps = 0
        while state not in TERMINAL_STATES:
            steps += 1
            if steps > self._settings.max_steps:
                slog.error("workflow_runaway", max_steps=self._settings.max_steps, last_state=state)
                raise RunawayWorkflowError(workflow.id, self._settings.max_steps)
            if state in workflow.joins:
                state, record = self._step_join(workflow.joins[state], resources, record, trace)
            else:
                state, record = self._step_cell(workflow.cells[state], resources, record, trace)

        status = _FINAL_STATUS[state]
        slog.info("workflow_finished", status=str(status), steps=len(trace))
        return {**record, TRACE_KEY: tuple(trace), STATUS_KEY: status}

    def _step_cell(
        self,
        cell: CompiledCell,
        resources: Resources,
        data: dict[str, Any],
        trace: list[TraceEntry],
    ) -> tuple[str, dict[str, Any]]:
        schema_error = check_input(cell, data)
        if schema_error is not None:
            slog.warning("cell_input_invalid", cell=cell.name, cell_id=cell.cell_id, errors=len(schema_error["errors"]))
            failed = {**data, SCHEMA_ERROR_KEY: schema_error}
            trace.append(_entry(cell, None, ERROR, failed))
            return ERROR, failed

        try:
            output = invoke(cell, resources, dict(data), timeout=self._settings.async_timeout_seconds)
        except Exception as exc:
            slog.warning(
                "cell_failed",
                cell=cell.name,
                cell_id=cell.cell_id,
                error=str(exc),
                error_type=type(exc).__name__,
                on_error=cell.on_error,
            )
            failed = {**data, ERROR_KEY: error_record(cell, exc)}
            if cell.on_error is not None:
                trace.append(_entry(cell, ON_ERROR_TRANSITION, cell.on_error, failed))
                return cell.on_error, failed
            trace.append(_entry(cell, None, ERROR, failed))
            return ERROR, failed

        transition = select_transition(cell.name, cell.predicates, output) if cell.predicates else None

        schema_error = check_output(cell, transition, output)
        if schema_error is not None:
            slog.warning(
                "cell_output_invalid",
                cell=cell.name,
                cell_id=cell.cell_id,
                transition=transition,
                errors=len(schema_error["errors"]),
            )
            failed = {**output, SCHEMA_ERROR_KEY: schema_error}
            trace.append(_entry(cell, transition, ERROR, failed))
            return ERROR, failed

        target = cell.target_for(transition)
        slog.debug("cell_completed", cell=cell.name, cell_id=cell.cell_id, transition=transition, target=target)
        trace.append(_entry(cell, transition, target, output))
        return target, output

    def _step_join(
        self,
        join: CompiledJoin,
        resources: Resources,
        data: dict[str, Any],
        trace: list[TraceEntry],
    ) -> tuple[str, dict[str, Any]]:
        result = self._joins.execute(join, resources, data)
        target = join.target_for(result.transition) or ERROR
        trace.append(
            TraceEntry(
                cell_name=join.name,
                cell_id=join.name,
                transition=result.transition,
                target=target,
                data=strip_reserved(result.data),
            )
        )
        return target, result.data


def _entry(cell: CompiledCell, transition: str | None, target: str, data: dict[str, Any]) -> TraceEntry:
    return TraceEntry(cell_name=cell.name, cell_id=cell.cell_id, transition=transition, target=target, data=strip_reserved(data))


def run_workflow(
    workflow: CompiledWorkflow,
    resources: Resources | None = None,
    data: dict[str, Any] | None = None,
    *,
    settings: EngineSettings | None = None,
) -> dict[str, Any]:
    """Run ``workflow`` once with a fresh runner."""
    return WorkflowRunner(settings).run(workflow, resources, data)
