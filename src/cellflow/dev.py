"""Development helpers for cell authors and manifest writers.

These are meant for unit tests of cell implementations and for exploring a
manifest while it is being written. Nothing here is used by the runner.
"""

from __future__ import annotations

import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import structlog

from cellflow.contracts.enums import ImplementationStatus
from cellflow.contracts.schema import output_schema_for
from cellflow.contracts.types import Resources
from cellflow.core.dag.graph import WorkflowGraph
from cellflow.core.dag.models import EdgeInfo
from cellflow.core.manifest.brief import example_record
from cellflow.core.manifest.fragments import expand_all_fragments
from cellflow.core.manifest.models import Manifest
from cellflow.core.registry import CellRegistry
from cellflow.core.schema_factory import SchemaValidator
from cellflow.engine.cell_executor import resolve_pending
from cellflow.engine.dispatch import compile_predicates, select_transition

slog = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CellCheck:
    """Result of running one cell in isolation.

    Attributes:
        passed: No errors in any phase
        errors: ``{"phase": input|handler|dispatch|output|transition, "detail": ...}``
        output: Data returned by the handler, None if it never returned
        transition: Label selected by the dispatch predicates, if any
        duration_ms: Wall time of the handler call
    """

    passed: bool
    errors: tuple[dict[str, Any], ...]
    output: dict[str, Any] | None
    transition: str | None
    duration_ms: float


def _dispatch_entries(dispatches: Mapping[str, Any] | Sequence[tuple[str, Any]] | None) -> list[tuple[str, Any]]:
    if dispatches is None:
        return []
    if isinstance(dispatches, Mapping):
        return list(dispatches.items())
    return list(dispatches)


def test_cell(
    registry: CellRegistry,
    cell_id: str,
    data: dict[str, Any],
    *,
    resources: Resources | None = None,
    dispatches: Mapping[str, Any] | Sequence[tuple[str, Any]] | None = None,
    expected_transition: str | None = None,
    timeout: float | None = None,
) -> CellCheck:
    """Run ``cell_id`` once with full schema checking.

    ``dispatches`` defaults to the cell's registered default dispatches.
    The output is validated against the schema of the selected transition.

    Raises:
        CellNotFoundError: ``cell_id`` is not registered
    """
    spec = registry.require(cell_id)
    input_errors = SchemaValidator.build(spec.input_schema, f"{cell_id}.input").validate(data)
    if input_errors is not None:
        return CellCheck(False, ({"phase": "input", "detail": input_errors},), None, None, 0.0)

    started = time.perf_counter()
    try:
        output = resolve_pending(spec.handler(resources or {}, dict(data)), timeout)
    except Exception as exc:
        duration = (time.perf_counter() - started) * 1000
        detail = f"{type(exc).__name__}: {exc}"
        return CellCheck(False, ({"phase": "handler", "detail": detail},), None, None, duration)
    duration = (time.perf_counter() - started) * 1000

    if not isinstance(output, Mapping):
        detail = f"returned {type(output).__name__}, expected a dict"
        return CellCheck(False, ({"phase": "handler", "detail": detail},), None, None, duration)
    output = dict(output)

    errors: list[dict[str, Any]] = []
    entries = _dispatch_entries(dispatches) or list(spec.default_dispatches)
    transition = None
    if entries:
        try:
            transition = select_transition(cell_id, compile_predicates(entries), output)
        except Exception as exc:
            errors.append({"phase": "dispatch", "detail": str(exc)})

    schema = output_schema_for(spec.output_schema, transition)
    if schema is not None:
        output_errors = SchemaValidator.build(schema, f"{cell_id}.output").validate(output)
        if output_errors is not None:
            errors.append({"phase": "output", "detail": output_errors})

    if expected_transition is not None and transition != expected_transition:
        errors.append({"phase": "transition", "detail": f"expected transition {expected_transition!r}, got {transition!r}"})

    slog.debug("cell_checked", cell_id=cell_id, transition=transition, errors=len(errors), duration_ms=round(duration, 3))
    return CellCheck(not errors, tuple(errors), output, transition, duration)


def test_transitions(
    registry: CellRegistry,
    cell_id: str,
    cases: Mapping[str, Mapping[str, Any]],
    *,
    dispatches: Mapping[str, Any] | Sequence[tuple[str, Any]] | None = None,
) -> dict[str, CellCheck]:
    """Run :func:`test_cell` once per expected transition.

    ``cases`` maps a transition label to ``{"data": ..., "resources": ...}``.
    """
    return {
        label: test_cell(
            registry,
            cell_id,
            dict(case.get("data", {})),
            resources=case.get("resources"),
            dispatches=dispatches,
            expected_transition=label,
        )
        for label, case in cases.items()
    }


# Not pytest tests
test_cell.__test__ = False  # type: ignore[attr-defined]
test_transitions.__test__ = False  # type: ignore[attr-defined]


def enumerate_paths(manifest: Manifest, *, include_errors: bool = False) -> list[list[EdgeInfo]]:
    """Every simple path from the start state to a terminal state.

    Fragments are expanded first. Each loop is walked at most once.
    ``on_error`` routes are only followed with ``include_errors``.
    """
    expanded = expand_all_fragments(manifest)
    graph = WorkflowGraph.from_manifest(expanded)
    return list(graph.iter_paths(expanded.start, include_errors=include_errors))


@dataclass(frozen=True)
class CellStatus:
    """Development status of one manifest cell.

    ``error`` is set when checking the cell raised; ``errors`` holds the
    phase errors of a check that ran to completion.
    """

    name: str
    cell_id: str
    status: ImplementationStatus
    errors: tuple[dict[str, Any], ...] = ()
    error: str | None = None


@dataclass(frozen=True)
class WorkflowStatus:
    manifest_id: str
    cells: tuple[CellStatus, ...]

    def _count(self, status: ImplementationStatus) -> int:
        return sum(1 for cell in self.cells if cell.status == status)

    @property
    def total(self) -> int:
        return len(self.cells)

    @property
    def implemented(self) -> int:
        return self.total - self.pending

    @property
    def passing(self) -> int:
        return self._count(ImplementationStatus.PASSING)

    @property
    def failing(self) -> int:
        return self._count(ImplementationStatus.FAILING)

    @property
    def pending(self) -> int:
        return self._count(ImplementationStatus.PENDING)


def workflow_status(
    manifest: Manifest,
    registry: CellRegistry,
    *,
    samples: Mapping[str, dict[str, Any]] | None = None,
    resources: Resources | None = None,
) -> WorkflowStatus:
    """Check every cell of ``manifest`` against its registered implementation.

    Unregistered cells are pending. Registered cells run once through
    :func:`test_cell` with the manifest's dispatches for that cell; the
    input is ``samples[name]`` if given, else placeholder values generated
    from the cell's registered input schema.
    """
    samples = samples or {}
    expanded = expand_all_fragments(manifest)
    statuses: list[CellStatus] = []
    for name, ref in expanded.cells.items():
        spec = registry.get(ref.id)
        if spec is None:
            statuses.append(CellStatus(name, ref.id, ImplementationStatus.PENDING))
            continue
        data = dict(samples[name]) if name in samples else example_record(spec.input_schema)
        try:
            check = test_cell(registry, ref.id, data, resources=resources, dispatches=expanded.dispatches.get(name))
        except Exception as exc:
            statuses.append(CellStatus(name, ref.id, ImplementationStatus.FAILING, error=f"{type(exc).__name__}: {exc}"))
            continue
        status = ImplementationStatus.PASSING if check.passed else ImplementationStatus.FAILING
        statuses.append(CellStatus(name, ref.id, status, errors=check.errors))

    result = WorkflowStatus(manifest.id, tuple(statuses))
    slog.info(
        "workflow_status_checked",
        manifest_id=manifest.id,
        passing=result.passing,
        failing=result.failing,
        pending=result.pending,
    )
    return result


_STATUS_TAGS = {
    ImplementationStatus.PASSING: "[PASS]",
    ImplementationStatus.FAILING: "[FAIL]",
    ImplementationStatus.PENDING: "[    ]",
}


def _failure_summary(cell: CellStatus) -> str:
    if cell.error is not None:
        return cell.error
    if not cell.errors:
        return "failed"
    first = cell.errors[0]
    detail = first["detail"]
    if isinstance(detail, list) and detail:
        detail = "; ".join(f"{'.'.join(err['loc']) or '<root>'}: {err['msg']}" for err in detail)
    return f"{first['phase']}: {detail}"


def progress(
    manifest: Manifest,
    registry: CellRegistry,
    *,
    samples: Mapping[str, dict[str, Any]] | None = None,
    resources: Resources | None = None,
) -> str:
    """Human-readable report of :func:`workflow_status`, one line per cell."""
    return format_status(workflow_status(manifest, registry, samples=samples, resources=resources))


def format_status(status: WorkflowStatus) -> str:
    lines = [
        f"Workflow: {status.manifest_id}",
        f"Status: {status.passing}/{status.total} cells passing"
        f" | {status.total} total | {status.implemented} implemented | {status.pending} pending",
        "",
    ]
    for cell in status.cells:
        line = f"{_STATUS_TAGS[cell.status]} {cell.name} ({cell.cell_id})"
        if cell.status == ImplementationStatus.FAILING:
            line += f" - {_failure_summary(cell)}"
        lines.append(line)
    return "\n".join(lines) + "\n"
