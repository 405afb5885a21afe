"""Running a single compiled cell: handler call, async resolution, schema checks.

Shared by the workflow runner and the join executor.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from cellflow.contracts.enums import SchemaPhase
from cellflow.contracts.errors import CellErrorRecord, SchemaErrorRecord
from cellflow.contracts.keys import strip_reserved
from cellflow.contracts.types import Resources
from cellflow.core.schema_factory import SchemaValidator
from cellflow.engine.compiled import CompiledCell


async def _bounded(awaitable: Awaitable[Any], timeout: float | None) -> Any:
    if timeout is None:
        return await awaitable
    return await asyncio.wait_for(awaitable, timeout)


def resolve_pending(result: Any, timeout: float | None = None) -> Any:
    """Block until an async cell's result is available.

    Futures are waited on with ``timeout``. Awaitables run on a fresh event
    loop; if this thread already runs a loop, the awaitable runs on a
    helper thread instead. Plain values pass through.

    Raises:
        TimeoutError: The result was not ready within ``timeout`` seconds
    """
    if isinstance(result, Future):
        return result.result(timeout=timeout)
    if not inspect.isawaitable(result):
        return result
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(_bounded(result, timeout))
    with ThreadPoolExecutor(max_workers=1) as helper:
        return helper.submit(asyncio.run, _bounded(result, timeout)).result()


def invoke(cell: CompiledCell, resources: Resources, data: dict[str, Any], *, timeout: float | None = None) -> dict[str, Any]:
    """Call the (interceptor-wrapped) handler and return its data record.

    Handler exceptions propagate unchanged.

    Raises:
        TypeError: The handler returned something other than a mapping
    """
    result = resolve_pending(cell.handler(resources, data), timeout)
    if not isinstance(result, Mapping):
        raise TypeError(f"Cell {cell.name!r} ({cell.cell_id}) returned {type(result).__name__}, expected a dict")
    return dict(result)


def error_record(cell: CompiledCell, exc: BaseException) -> CellErrorRecord:
    return CellErrorRecord(cell_name=cell.name, cell_id=cell.cell_id, type=type(exc).__name__, message=str(exc))


def _schema_error(
    cell: CompiledCell,
    validator: SchemaValidator,
    phase: SchemaPhase,
    transition: str | None,
    data: dict[str, Any],
) -> SchemaErrorRecord | None:
    errors = validator.validate(data)
    if errors is None:
        return None
    return SchemaErrorRecord(
        cell_name=cell.name,
        cell_id=cell.cell_id,
        phase=str(phase),
        transition=transition,
        schema=validator.describe(),
        errors=errors,
        data=strip_reserved(data),
    )


def check_input(cell: CompiledCell, data: dict[str, Any]) -> SchemaErrorRecord | None:
    return _schema_error(cell, cell.input, SchemaPhase.INPUT, None, data)


def check_output(cell: CompiledCell, transition: str | None, data: dict[str, Any]) -> SchemaErrorRecord | None:
    """Validate against the schema of the transition actually taken."""
    validator = cell.output_for(transition)
    if validator is None:
        return None
    return _schema_error(cell, validator, SchemaPhase.OUTPUT, transition, data)
