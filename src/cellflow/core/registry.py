"""Cell registry.

An explicit catalog of cell implementations keyed by cell id. Applications
create a registry, register their cells during start-up, and hand the
registry to the compiler. There is no process-global registry.

Example:
    registry = CellRegistry()

    @registry.cell(
        "loan/assess",
        input=["score: int", "amount: float"],
        output=["risk: str"],
    )
    def assess(resources, data):
        return {**data, "risk": "low" if data["score"] > 700 else "high"}
"""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field, replace
from threading import Lock
from typing import Any

import structlog

from cellflow.contracts.errors import CellNotFoundError, CellRegistrationError, SchemaDefinitionError
from cellflow.contracts.schema import OutputSchema, SchemaConfig, parse_output_schema
from cellflow.contracts.types import Handler, Predicate

slog = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CellSpec:
    """Everything the engine needs to run one cell implementation.

    Attributes:
        id: Registry identifier
        handler: ``(resources, data) -> data``; for async cells the return
            value is an awaitable or Future resolving to the data
        input_schema: Keys the cell requires
        output_schema: Keys the cell produces, optionally per transition
        requires: Resource keys the handler expects
        is_async: True if the handler returns an awaitable or Future
        doc: Free-form description
        default_dispatches: Dispatch predicates used when a manifest does
            not declare its own for this cell (sub-workflow cells use this)
        child: Compiled child workflow when this cell wraps a sub-workflow
    """

    id: str
    handler: Handler
    input_schema: SchemaConfig = field(default_factory=SchemaConfig.dynamic)
    output_schema: OutputSchema = field(default_factory=SchemaConfig.dynamic)
    requires: tuple[str, ...] = ()
    is_async: bool = False
    doc: str | None = None
    default_dispatches: tuple[tuple[str, Predicate], ...] = ()
    child: Any = None

    @property
    def default_labels(self) -> frozenset[str]:
        return frozenset(label for label, _ in self.default_dispatches)


class CellRegistry:
    """Catalog mapping cell id to CellSpec.

    Thread-safe; registration is expected during application start-up.
    Replacing an existing id requires ``replace=True`` (hot reload).
    """

    def __init__(self) -> None:
        self._cells: dict[str, CellSpec] = {}
        self._lock = Lock()

    def register(
        self,
        cell_id: str,
        handler: Handler,
        *,
        input: Any = None,
        output: Any = None,
        requires: Sequence[str] = (),
        is_async: bool = False,
        doc: str | None = None,
        default_dispatches: Sequence[tuple[str, Predicate]] = (),
        replace: bool = False,
    ) -> CellSpec:
        """Validate and register a cell.

        Schemas accept any document form understood by SchemaConfig.

        Raises:
            CellRegistrationError: Missing id, non-callable handler, invalid
                schema, or duplicate id without ``replace``
        """
        if not cell_id:
            raise CellRegistrationError("Cell spec missing id")
        if not callable(handler):
            raise CellRegistrationError(f"Cell {cell_id!r} handler must be callable, got {type(handler).__name__}")

        try:
            input_schema = SchemaConfig.from_value(input)
            output_schema = parse_output_schema(output)
        except SchemaDefinitionError as e:
            raise CellRegistrationError(f"Cell {cell_id!r} has an invalid schema: {e}") from e

        spec = CellSpec(
            id=cell_id,
            handler=handler,
            input_schema=input_schema,
            output_schema=output_schema,
            requires=tuple(requires),
            is_async=is_async,
            doc=doc,
            default_dispatches=tuple(default_dispatches),
        )
        return self.add(spec, replace=replace)

    def add(self, spec: CellSpec, *, replace: bool = False) -> CellSpec:
        """Register an already-built spec."""
        with self._lock:
            if not replace and spec.id in self._cells:
                raise CellRegistrationError(f"Cell {spec.id!r} already registered")
            replaced = spec.id in self._cells
            self._cells[spec.id] = spec
        slog.debug("cell_registered", cell_id=spec.id, replaced=replaced, is_async=spec.is_async)
        return spec

    def cell(
        self,
        cell_id: str,
        *,
        input: Any = None,
        output: Any = None,
        requires: Sequence[str] = (),
        is_async: bool = False,
        doc: str | None = None,
        replace: bool = False,
    ) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`register`. Returns the handler unchanged."""

        def decorator(handler: Handler) -> Handler:
            self.register(
                cell_id,
                handler,
                input=input,
                output=output,
                requires=requires,
                is_async=is_async,
                doc=doc or handler.__doc__,
                replace=replace,
            )
            return handler

        return decorator

    def get(self, cell_id: str) -> CellSpec | None:
        return self._cells.get(cell_id)

    def require(self, cell_id: str) -> CellSpec:
        """Return the spec or raise CellNotFoundError."""
        spec = self._cells.get(cell_id)
        if spec is None:
            raise CellNotFoundError(cell_id)
        return spec

    def set_schema(self, cell_id: str, *, input: Any = None, output: Any = None) -> CellSpec:
        """Overwrite the schemas of a registered cell.

        A schema left as None keeps the registered one.

        Raises:
            CellNotFoundError: ``cell_id`` is not registered
            CellRegistrationError: A schema is malformed
        """
        try:
            input_schema = None if input is None else SchemaConfig.from_value(input)
            output_schema = None if output is None else parse_output_schema(output)
        except SchemaDefinitionError as e:
            raise CellRegistrationError(f"Cell {cell_id!r} has an invalid schema: {e}") from e

        with self._lock:
            spec = self._cells.get(cell_id)
            if spec is None:
                raise CellNotFoundError(cell_id)
            updated = replace(
                spec,
                input_schema=spec.input_schema if input_schema is None else input_schema,
                output_schema=spec.output_schema if output_schema is None else output_schema,
            )
            self._cells[cell_id] = updated
        return updated

    def unregister(self, cell_id: str) -> None:
        with self._lock:
            if self._cells.pop(cell_id, None) is None:
                raise CellNotFoundError(cell_id)

    def clear(self) -> None:
        with self._lock:
            self._cells.clear()

    def ids(self) -> list[str]:
        return sorted(self._cells)

    def __contains__(self, cell_id: object) -> bool:
        return cell_id in self._cells

    def __iter__(self) -> Iterator[CellSpec]:
        return iter(list(self._cells.values()))

    def __len__(self) -> int:
        return len(self._cells)
