"""Compiled workflow artifacts.

Everything here is produced once by the compiler and then only read. Tables
are MappingProxyType views so a running engine cannot alter them, and all
schema models and predicates are built ahead of time.

Two compilations of the same manifest produce distinct pydantic model
classes, so structural comparison goes through ``describe()``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from cellflow.contracts.enums import JoinStrategy
from cellflow.contracts.types import Handler, MergeFunction
from cellflow.core.schema_factory import SchemaValidator
from cellflow.engine.dispatch import CompiledPredicate


@dataclass(frozen=True)
class CompiledCell:
    """One cell, ready to run.

    ``output`` is either one validator or a read-only mapping of
    transition label to validator.
    """

    name: str
    cell_id: str
    handler: Handler
    input: SchemaValidator
    output: SchemaValidator | Mapping[str, SchemaValidator]
    edge: str | Mapping[str, str] | None
    predicates: tuple[CompiledPredicate, ...] = ()
    on_error: str | None = None
    is_async: bool = False
    requires: tuple[str, ...] = ()
    interceptors: tuple[str, ...] = ()
    child: CompiledWorkflow | None = None
    doc: str | None = None

    @property
    def is_conditional(self) -> bool:
        return isinstance(self.edge, Mapping)

    def output_for(self, transition: str | None) -> SchemaValidator | None:
        if isinstance(self.output, SchemaValidator):
            return self.output
        if transition is None:
            return None
        return self.output.get(transition)

    def target_for(self, transition: str | None) -> str:
        """Next state after taking ``transition``.

        Raises:
            KeyError: Conditional edge without that label (join members have
                no edge at all)
        """
        if self.edge is None:
            raise KeyError(f"Cell {self.name!r} has no edge of its own")
        if isinstance(self.edge, str):
            return self.edge
        if transition is None:
            raise KeyError(f"Cell {self.name!r} has a conditional edge but no transition was selected")
        return self.edge[transition]

    def describe(self) -> dict[str, Any]:
        if isinstance(self.output, SchemaValidator):
            output: dict[str, Any] = self.output.describe()
        else:
            output = {"transitions": {label: v.describe() for label, v in sorted(self.output.items())}}
        return {
            "cell_id": self.cell_id,
            "input": self.input.describe(),
            "output": output,
            "edge": self.edge if self.edge is None or isinstance(self.edge, str) else dict(sorted(self.edge.items())),
            "dispatch": [p.describe() for p in self.predicates],
            "on_error": self.on_error,
            "is_async": self.is_async,
            "requires": sorted(self.requires),
            "interceptors": list(self.interceptors),
            "child": self.child.id if self.child is not None else None,
        }


@dataclass(frozen=True)
class CompiledJoin:
    """A join node: members, scheduling strategy, optional merge."""

    name: str
    members: tuple[CompiledCell, ...]
    edge: str | Mapping[str, str]
    strategy: JoinStrategy = JoinStrategy.PARALLEL
    merge: MergeFunction | None = None
    merge_source: str | None = None

    def target_for(self, transition: str) -> str | None:
        """Next state for ``done``/``failure``; None when the edge does not route it."""
        if isinstance(self.edge, str):
            return self.edge if transition == "done" else None
        return self.edge.get(transition)

    def describe(self) -> dict[str, Any]:
        return {
            "members": [m.name for m in self.members],
            "strategy": str(self.strategy),
            "merge": self.merge_source,
            "edge": self.edge if isinstance(self.edge, str) else dict(sorted(self.edge.items())),
        }


@dataclass(frozen=True)
class CompiledWorkflow:
    """Immutable executable form of a manifest.

    Attributes:
        id: Manifest id
        start: Initial state
        cells: Routable cells (join members live inside their join)
        joins: Join nodes
        input_validator: Manifest input schema, None if not declared
        guaranteed_keys: Node -> keys guaranteed on entry (schema chain)
        exit_keys: (node, label) -> keys guaranteed after that transition
        interceptors: Interceptor descriptions, declaration order
    """

    id: str
    start: str
    cells: Mapping[str, CompiledCell]
    joins: Mapping[str, CompiledJoin]
    input_validator: SchemaValidator | None = None
    guaranteed_keys: Mapping[str, frozenset[str]] = field(default_factory=dict)
    exit_keys: Mapping[tuple[str, str | None], frozenset[str]] = field(default_factory=dict)
    interceptors: tuple[dict[str, Any], ...] = ()
    doc: str | None = None

    def all_cells(self) -> list[CompiledCell]:
        """Routable cells plus join members."""
        cells = list(self.cells.values())
        for join in self.joins.values():
            cells.extend(join.members)
        return cells

    @property
    def cell_ids(self) -> frozenset[str]:
        return frozenset(cell.cell_id for cell in self.all_cells())

    @property
    def requires(self) -> frozenset[str]:
        """Resource keys needed by any cell, nested sub-workflows included."""
        keys: set[str] = set()
        for cell in self.all_cells():
            keys.update(cell.requires)
            if cell.child is not None:
                keys |= cell.child.requires
        return frozenset(keys)

    def describe(self) -> dict[str, Any]:
        """Plain, deterministic description; equal for equal manifests."""
        return {
            "id": self.id,
            "start": self.start,
            "input_schema": self.input_validator.describe() if self.input_validator is not None else None,
            "cells": {name: cell.describe() for name, cell in sorted(self.cells.items())},
            "joins": {name: join.describe() for name, join in sorted(self.joins.items())},
            "members": {m.name: m.describe() for join in self.joins.values() for m in join.members},
            "guaranteed_keys": {name: sorted(keys) for name, keys in sorted(self.guaranteed_keys.items())},
            "interceptors": list(self.interceptors),
        }
