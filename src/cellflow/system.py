"""System aggregator: a cross-workflow index over many compiled workflows.

Inspection only; compiled workflows are never modified.

Example:
    index = compile_system({"/loans/apply": loan_manifest, "/users/signup": signup}, registry)
    index.cell_usage("user/fetch-profile")   # ['/loans/apply', '/users/signup']
    index.schema_conflicts                   # cells used with differing schemas
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

import structlog

from cellflow.core.config import EngineSettings
from cellflow.core.manifest.models import Manifest
from cellflow.core.registry import CellRegistry
from cellflow.engine.compiled import CompiledCell, CompiledWorkflow
from cellflow.engine.compiler import compile_workflow

slog = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RouteInfo:
    manifest_id: str
    cells: frozenset[str]
    requires: frozenset[str]
    input_schema: dict[str, Any] | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "manifest_id": self.manifest_id,
            "cells": sorted(self.cells),
            "requires": sorted(self.requires),
            "input_schema": self.input_schema,
        }


@dataclass(frozen=True)
class SchemaConflict:
    """A cell id whose schema differs between routes.

    Attributes:
        cell_id: Registry id
        schemas: Route -> {"input": ..., "output": ...} as recorded there
    """

    cell_id: str
    schemas: Mapping[str, dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        return {"cell_id": self.cell_id, "schemas": dict(sorted(self.schemas.items()))}


@dataclass(frozen=True)
class SystemIndex:
    """Routes, cell usage, shared cells, resources and schema conflicts."""

    routes: Mapping[str, RouteInfo]
    cell_routes: Mapping[str, frozenset[str]]
    schema_conflicts: tuple[SchemaConflict, ...] = ()
    workflows: Mapping[str, CompiledWorkflow] = field(default_factory=dict)

    @property
    def shared_cells(self) -> frozenset[str]:
        """Cell ids used by more than one route."""
        return frozenset(cell_id for cell_id, routes in self.cell_routes.items() if len(routes) > 1)

    @property
    def resources(self) -> frozenset[str]:
        """Every resource key any route needs."""
        return frozenset().union(*(info.requires for info in self.routes.values()))

    def cell_usage(self, cell_id: str) -> list[str]:
        """Routes using ``cell_id`` (empty if none)."""
        return sorted(self.cell_routes.get(cell_id, ()))

    def route_cells(self, route: str) -> list[str]:
        """Raises KeyError for unknown routes."""
        return sorted(self.routes[route].cells)

    def route_resources(self, route: str) -> list[str]:
        """Raises KeyError for unknown routes."""
        return sorted(self.routes[route].requires)

    def to_dict(self) -> dict[str, Any]:
        return {
            "routes": {route: info.to_dict() for route, info in sorted(self.routes.items())},
            "cell_usage": {cell_id: sorted(routes) for cell_id, routes in sorted(self.cell_routes.items())},
            "shared_cells": sorted(self.shared_cells),
            "resources": sorted(self.resources),
            "schema_conflicts": [conflict.to_dict() for conflict in self.schema_conflicts],
        }


def _cell_schema(cell: CompiledCell) -> dict[str, Any]:
    described = cell.describe()
    return {"input": described["input"], "output": described["output"]}


def _find_conflicts(workflows: Mapping[str, CompiledWorkflow]) -> tuple[SchemaConflict, ...]:
    recorded: dict[str, dict[str, dict[str, Any]]] = {}
    for route, workflow in sorted(workflows.items()):
        for cell in sorted(workflow.all_cells(), key=lambda c: c.name):
            recorded.setdefault(cell.cell_id, {}).setdefault(route, _cell_schema(cell))

    conflicts = []
    for cell_id, per_route in sorted(recorded.items()):
        distinct = {json.dumps(schema, sort_keys=True) for schema in per_route.values()}
        if len(distinct) > 1:
            conflicts.append(SchemaConflict(cell_id=cell_id, schemas=MappingProxyType(per_route)))
    return tuple(conflicts)


def build_index(workflows: Mapping[str, CompiledWorkflow]) -> SystemIndex:
    """Index already-compiled workflows keyed by route."""
    routes: dict[str, RouteInfo] = {}
    cell_routes: dict[str, set[str]] = {}
    for route, workflow in workflows.items():
        routes[route] = RouteInfo(
            manifest_id=workflow.id,
            cells=workflow.cell_ids,
            requires=workflow.requires,
            input_schema=workflow.input_validator.describe() if workflow.input_validator is not None else None,
        )
        for cell_id in workflow.cell_ids:
            cell_routes.setdefault(cell_id, set()).add(route)

    index = SystemIndex(
        routes=MappingProxyType(routes),
        cell_routes=MappingProxyType({cell_id: frozenset(r) for cell_id, r in cell_routes.items()}),
        schema_conflicts=_find_conflicts(workflows),
        workflows=MappingProxyType(dict(workflows)),
    )
    slog.info(
        "system_compiled",
        routes=len(routes),
        shared_cells=len(index.shared_cells),
        schema_conflicts=[c.cell_id for c in index.schema_conflicts],
    )
    return index


def compile_system(
    routes: Mapping[str, Manifest | CompiledWorkflow],
    registry: CellRegistry,
    settings: EngineSettings | None = None,
) -> SystemIndex:
    """Compile each manifest (compiled workflows pass through) and index them.

    Any compile error propagates; a system with an invalid route has no index.
    """
    compiled = {
        route: item if isinstance(item, CompiledWorkflow) else compile_workflow(item, registry, settings)
        for route, item in routes.items()
    }
    return build_index(compiled)
