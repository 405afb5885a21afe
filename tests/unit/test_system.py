# tests/unit/test_system.py
"""Tests for the cross-workflow system index."""

import json
from pathlib import Path

import pytest

from cellflow.contracts.errors import ManifestValidationError
from cellflow.core.manifest.loader import load_manifest
from cellflow.core.registry import CellRegistry
from cellflow.engine.compiler import compile_workflow
from cellflow.system import build_index, compile_system
from tests.conftest import manifest
from tests.fixtures.loan import LOAN_MANIFEST

FIXTURES = Path(__file__).parents[1] / "fixtures"


@pytest.fixture
def routes():
    return {
        "/loans/apply": load_manifest(FIXTURES / "loan.yaml"),
        "/loans/quick": load_manifest(FIXTURES / "quick_loan.yaml"),
    }


class TestCompileSystem:
    def test_routes_indexed(self, routes, loan_registry: CellRegistry) -> None:
        index = compile_system(routes, loan_registry)

        assert set(index.routes) == {"/loans/apply", "/loans/quick"}
        assert index.routes["/loans/quick"].manifest_id == "quick-loan"
        assert index.route_cells("/loans/quick") == ["loan/approve", "loan/assess", "loan/intake"]
        assert index.routes["/loans/apply"].input_schema == {"mode": "free", "fields": ["applicant: dict"]}
        assert index.routes["/loans/quick"].input_schema is None

    def test_cell_usage_and_sharing(self, routes, loan_registry: CellRegistry) -> None:
        index = compile_system(routes, loan_registry)

        assert index.cell_usage("loan/intake") == ["/loans/apply", "/loans/quick"]
        assert index.cell_usage("loan/reject") == ["/loans/apply"]
        assert index.cell_usage("loan/unknown") == []
        assert index.shared_cells == {"loan/intake", "loan/assess", "loan/approve"}

    def test_unknown_route(self, routes, loan_registry: CellRegistry) -> None:
        index = compile_system(routes, loan_registry)
        with pytest.raises(KeyError):
            index.route_cells("/nope")
        with pytest.raises(KeyError):
            index.route_resources("/nope")

    def test_resources(self, loan_registry: CellRegistry) -> None:
        document = {**LOAN_MANIFEST, "cells": {**LOAN_MANIFEST["cells"], "review": {"id": "loan/review", "requires": ["queue"]}}}
        index = compile_system({"/a": manifest(**document)}, loan_registry)
        assert index.route_resources("/a") == ["queue"]
        assert index.resources == {"queue"}

    def test_compiled_workflows_pass_through(self, routes, loan_registry: CellRegistry) -> None:
        compiled = compile_workflow(routes["/loans/apply"], loan_registry)
        index = compile_system({"/loans/apply": compiled}, loan_registry)
        assert index.workflows["/loans/apply"] is compiled

    def test_invalid_route_fails_whole_system(self, routes, loan_registry: CellRegistry) -> None:
        routes["/broken"] = load_manifest(FIXTURES / "broken_loan.yaml")
        with pytest.raises(ManifestValidationError):
            compile_system(routes, loan_registry)


class TestSchemaConflicts:
    def test_same_registration_has_no_conflict(self, routes, loan_registry: CellRegistry) -> None:
        assert compile_system(routes, loan_registry).schema_conflicts == ()

    def test_inline_schema_override_is_a_conflict(self, routes, loan_registry: CellRegistry) -> None:
        routes["/loans/quick"] = manifest(
            id="quick-loan",
            pipeline=["start", "assess", "approve"],
            cells={
                "start": "loan/intake",
                "assess": {"id": "loan/assess", "schema": {"input": ["score: int"], "output": ["risk: str"]}},
                "approve": "loan/approve",
            },
        )
        index = compile_system(routes, loan_registry)

        (conflict,) = index.schema_conflicts
        assert conflict.cell_id == "loan/assess"
        assert set(conflict.schemas) == {"/loans/apply", "/loans/quick"}
        assert conflict.schemas["/loans/quick"]["input"]["fields"] == ["score: int"]


def test_to_dict_is_json_serializable(routes, loan_registry: CellRegistry) -> None:
    index = build_index({route: compile_workflow(m, loan_registry) for route, m in routes.items()})
    described = json.loads(json.dumps(index.to_dict()))

    assert described["shared_cells"] == ["loan/approve", "loan/assess", "loan/intake"]
    assert described["cell_usage"]["loan/review"] == ["/loans/apply"]
    assert described["schema_conflicts"] == []
