# tests/unit/test_dev.py
"""Tests for the cell and manifest development helpers."""

from pathlib import Path

import pytest

from cellflow import dev
from cellflow.contracts.enums import ImplementationStatus
from cellflow.contracts.errors import CellNotFoundError
from cellflow.core.dag.models import EdgeKind
from cellflow.core.manifest.loader import load_manifest
from cellflow.core.registry import CellRegistry
from tests.conftest import fails, manifest
from tests.fixtures.loan import LOAN_MANIFEST, applicant

FIXTURES = Path(__file__).parents[1] / "fixtures"

RISK = {"low": "data['risk'] == 'low'", "high": "True"}


class TestCheckCell:
    def test_passing_cell(self, loan_registry: CellRegistry) -> None:
        check = dev.test_cell(loan_registry, "loan/assess", {"score": 800, "amount": 10.0}, dispatches=RISK)

        assert check.passed
        assert check.errors == ()
        assert check.transition == "low"
        assert check.output == {"score": 800, "amount": 10.0, "risk": "low"}
        assert check.duration_ms >= 0

    def test_input_schema_failure(self, loan_registry: CellRegistry) -> None:
        check = dev.test_cell(loan_registry, "loan/assess", {"score": "high"})

        assert not check.passed
        assert check.errors[0]["phase"] == "input"
        assert check.output is None
        assert check.duration_ms == 0.0

    def test_handler_exception(self, registry: CellRegistry) -> None:
        registry.register("broken", fails("no connection"))
        check = dev.test_cell(registry, "broken", {})
        assert check.errors == ({"phase": "handler", "detail": "RuntimeError: no connection"},)

    def test_handler_returns_non_mapping(self, registry: CellRegistry) -> None:
        registry.register("listy", lambda r, d: [])
        check = dev.test_cell(registry, "listy", {})
        assert check.errors[0]["detail"] == "returned list, expected a dict"

    def test_output_schema_failure(self, registry: CellRegistry) -> None:
        registry.register("lazy", lambda r, d: d, output=["html: str"])
        check = dev.test_cell(registry, "lazy", {})
        assert [error["phase"] for error in check.errors] == ["output"]

    def test_unexpected_transition(self, loan_registry: CellRegistry) -> None:
        check = dev.test_cell(loan_registry, "loan/assess", {"score": 100, "amount": 1.0}, dispatches=RISK, expected_transition="low")
        assert not check.passed
        assert check.errors[0]["detail"] == "expected transition 'low', got 'high'"

    def test_dispatch_failure(self, loan_registry: CellRegistry) -> None:
        check = dev.test_cell(loan_registry, "loan/assess", {"score": 1, "amount": 1.0}, dispatches=[("x", "data['missing']")])
        assert check.errors[0]["phase"] == "dispatch"

    def test_resources_reach_handler(self, registry: CellRegistry) -> None:
        registry.register("clock", lambda r, d: {**d, "now": r["clock"]()}, requires=("clock",))
        check = dev.test_cell(registry, "clock", {}, resources={"clock": lambda: 42})
        assert check.output == {"now": 42}

    def test_unknown_cell(self, registry: CellRegistry) -> None:
        with pytest.raises(CellNotFoundError):
            dev.test_cell(registry, "ghost", {})


def test_transitions_per_label(loan_registry: CellRegistry) -> None:
    checks = dev.test_transitions(
        loan_registry,
        "loan/assess",
        {
            "low": {"data": {"score": 800, "amount": 1.0}},
            "high": {"data": {"score": 200, "amount": 1.0}},
        },
        dispatches=RISK,
    )
    assert {label: check.passed for label, check in checks.items()} == {"low": True, "high": True}


class TestEnumeratePaths:
    def test_loan_paths(self) -> None:
        paths = dev.enumerate_paths(manifest(**LOAN_MANIFEST))
        assert sorted(path[1].target for path in paths) == ["approve", "reject", "review"]

    def test_fragments_expanded_first(self) -> None:
        paths = dev.enumerate_paths(load_manifest(FIXTURES / "with_fragment.yaml"))
        rendered = sorted(tuple(edge.target for edge in path) for path in paths)
        assert rendered == [
            ("login_page", "halt"),
            ("refresh", "render", "end"),
            ("render", "end"),
        ]

    def test_error_routes(self) -> None:
        m = manifest(
            cells={"start": {"id": "a", "on_error": "recover"}, "recover": "b"},
            edges={"start": "end", "recover": "end"},
        )
        assert len(dev.enumerate_paths(m)) == 1
        paths = dev.enumerate_paths(m, include_errors=True)
        assert any(edge.kind == EdgeKind.ERROR for path in paths for edge in path)


class TestWorkflowStatus:
    def test_placeholder_inputs(self, loan_registry: CellRegistry) -> None:
        status = dev.workflow_status(manifest(**LOAN_MANIFEST), loan_registry)

        by_name = {cell.name: cell for cell in status.cells}
        assert (status.total, status.implemented, status.passing, status.failing, status.pending) == (5, 5, 4, 1, 0)
        assert by_name["start"].status == ImplementationStatus.FAILING
        assert by_name["start"].errors == ({"phase": "handler", "detail": "KeyError: 'score'"},)
        assert by_name["assess"].status == ImplementationStatus.PASSING

    def test_samples_override_placeholders(self, loan_registry: CellRegistry) -> None:
        status = dev.workflow_status(manifest(**LOAN_MANIFEST), loan_registry, samples={"start": applicant(800)})
        assert status.passing == 5

    def test_unregistered_cells_pending(self, loan_registry: CellRegistry) -> None:
        document = {**LOAN_MANIFEST, "cells": {**LOAN_MANIFEST["cells"], "review": "loan/escalate"}}

        status = dev.workflow_status(manifest(**document), loan_registry)

        review = next(cell for cell in status.cells if cell.name == "review")
        assert (review.cell_id, review.status) == ("loan/escalate", ImplementationStatus.PENDING)
        assert (status.implemented, status.pending) == (4, 1)

    def test_manifest_dispatches_used(self, registry: CellRegistry) -> None:
        registry.register("grade", lambda r, d: {**d, "grade": "b"}, output=["grade: str"])
        m = manifest(
            cells={"start": "grade", "a": "grade"},
            edges={"start": {"top": "a"}, "a": "end"},
            dispatches={"start": {"top": "data['grade'] == 'a'"}},
        )

        status = dev.workflow_status(m, registry)

        start = next(cell for cell in status.cells if cell.name == "start")
        assert start.status == ImplementationStatus.FAILING
        assert start.errors[0]["phase"] == "dispatch"

    def test_fragment_cells_covered(self) -> None:
        status = dev.workflow_status(load_manifest(FIXTURES / "with_fragment.yaml"), CellRegistry())
        assert status.pending == status.total
        assert "login_page" in {cell.name for cell in status.cells}


class TestProgress:
    def test_report(self, loan_registry: CellRegistry) -> None:
        document = {**LOAN_MANIFEST, "cells": {**LOAN_MANIFEST["cells"], "review": "loan/escalate"}}

        report = dev.progress(manifest(**document), loan_registry)

        lines = report.splitlines()
        assert lines[0] == "Workflow: loan-approval"
        assert lines[1] == "Status: 3/5 cells passing | 5 total | 4 implemented | 1 pending"
        assert "[FAIL] start (loan/intake) - handler: KeyError: 'score'" in lines
        assert "[PASS] assess (loan/assess)" in lines
        assert "[    ] review (loan/escalate)" in lines

    def test_schema_failure_summarized(self, registry: CellRegistry) -> None:
        registry.register("lazy", lambda r, d: d, output=["html: str"])

        report = dev.progress(manifest(cells={"start": "lazy"}, edges={"start": "end"}), registry)

        assert "[FAIL] start (lazy) - output: html: Field required" in report
