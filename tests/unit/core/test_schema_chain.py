# tests/unit/core/test_schema_chain.py
"""Tests for the schema-chain data-flow analysis."""

import pytest

from cellflow.contracts.errors import JoinConflictError, SchemaChainError
from cellflow.core.dag.schema_chain import analyze_schema_chain
from cellflow.core.registry import CellRegistry
from tests.conftest import manifest, passthrough
from tests.fixtures.loan import LOAN_MANIFEST


def _merge(snapshot, outputs):
    return {**snapshot, **outputs[0]}


@pytest.fixture
def cells() -> CellRegistry:
    registry = CellRegistry()
    registry.register("source", passthrough, output=["user_id: str"])
    registry.register("profile", passthrough, input=["user_id: str"], output=["profile: dict"])
    registry.register("orders", passthrough, input=["user_id: str"], output=["orders: list"])
    registry.register("profile_too", passthrough, input=["user_id: str"], output=["profile: dict", "extra: int?"])
    registry.register("render", passthrough, input=["profile: dict", "orders: list"])
    registry.register("branch_a", passthrough, output=["token: str"])
    registry.register("branch_b", passthrough, output=["other: str"])
    registry.register("needs_token", passthrough, input=["token: str"])
    registry.register("split", passthrough, output={"ok": ["token: str"], "no": ["reason: str"]})
    return registry


class TestLinearChains:
    def test_loan_chain_satisfied(self, loan_registry: CellRegistry) -> None:
        analysis = analyze_schema_chain(manifest(**LOAN_MANIFEST), loan_registry)
        assert analysis.entry_keys["start"] == {"applicant"}
        assert {"score", "amount"} <= analysis.entry_keys["assess"]
        assert "risk" in analysis.entry_keys["review"]

    def test_missing_producer(self, cells: CellRegistry) -> None:
        m = manifest(cells={"start": "branch_b", "use": "needs_token"}, edges={"start": "use", "use": "end"})
        with pytest.raises(SchemaChainError) as exc_info:
            analyze_schema_chain(m, cells)
        (violation,) = exc_info.value.violations
        assert violation.cell_name == "use"
        assert violation.missing_key == "token"
        assert violation.path == ("start", "use")
        assert "use requires 'token'" in violation.describe()

    def test_manifest_input_schema_seeds_entry(self, cells: CellRegistry) -> None:
        m = manifest(
            input_schema=["token: str"],
            cells={"start": "branch_b", "use": "needs_token"},
            edges={"start": "use", "use": "end"},
        )
        analysis = analyze_schema_chain(m, cells)
        assert analysis.entry_keys["use"] == {"token", "other"}

    def test_optional_output_not_guaranteed(self, cells: CellRegistry) -> None:
        cells.register("needs_extra", passthrough, input=["extra: int"])
        m = manifest(
            input_schema=["user_id: str"],
            cells={"start": "profile_too", "use": "needs_extra"},
            edges={"start": "use", "use": "end"},
        )
        with pytest.raises(SchemaChainError):
            analyze_schema_chain(m, cells)


class TestBranches:
    def _diamond(self, right: str):
        return manifest(
            cells={"start": "branch_a", "left": "branch_a", "right": right, "use": "needs_token"},
            edges={"start": {"l": "left", "r": "right"}, "left": "use", "right": "use", "use": "end"},
            dispatches={"start": {"l": "data.get('go_left')", "r": "True"}},
        )

    def test_key_produced_on_every_branch(self, cells: CellRegistry) -> None:
        analysis = analyze_schema_chain(self._diamond("branch_a"), cells)
        assert "token" in analysis.entry_keys["use"]

    def test_intersection_drops_key_missing_on_one_branch(self, cells: CellRegistry) -> None:
        cells.register("no_token", passthrough, output=["other: str"])
        m = manifest(
            cells={"start": "branch_b", "left": "branch_a", "right": "no_token", "use": "needs_token"},
            edges={"start": {"l": "left", "r": "right"}, "left": "use", "right": "use", "use": "end"},
            dispatches={"start": {"l": "data.get('go_left')", "r": "True"}},
        )
        with pytest.raises(SchemaChainError) as exc_info:
            analyze_schema_chain(m, cells)
        (violation,) = exc_info.value.violations
        assert violation.path == ("start", "right", "use")

    def test_per_transition_outputs(self, cells: CellRegistry) -> None:
        m = manifest(
            cells={"start": "split", "use": "needs_token", "explain": "branch_b"},
            edges={"start": {"ok": "use", "no": "explain"}, "use": "end", "explain": "end"},
            dispatches={"start": {"ok": "data.get('token') is not None", "no": "True"}},
        )
        analysis = analyze_schema_chain(m, cells)
        assert analysis.exit_keys[("start", "ok")] == {"token"}
        assert analysis.exit_keys[("start", "no")] == {"reason"}

    def test_per_transition_output_into_wrong_branch(self, cells: CellRegistry) -> None:
        m = manifest(
            cells={"start": "split", "use": "needs_token"},
            edges={"start": {"ok": "end", "no": "use"}, "use": "end"},
            dispatches={"start": {"ok": "data.get('token') is not None", "no": "True"}},
        )
        with pytest.raises(SchemaChainError):
            analyze_schema_chain(m, cells)

    def test_on_error_handler_sees_only_cell_input(self, cells: CellRegistry) -> None:
        m = manifest(
            cells={"start": "branch_a", "risky": {"id": "branch_b", "on_error": "use"}, "use": "needs_token"},
            edges={"start": "risky", "risky": "end", "use": "end"},
        )
        analysis = analyze_schema_chain(m, cells)
        assert analysis.entry_keys["use"] == {"token"}

    def test_loop_reaches_fixed_point(self, cells: CellRegistry) -> None:
        m = manifest(
            cells={"start": "branch_a", "again": "needs_token"},
            edges={"start": "again", "again": {"loop": "start", "done": "end"}},
            dispatches={"again": {"loop": "data.get('n', 0) < 3", "done": "True"}},
        )
        analysis = analyze_schema_chain(m, cells)
        assert analysis.entry_keys["again"] == {"token"}


class TestJoins:
    def _join(self, members, **join):
        return manifest(
            cells={"start": "source", "render": "render", **members},
            joins={"fetch": {"cells": list(members), **join}},
            edges={"start": "fetch", "fetch": "render", "render": "end"},
        )

    def test_member_outputs_union_after_join(self, cells: CellRegistry) -> None:
        analysis = analyze_schema_chain(self._join({"p": "profile", "o": "orders"}), cells)
        assert analysis.entry_keys["render"] == {"user_id", "profile", "orders"}

    def test_overlapping_outputs_rejected(self, cells: CellRegistry) -> None:
        with pytest.raises(JoinConflictError, match="output key conflict") as exc_info:
            analyze_schema_chain(self._join({"p": "profile", "q": "profile_too", "o": "orders"}), cells)
        assert exc_info.value.join_name == "fetch"
        assert exc_info.value.conflicts == {"profile": ["p", "q"]}
        assert "'profile'" in str(exc_info.value)

    def test_merge_function_accepts_overlap(self, cells: CellRegistry) -> None:
        m = self._join({"p": "profile", "q": "profile_too", "o": "orders"}, merge=_merge)
        analyze_schema_chain(m, cells)

    def test_member_requirement_checked(self, cells: CellRegistry) -> None:
        m = manifest(
            cells={"start": "branch_b", "p": "profile", "o": "orders"},
            joins={"fetch": {"cells": ["p", "o"]}},
            edges={"start": "fetch", "fetch": "end"},
        )
        with pytest.raises(SchemaChainError) as exc_info:
            analyze_schema_chain(m, cells)
        assert sorted(v.cell_name for v in exc_info.value.violations) == ["o", "p"]
        assert exc_info.value.violations[0].path == ("start", "fetch", "p")

    def test_failure_edge_adds_nothing(self, cells: CellRegistry) -> None:
        m = manifest(
            cells={"start": "source", "p": "profile", "o": "orders", "render": "render"},
            joins={"fetch": {"cells": ["p", "o"]}},
            edges={"start": "fetch", "fetch": {"done": "end", "failure": "render"}, "render": "end"},
        )
        with pytest.raises(SchemaChainError):
            analyze_schema_chain(m, cells)
