# tests/unit/engine/test_join_executor.py
"""Tests for fork-join execution."""

import threading

import pytest
import structlog

from cellflow.contracts.enums import RunStatus
from cellflow.contracts.keys import JOIN_ERROR_KEY, STATUS_KEY, TRACE_KEY
from cellflow.contracts.trace import transitions_of
from cellflow.core.config import EngineSettings
from cellflow.core.registry import CellRegistry
from cellflow.engine.compiler import compile_workflow
from cellflow.engine.join_executor import JoinExecutor, member_delta
from cellflow.engine.runner import WorkflowRunner
from tests.conftest import adds, fails, manifest, passthrough


def _dashboard(registry: CellRegistry, *, profile=None, orders=None, **join):
    registry.register("source", adds(user_id="u1"), output=["user_id: str"])
    registry.register("profile", profile or adds(profile={"name": "ada"}), input=["user_id: str"], output=["profile: dict"])
    registry.register("orders", orders or adds(orders=[1, 2]), input=["user_id: str"], output=["orders: list"])
    registry.register(
        "render",
        lambda r, d: {**d, "html": f"{d['profile']['name']}:{len(d['orders'])}"},
        input=["profile: dict", "orders: list"],
    )
    registry.register("sorry", adds(html="unavailable"))
    edges = join.pop("edges", {"done": "render", "failure": "sorry"})
    targets = {edges} if isinstance(edges, str) else set(edges.values())
    downstream = {name: name for name in ("render", "sorry") if name in targets}
    return compile_workflow(
        manifest(
            cells={"start": "source", "p": "profile", "o": "orders", **downstream},
            joins={"fetch": {"cells": ["p", "o"], **join}},
            edges={"start": "fetch", "fetch": edges, **{name: "end" for name in downstream}},
        ),
        registry,
    )


class TestJoinSuccess:
    def test_outputs_merged(self, registry: CellRegistry) -> None:
        result = WorkflowRunner().run(_dashboard(registry), {}, {})

        assert result[STATUS_KEY] == RunStatus.COMPLETED
        assert result["profile"] == {"name": "ada"}
        assert result["orders"] == [1, 2]
        assert result["html"] == "ada:2"

    def test_trace_records_join_only(self, registry: CellRegistry) -> None:
        result = WorkflowRunner().run(_dashboard(registry), {}, {})
        assert transitions_of(result[TRACE_KEY]) == [("start", None), ("fetch", "done"), ("render", None)]
        join_entry = result[TRACE_KEY][1]
        assert (join_entry.cell_id, join_entry.target) == ("fetch", "render")

    def test_members_run_concurrently(self, registry: CellRegistry) -> None:
        barrier = threading.Barrier(2, timeout=5)

        def meet(value):
            def handler(resources, data):
                barrier.wait()
                return {**data, **value}

            return handler

        workflow = _dashboard(registry, profile=meet({"profile": {"name": "ada"}}), orders=meet({"orders": []}))
        assert WorkflowRunner().run(workflow, {}, {})["html"] == "ada:0"

    def test_members_see_the_snapshot_not_each_other(self, registry: CellRegistry) -> None:
        seen = []

        def profile(resources, data):
            seen.append(sorted(data))
            data["user_id"] = "changed"
            return {**data, "profile": {"name": "ada"}}

        def orders(resources, data):
            seen.append(sorted(data))
            return {**data, "orders": []}

        workflow = _dashboard(registry, profile=profile, orders=orders, strategy="sequential", edges="end")
        result = WorkflowRunner().run(workflow, {}, {})

        assert seen == [["user_id"], ["user_id"]]
        assert result["user_id"] == "changed"

    def test_sequential_runs_in_declaration_order(self, registry: CellRegistry) -> None:
        order = []

        def tracked(name, value):
            def handler(resources, data):
                order.append(name)
                return {**data, **value}

            return handler

        workflow = _dashboard(
            registry,
            profile=tracked("p", {"profile": {"name": "x"}}),
            orders=tracked("o", {"orders": []}),
            strategy="sequential",
        )
        WorkflowRunner().run(workflow, {}, {})
        assert order == ["p", "o"]

    def test_merge_function(self, registry: CellRegistry) -> None:
        workflow = _dashboard(registry, merge="tests.fixtures.hooks:merge_profile_orders", edges="end")
        result = WorkflowRunner().run(workflow, {}, {})
        assert result["dashboard"] == {"profile": {"name": "ada"}, "orders": [1, 2]}
        assert "profile" not in result

    def test_members_log_with_run_context(self, registry: CellRegistry) -> None:
        seen = []

        def recording(value):
            def handler(resources, data):
                seen.append(structlog.contextvars.get_contextvars().get("run_id"))
                return {**data, **value}

            return handler

        workflow = _dashboard(registry, profile=recording({"profile": {"name": "ada"}}), orders=recording({"orders": []}))
        WorkflowRunner().run(workflow, {}, {})

        assert len(seen) == 2
        assert seen[0] is not None
        assert seen[0] == seen[1]


class TestJoinFailure:
    def test_member_failure_routes_to_failure(self, registry: CellRegistry) -> None:
        result = WorkflowRunner().run(_dashboard(registry, orders=fails("orders db down")), {}, {})

        assert result["html"] == "unavailable"
        assert transitions_of(result[TRACE_KEY])[1] == ("fetch", "failure")
        record = result[JOIN_ERROR_KEY]
        assert record["reason"] == "member_failed"
        assert [(f["cell_name"], f["type"], f["message"]) for f in record["failures"]] == [("o", "RuntimeError", "orders db down")]
        assert "profile" not in result

    def test_all_member_failures_collected(self, registry: CellRegistry) -> None:
        result = WorkflowRunner().run(_dashboard(registry, profile=fails("a"), orders=fails("b")), {}, {})
        assert sorted(f["cell_name"] for f in result[JOIN_ERROR_KEY]["failures"]) == ["o", "p"]

    def test_failure_without_failure_edge_goes_to_error(self, registry: CellRegistry) -> None:
        result = WorkflowRunner().run(_dashboard(registry, orders=fails(), edges="render"), {}, {})
        assert result[STATUS_KEY] == RunStatus.ERROR
        assert result[TRACE_KEY][-1].target == "error"

    def test_member_output_schema_failure(self, registry: CellRegistry) -> None:
        result = WorkflowRunner().run(_dashboard(registry, orders=passthrough), {}, {})
        (failure,) = result[JOIN_ERROR_KEY]["failures"]
        assert failure["type"] == "SchemaViolation"
        assert failure["errors"][0]["loc"] == ["orders"]

    def test_runtime_key_conflict(self, registry: CellRegistry) -> None:
        workflow = _dashboard(
            registry,
            profile=adds(profile={"name": "ada"}, cache="p"),
            orders=adds(orders=[], cache="o"),
        )
        result = WorkflowRunner().run(workflow, {}, {})

        record = result[JOIN_ERROR_KEY]
        assert record["reason"] == "key_conflict"
        assert record["conflicting_keys"] == ["cache"]
        assert sorted(f["cell_name"] for f in record["failures"]) == ["o", "p"]
        assert result["html"] == "unavailable"

    def test_unchanged_keys_are_not_conflicts(self, registry: CellRegistry) -> None:
        result = WorkflowRunner().run(_dashboard(registry), {}, {"shared": 1})
        assert result[STATUS_KEY] == RunStatus.COMPLETED
        assert result["shared"] == 1

    def test_merge_failure(self, registry: CellRegistry) -> None:
        def broken(snapshot, outputs):
            raise ValueError("cannot merge")

        result = WorkflowRunner().run(_dashboard(registry, merge=broken), {}, {})
        record = result[JOIN_ERROR_KEY]
        assert record["reason"] == "merge_failed"
        assert record["failures"][0]["message"] == "cannot merge"


class TestRetries:
    def test_member_retried(self, registry: CellRegistry) -> None:
        attempts = []

        def flaky(resources, data):
            attempts.append(1)
            if len(attempts) < 3:
                raise ConnectionError("try again")
            return {**data, "orders": []}

        workflow = _dashboard(registry, orders=flaky)
        result = WorkflowRunner(EngineSettings(join_member_retries=2)).run(workflow, {}, {})
        assert result[STATUS_KEY] == RunStatus.COMPLETED
        assert len(attempts) == 3

    def test_retries_exhausted(self, registry: CellRegistry) -> None:
        calls = []

        def always(resources, data):
            calls.append(1)
            raise ConnectionError("down")

        workflow = _dashboard(registry, orders=always)
        executor = JoinExecutor(member_retries=1)
        result = WorkflowRunner(join_executor=executor).run(workflow, {}, {})
        assert result[JOIN_ERROR_KEY]["failures"][0]["type"] == "ConnectionError"
        assert len(calls) == 2


@pytest.mark.parametrize(
    ("snapshot", "output", "expected"),
    [
        ({"a": 1}, {"a": 1, "b": 2}, {"b": 2}),
        ({"a": 1}, {"a": 5}, {"a": 5}),
        ({"a": 1}, {}, {}),
    ],
)
def test_member_delta(snapshot, output, expected) -> None:
    assert member_delta(snapshot, output) == expected
