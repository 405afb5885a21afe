"""JoinExecutor: fork-join execution of join nodes.

Steps, in order:

1. snapshot  - every member gets its own deep copy of the data record as
               it was when the join was entered
2. fork      - members run on a thread pool (parallel) or one after the
               other (sequential); members never see each other's output
3. barrier   - wait for every member; all failures are collected
4. merge     - the merge function if one was declared, otherwise each
               member's delta (keys it added or changed) is laid over the
               snapshot, and overlapping deltas fail the join

Compilation already rejects joins whose declared outputs overlap; the
delta check at step 4 catches cells that write undeclared keys.
"""

from __future__ import annotations

import contextvars
import copy
from collections.abc import Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any

import structlog
from tenacity import Retrying, stop_after_attempt

from cellflow.contracts.enums import JoinStrategy
from cellflow.contracts.errors import JoinErrorRecord, JoinMemberError
from cellflow.contracts.keys import JOIN_ERROR_KEY
from cellflow.contracts.types import Resources
from cellflow.engine.cell_executor import check_input, check_output, invoke
from cellflow.engine.compiled import CompiledCell, CompiledJoin

slog = structlog.get_logger(__name__)


@dataclass(frozen=True)
class _MemberOutcome:
    cell: CompiledCell
    data: dict[str, Any] | None
    failure: JoinMemberError | None


@dataclass(frozen=True)
class JoinResult:
    """Outcome of one join execution.

    ``data`` is the merged record on success; on failure it is the
    snapshot with the join-error record under ``cellflow.join_error``.
    """

    data: dict[str, Any]
    error: JoinErrorRecord | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def transition(self) -> str:
        return "done" if self.error is None else "failure"


def member_delta(snapshot: Mapping[str, Any], output: Mapping[str, Any]) -> dict[str, Any]:
    """Keys a member added or changed relative to the snapshot."""
    return {key: value for key, value in output.items() if key not in snapshot or snapshot[key] != value}


class JoinExecutor:
    """Runs join nodes. Stateless between calls; safe to share."""

    def __init__(
        self,
        *,
        max_workers: int | None = None,
        member_retries: int = 0,
        async_timeout: float | None = None,
    ) -> None:
        self._max_workers = max_workers
        self._member_retries = member_retries
        self._async_timeout = async_timeout

    def execute(self, join: CompiledJoin, resources: Resources, data: dict[str, Any]) -> JoinResult:
        snapshot = copy.deepcopy(data)
        slog.debug("join_started", join=join.name, members=[m.name for m in join.members], strategy=str(join.strategy))

        if join.strategy == JoinStrategy.SEQUENTIAL:
            outcomes = [self._run_member(member, resources, copy.deepcopy(snapshot)) for member in join.members]
        else:
            workers = min(self._max_workers or len(join.members), len(join.members))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"join-{join.name}") as pool:
                # Each member runs in a copy of the caller's context so run_id stays bound
                futures = [
                    pool.submit(contextvars.copy_context().run, self._run_member, member, resources, copy.deepcopy(snapshot))
                    for member in join.members
                ]
                outcomes = [future.result() for future in futures]

        failures = [outcome.failure for outcome in outcomes if outcome.failure is not None]
        if failures:
            return self._fail(join, snapshot, JoinErrorRecord(join=join.name, reason="member_failed", failures=failures))

        outputs = [outcome.data for outcome in outcomes if outcome.data is not None]
        if join.merge is not None:
            return self._merge_with_function(join, snapshot, outputs)
        return self._merge_deltas(join, snapshot, outcomes)

    def _run_member(self, member: CompiledCell, resources: Resources, data: dict[str, Any]) -> _MemberOutcome:
        schema_error = check_input(member, data)
        if schema_error is not None:
            return _MemberOutcome(member, None, self._schema_failure(member, "input", schema_error["errors"]))

        attempts = self._member_retries + 1
        output: Any = None
        try:
            for attempt_state in Retrying(stop=stop_after_attempt(attempts), reraise=True):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    try:
                        output = invoke(member, resources, data if attempts == 1 else copy.deepcopy(data), timeout=self._async_timeout)
                    except Exception as exc:
                        slog.warning(
                            "join_member_failed",
                            cell=member.name,
                            cell_id=member.cell_id,
                            attempt=attempt,
                            attempts=attempts,
                            error=str(exc),
                            error_type=type(exc).__name__,
                        )
                        raise
        except Exception as exc:
            failure = JoinMemberError(cell_name=member.name, cell_id=member.cell_id, type=type(exc).__name__, message=str(exc))
            return _MemberOutcome(member, None, failure)

        schema_error = check_output(member, None, output)
        if schema_error is not None:
            return _MemberOutcome(member, None, self._schema_failure(member, "output", schema_error["errors"]))
        return _MemberOutcome(member, output, None)

    @staticmethod
    def _schema_failure(member: CompiledCell, phase: str, errors: list[dict[str, Any]]) -> JoinMemberError:
        return JoinMemberError(
            cell_name=member.name,
            cell_id=member.cell_id,
            type="SchemaViolation",
            message=f"{phase} schema check failed",
            errors=errors,
        )

    def _merge_with_function(self, join: CompiledJoin, snapshot: dict[str, Any], outputs: list[dict[str, Any]]) -> JoinResult:
        assert join.merge is not None
        try:
            merged = join.merge(copy.deepcopy(snapshot), outputs)
            if not isinstance(merged, Mapping):
                raise TypeError(f"merge function returned {type(merged).__name__}, expected a dict")
        except Exception as exc:
            failure = JoinMemberError(cell_name=join.name, cell_id=join.merge_source or join.name, type=type(exc).__name__, message=str(exc))
            return self._fail(join, snapshot, JoinErrorRecord(join=join.name, reason="merge_failed", failures=[failure]))
        return JoinResult(data=dict(merged))

    def _merge_deltas(self, join: CompiledJoin, snapshot: dict[str, Any], outcomes: list[_MemberOutcome]) -> JoinResult:
        merged = dict(snapshot)
        writers: dict[str, list[str]] = {}
        for outcome in outcomes:
            assert outcome.data is not None
            delta = member_delta(snapshot, outcome.data)
            for key in delta:
                writers.setdefault(key, []).append(outcome.cell.name)
            merged.update(delta)

        conflicts = sorted(key for key, cells in writers.items() if len(cells) > 1)
        if conflicts:
            failures = [
                JoinMemberError(
                    cell_name=outcome.cell.name,
                    cell_id=outcome.cell.cell_id,
                    type="KeyConflict",
                    message=f"wrote conflicting keys {[k for k in conflicts if outcome.cell.name in writers[k]]}",
                )
                for outcome in outcomes
                if any(outcome.cell.name in writers[k] for k in conflicts)
            ]
            record = JoinErrorRecord(join=join.name, reason="key_conflict", failures=failures, conflicting_keys=conflicts)
            return self._fail(join, snapshot, record)
        return JoinResult(data=merged)

    @staticmethod
    def _fail(join: CompiledJoin, snapshot: dict[str, Any], record: JoinErrorRecord) -> JoinResult:
        slog.warning(
            "join_failed",
            join=join.name,
            reason=record["reason"],
            cells=[failure["cell_name"] for failure in record["failures"]],
        )
        return JoinResult(data={**snapshot, JOIN_ERROR_KEY: record}, error=record)
