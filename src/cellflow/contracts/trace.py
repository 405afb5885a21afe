"""Execution trace records.

A trace is the ordered log of cell executions produced by one run. The
runner appends entries while the run is in progress and hands back an
immutable tuple once it completes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True, slots=True)
class TraceEntry:
    """One executed step.

    Attributes:
        cell_name: Local name of the cell (or join) in the manifest
        cell_id: Registry id of the cell; for join nodes this is the join name
        transition: Matched dispatch label, or None for unconditional edges
        target: Next state the run moved to
        data: Snapshot of the data record after the step (reserved keys removed)
    """

    cell_name: str
    cell_id: str
    transition: str | None
    target: str
    data: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return {
            "cell_name": self.cell_name,
            "cell_id": self.cell_id,
            "transition": self.transition,
            "target": self.target,
            "data": self.data,
        }


type ExecutionTrace = tuple[TraceEntry, ...]


def transitions_of(trace: ExecutionTrace) -> list[tuple[str, str | None]]:
    """(cell_name, transition) pairs, the usual shape for assertions."""
    return [(entry.cell_name, entry.transition) for entry in trace]
