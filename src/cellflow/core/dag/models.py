# src/cellflow/core/dag/models.py
"""Types shared by the graph and the schema-chain analysis.

Leaf module: no intra-package imports beyond contracts.
"""

from __future__ import annotations

import difflib
from dataclasses import dataclass
from enum import StrEnum


class NodeKind(StrEnum):
    CELL = "cell"
    JOIN = "join"
    TERMINAL = "terminal"


class EdgeKind(StrEnum):
    """FLOW edges follow a transition; ERROR edges follow an exception to on_error."""

    FLOW = "flow"
    ERROR = "error"


# Edge key for unconditional edges; MultiDiGraph keys must be hashable and
# labels are always non-empty strings, so the empty string cannot collide.
UNCONDITIONAL_KEY = ""
ON_ERROR_KEY = "on_error"


@dataclass(frozen=True, slots=True)
class EdgeInfo:
    """One outgoing transition of a node.

    Attributes:
        source: Node the transition leaves
        target: Node or terminal marker it enters
        label: Transition label, None for unconditional and error edges
        kind: FLOW or ERROR
    """

    source: str
    target: str
    label: str | None
    kind: EdgeKind = EdgeKind.FLOW


def suggest_similar(name: str, candidates: list[str]) -> list[str]:
    """Close matches for "did you mean" hints in validation messages."""
    return difflib.get_close_matches(name, candidates, n=3, cutoff=0.6)
