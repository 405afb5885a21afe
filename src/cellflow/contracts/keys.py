"""Reserved keys that the engine writes into the data record.

Every engine-owned key carries the ``cellflow.`` prefix. Field names in
schemas must be Python identifiers, so a reserved key can never collide
with a declared field, and reserved keys are stripped before any schema
validation runs.
"""

from __future__ import annotations

from typing import Any

RESERVED_PREFIX = "cellflow."

TRACE_KEY = "cellflow.trace"
STATUS_KEY = "cellflow.status"
INPUT_ERROR_KEY = "cellflow.input_error"
SCHEMA_ERROR_KEY = "cellflow.schema_error"
JOIN_ERROR_KEY = "cellflow.join_error"
ERROR_KEY = "cellflow.error"
CHILD_TRACE_KEY = "cellflow.child_trace"

# Terminal states of every workflow state machine
END = "end"
ERROR = "error"
HALT = "halt"
TERMINAL_STATES = frozenset({END, ERROR, HALT})

# Prefix used inside fragments to reference a host-wired exit
EXIT_PREFIX = "exit:"


def is_reserved(key: str) -> bool:
    """Return True if ``key`` is owned by the engine."""
    return key.startswith(RESERVED_PREFIX)


def strip_reserved(data: dict[str, Any]) -> dict[str, Any]:
    """Return a shallow copy of ``data`` without engine-owned keys."""
    return {k: v for k, v in data.items() if not (isinstance(k, str) and is_reserved(k))}
