"""Status codes and modes used across subsystem boundaries."""

from enum import StrEnum


class RunStatus(StrEnum):
    """Final status of a workflow run.

    Written to the result record under ``cellflow.status``.
    """

    COMPLETED = "completed"
    ERROR = "error"
    HALTED = "halted"
    INPUT_ERROR = "input_error"


class JoinStrategy(StrEnum):
    """How join members are scheduled.

    Both strategies give every member the same snapshot of the data record.
    """

    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class SchemaPhase(StrEnum):
    """Which side of a cell a runtime schema check guarded."""

    INPUT = "input"
    OUTPUT = "output"


class ImplementationStatus(StrEnum):
    """Development status of one manifest cell, as reported by workflow_status."""

    PENDING = "pending"
    PASSING = "passing"
    FAILING = "failing"
