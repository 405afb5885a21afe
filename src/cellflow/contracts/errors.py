"""Exceptions and structured error records.

Load-time problems (malformed manifests, broken schema chains) are raised as
exceptions and abort compilation. Run-time problems that a caller is expected
to inspect (bad input, schema violations, join failures, handler errors) are
written into the data record as the TypedDict records defined below.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, NotRequired, TypedDict

# =============================================================================
# Run-time error records (stored in the data record, never raised)
# =============================================================================


class InputErrorRecord(TypedDict):
    """Initial data failed the manifest's input schema. No cell ran."""

    schema: dict[str, Any]
    errors: list[dict[str, Any]]
    data: dict[str, Any]


class SchemaErrorRecord(TypedDict):
    """A cell's input or output failed its declared schema."""

    cell_name: str
    cell_id: str
    phase: str  # SchemaPhase value
    transition: str | None
    schema: dict[str, Any]
    errors: list[dict[str, Any]]
    data: dict[str, Any]


class CellErrorRecord(TypedDict):
    """A cell handler raised."""

    cell_name: str
    cell_id: str
    type: str  # Exception class name
    message: str


class JoinMemberError(TypedDict):
    """Failure of a single join member."""

    cell_name: str
    cell_id: str
    type: str
    message: str
    errors: NotRequired[list[dict[str, Any]]]  # schema errors, when the member failed validation


class JoinErrorRecord(TypedDict):
    """A join aborted: member failure or output-key collision."""

    join: str
    reason: str  # "member_failed", "key_conflict" or "merge_failed"
    failures: list[JoinMemberError]
    conflicting_keys: NotRequired[list[str]]


class SubworkflowErrorMarker(TypedDict):
    """Generic failure signal surfaced to a parent workflow.

    Carries no internal cell names. The parent routes on the presence of
    this marker; details stay in the child trace.
    """

    failed: bool
    workflow: str


# =============================================================================
# Exceptions
# =============================================================================


class CellflowError(Exception):
    """Base class for every error raised by cellflow."""


class SchemaDefinitionError(CellflowError, ValueError):
    """A declarative schema description is malformed."""


class CellRegistrationError(CellflowError):
    """A cell spec is invalid or its id is already registered."""


class CellNotFoundError(CellflowError, KeyError):
    """Lookup of an unknown cell id."""

    def __init__(self, cell_id: str) -> None:
        super().__init__(cell_id)
        self.cell_id = cell_id

    def __str__(self) -> str:
        return f"Cell {self.cell_id!r} not found in registry"


class ManifestCellNotFoundError(CellflowError, KeyError):
    """A cell name the manifest does not declare."""

    def __init__(self, manifest_id: str, cell_name: str) -> None:
        super().__init__(cell_name)
        self.manifest_id = manifest_id
        self.cell_name = cell_name

    def __str__(self) -> str:
        return f"Cell {self.cell_name!r} not found in manifest {self.manifest_id!r}"


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """A single failed manifest rule.

    Attributes:
        rule: Short machine-readable rule name (e.g. "edge_target")
        message: Human-readable description
        context: Names involved in the failure, for programmatic inspection
    """

    rule: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)


class ManifestValidationError(CellflowError):
    """A manifest failed one or more structural rules.

    Carries every failing rule, not just the first.
    """

    def __init__(self, manifest_id: str, issues: list[ValidationIssue]) -> None:
        self.manifest_id = manifest_id
        self.issues = tuple(issues)
        lines = "; ".join(f"[{i.rule}] {i.message}" for i in issues)
        super().__init__(f"Manifest {manifest_id!r} is invalid: {lines}")

    @property
    def rules(self) -> set[str]:
        """Names of the rules that failed."""
        return {issue.rule for issue in self.issues}


class FragmentError(CellflowError):
    """A fragment is inconsistent or cannot be expanded into its host."""

    def __init__(self, fragment_id: str, message: str, **context: Any) -> None:
        self.fragment_id = fragment_id
        self.context = context
        super().__init__(f"Fragment {fragment_id!r}: {message}")


@dataclass(frozen=True, slots=True)
class SchemaChainViolation:
    """A required key that is not guaranteed on some path.

    Attributes:
        cell_name: Cell (or join member) whose input is unsatisfied
        missing_key: The required key
        path: Witness path from the start cell on which the key is missing
    """

    cell_name: str
    missing_key: str
    path: tuple[str, ...]

    def describe(self) -> str:
        return f"{self.cell_name} requires {self.missing_key!r}, missing on path {' -> '.join(self.path)}"


class SchemaChainError(CellflowError):
    """Some cell's required input is not satisfiable from upstream outputs."""

    def __init__(self, manifest_id: str, violations: list[SchemaChainViolation]) -> None:
        self.manifest_id = manifest_id
        self.violations = tuple(violations)
        details = "; ".join(v.describe() for v in violations)
        super().__init__(f"Schema chain error in {manifest_id!r}: {details}")


class JoinConflictError(SchemaChainError):
    """Join members declare overlapping output keys and no merge function."""

    def __init__(self, manifest_id: str, join_name: str, conflicts: dict[str, list[str]]) -> None:
        self.manifest_id = manifest_id
        self.violations = ()
        self.join_name = join_name
        self.conflicts = conflicts
        details = ", ".join(f"{key!r} produced by {sorted(cells)}" for key, cells in sorted(conflicts.items()))
        CellflowError.__init__(self, f"Join {join_name!r} in {manifest_id!r} has output key conflict: {details}")


class DispatchError(CellflowError):
    """No dispatch predicate matched a cell's output.

    Compilation guarantees coverage of every edge label, so this indicates
    a predicate bug rather than a graph bug.
    """

    def __init__(self, cell_name: str, labels: list[str]) -> None:
        self.cell_name = cell_name
        self.labels = labels
        super().__init__(f"No dispatch predicate matched for cell {cell_name!r} (labels tried: {labels})")


class RunawayWorkflowError(CellflowError):
    """A run exceeded the configured step limit (likely an unbounded cycle)."""

    def __init__(self, manifest_id: str, max_steps: int) -> None:
        self.manifest_id = manifest_id
        self.max_steps = max_steps
        super().__init__(f"Workflow {manifest_id!r} exceeded {max_steps} steps")
