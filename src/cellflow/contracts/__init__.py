"""Shared contracts for cross-boundary data types.

This package is a leaf module with no outbound dependencies to core/engine.
Settings classes are NOT re-exported here - import them from
cellflow.core.config.
"""

from cellflow.contracts.enums import ImplementationStatus, JoinStrategy, RunStatus, SchemaPhase
from cellflow.contracts.errors import (
    CellErrorRecord,
    CellflowError,
    CellNotFoundError,
    CellRegistrationError,
    DispatchError,
    FragmentError,
    InputErrorRecord,
    JoinConflictError,
    JoinErrorRecord,
    JoinMemberError,
    ManifestCellNotFoundError,
    ManifestValidationError,
    RunawayWorkflowError,
    SchemaChainError,
    SchemaChainViolation,
    SchemaDefinitionError,
    SchemaErrorRecord,
    SubworkflowErrorMarker,
    ValidationIssue,
)
from cellflow.contracts.schema import (
    FieldDefinition,
    OutputSchema,
    SchemaConfig,
    parse_output_schema,
)
from cellflow.contracts.trace import ExecutionTrace, TraceEntry, transitions_of

__all__ = [
    "CellErrorRecord",
    "CellNotFoundError",
    "CellRegistrationError",
    "CellflowError",
    "DispatchError",
    "ExecutionTrace",
    "FieldDefinition",
    "FragmentError",
    "ImplementationStatus",
    "InputErrorRecord",
    "JoinConflictError",
    "JoinErrorRecord",
    "JoinMemberError",
    "JoinStrategy",
    "ManifestCellNotFoundError",
    "ManifestValidationError",
    "OutputSchema",
    "RunStatus",
    "RunawayWorkflowError",
    "SchemaChainError",
    "SchemaChainViolation",
    "SchemaConfig",
    "SchemaDefinitionError",
    "SchemaErrorRecord",
    "SchemaPhase",
    "SubworkflowErrorMarker",
    "TraceEntry",
    "ValidationIssue",
    "parse_output_schema",
    "transitions_of",
]
