"""Manifest and fragment models.

Manifests are parsed from YAML/dict documents (see loader.py) or built
directly in Python. Both paths go through the same frozen pydantic models,
so shape errors (wrong types, unknown keys, malformed schemas or dispatch
expressions) surface at construction. Graph-level rules (dangling targets,
reachability, dispatch coverage) are checked separately by validation.py so
that every failing rule can be reported at once.

Example YAML:
    id: loan-approval
    input_schema: ["applicant: dict"]
    cells:
      start: {id: loan/intake}
      assess: {id: loan/assess, on_error: manual}
      approve: loan/approve
      reject: loan/reject
      manual: loan/manual-review
    edges:
      start: assess
      assess: {approve: approve, reject: reject, review: manual}
      approve: end
      reject: end
      manual: end
    dispatches:
      assess:
        approve: "data['score'] >= 750 and data['amount'] <= 50000"
        reject: "data['score'] < 500"
        review: "True"
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from cellflow.contracts.enums import JoinStrategy
from cellflow.contracts.errors import SchemaDefinitionError
from cellflow.contracts.schema import OutputSchema, SchemaConfig, parse_output_schema

if TYPE_CHECKING:
    from cellflow.core.registry import CellSpec

_MODEL_CONFIG = ConfigDict(frozen=True, extra="forbid", arbitrary_types_allowed=True, populate_by_name=True)

type EdgeDef = str | dict[str, str]
"""Unconditional target, or transition label -> target."""

type DispatchEntry = tuple[str, Any]
"""(label, predicate); predicate is a callable or an expression string."""


def _validate_expression(label: str, predicate: Any) -> Any:
    """Parse expression strings eagerly so typos fail at load time."""
    if callable(predicate):
        return predicate
    if isinstance(predicate, bool):
        return "True" if predicate else "False"
    if not isinstance(predicate, str):
        raise ValueError(f"Predicate for label '{label}' must be a callable or expression string, got {type(predicate).__name__}")

    from cellflow.engine.expression_parser import (
        ExpressionParser,
        ExpressionSecurityError,
        ExpressionSyntaxError,
    )

    try:
        ExpressionParser(predicate)
    except ExpressionSyntaxError as e:
        raise ValueError(f"Invalid predicate syntax for label '{label}': {e}") from e
    except ExpressionSecurityError as e:
        raise ValueError(f"Forbidden construct in predicate for label '{label}': {e}") from e
    return predicate


def _normalize_dispatches(value: Any) -> dict[str, tuple[DispatchEntry, ...]]:
    """Accept ``{cell: {label: pred}}`` or ``{cell: [[label, pred], ...]}``."""
    if not isinstance(value, Mapping):
        raise ValueError(f"dispatches must be a mapping of cell name to predicates, got {type(value).__name__}")
    result: dict[str, tuple[DispatchEntry, ...]] = {}
    for cell_name, entries in value.items():
        pairs: list[DispatchEntry] = []
        if isinstance(entries, Mapping):
            items = list(entries.items())
        elif isinstance(entries, list | tuple):
            items = []
            for i, entry in enumerate(entries):
                if not isinstance(entry, list | tuple) or len(entry) != 2:
                    raise ValueError(f"dispatches[{cell_name!r}][{i}] must be a (label, predicate) pair")
                items.append((entry[0], entry[1]))
        else:
            raise ValueError(f"dispatches[{cell_name!r}] must be a mapping or a list of pairs")
        for label, predicate in items:
            pairs.append((str(label), _validate_expression(str(label), predicate)))
        result[str(cell_name)] = tuple(pairs)
    return result


class CellSchema(BaseModel):
    """Inline schema for a manifest cell; overrides the registered one."""

    model_config = _MODEL_CONFIG

    input: SchemaConfig = Field(default_factory=SchemaConfig.dynamic)
    output: SchemaConfig | dict[str, SchemaConfig] = Field(default_factory=SchemaConfig.dynamic)

    @field_validator("input", mode="before")
    @classmethod
    def parse_input(cls, v: Any) -> SchemaConfig:
        try:
            return SchemaConfig.from_value(v)
        except SchemaDefinitionError as e:
            raise ValueError(f"invalid input schema: {e}") from e

    @field_validator("output", mode="before")
    @classmethod
    def parse_output(cls, v: Any) -> OutputSchema:
        try:
            return parse_output_schema(v)
        except SchemaDefinitionError as e:
            raise ValueError(f"invalid output schema: {e}") from e


class CellRef(BaseModel):
    """A manifest's use of a registered cell under a local name.

    ``schema`` None means inherit the registered schema. ``on_error`` names
    the cell that handles this cell's exceptions; whether it was declared at
    all (even as none) is visible via ``on_error_declared``.
    """

    model_config = _MODEL_CONFIG

    id: str = Field(min_length=1)
    cell_schema: CellSchema | None = Field(default=None, alias="schema")
    on_error: str | None = None
    requires: tuple[str, ...] = ()
    doc: str | None = None

    @field_validator("cell_schema", mode="before")
    @classmethod
    def parse_inherit(cls, v: Any) -> Any:
        if v == "inherit":
            return None
        return v

    @property
    def on_error_declared(self) -> bool:
        return "on_error" in self.model_fields_set

    def schemas(self, spec: CellSpec | None) -> tuple[SchemaConfig, OutputSchema]:
        """Effective (input, output) schemas: inline if given, else registered."""
        if self.cell_schema is not None:
            return self.cell_schema.input, self.cell_schema.output
        if spec is None:
            return SchemaConfig.dynamic(), SchemaConfig.dynamic()
        return spec.input_schema, spec.output_schema


class JoinDef(BaseModel):
    """A fork-join node: members run on one snapshot and are merged.

    ``merge`` is a callable ``(snapshot, outputs) -> data`` or an import
    string ``"package.module:function"`` resolved at compile time.
    """

    model_config = _MODEL_CONFIG

    cells: tuple[str, ...]
    strategy: JoinStrategy = JoinStrategy.PARALLEL
    merge: Any = None

    @field_validator("merge")
    @classmethod
    def validate_merge(cls, v: Any) -> Any:
        if v is None or callable(v) or isinstance(v, str):
            return v
        raise ValueError(f"merge must be a callable or import string, got {type(v).__name__}")


class InterceptorScope(BaseModel):
    """Which cells an interceptor wraps.

    Exactly one of: ``all``, ``id_match`` (glob over cell ids), ``cells``
    (explicit list of manifest cell names).
    """

    model_config = _MODEL_CONFIG

    all: bool = False
    id_match: str | None = None
    cells: tuple[str, ...] | None = None

    @model_validator(mode="after")
    def validate_exactly_one(self) -> InterceptorScope:
        chosen = sum([self.all, self.id_match is not None, self.cells is not None])
        if chosen != 1:
            raise ValueError("interceptor scope must be exactly one of 'all', {id_match: ...} or {cells: [...]}")
        return self


class InterceptorDef(BaseModel):
    """Cross-cutting pre/post data transforms around matching cells."""

    model_config = _MODEL_CONFIG

    id: str = Field(min_length=1)
    scope: InterceptorScope
    pre: Any = None
    post: Any = None

    @field_validator("scope", mode="before")
    @classmethod
    def parse_scope(cls, v: Any) -> Any:
        if v in ("all", True):
            return {"all": True}
        return v

    @field_validator("pre", "post")
    @classmethod
    def validate_transform(cls, v: Any) -> Any:
        if v is None or callable(v) or isinstance(v, str):
            return v
        raise ValueError(f"interceptor transform must be a callable or import string, got {type(v).__name__}")


def _normalize_cells(value: Any) -> Any:
    """A bare string is shorthand for ``{id: <string>}``."""
    if not isinstance(value, Mapping):
        return value
    return {name: {"id": ref} if isinstance(ref, str) else ref for name, ref in value.items()}


class Fragment(BaseModel):
    """A reusable sub-graph inlined into a host manifest at load time.

    Edges and ``on_error`` fields inside a fragment may point at
    ``exit:<label>``; the host wires each label to one of its own targets.

    Example YAML:
        id: auth-check
        entry: check
        exits: [ok, denied]
        cells:
          check: auth/check-session
          refresh: auth/refresh
        edges:
          check: {valid: exit:ok, stale: refresh, missing: exit:denied}
          refresh: exit:ok
        dispatches:
          check:
            valid: "data['session_state'] == 'valid'"
            stale: "data['session_state'] == 'stale'"
            missing: "True"
    """

    model_config = _MODEL_CONFIG

    id: str = Field(min_length=1)
    entry: str = Field(min_length=1)
    exits: tuple[str, ...] = ()
    cells: dict[str, CellRef]
    edges: dict[str, str | dict[str, str]] = Field(default_factory=dict)
    dispatches: dict[str, tuple[tuple[str, Any], ...]] = Field(default_factory=dict)

    @field_validator("cells", mode="before")
    @classmethod
    def parse_cells(cls, v: Any) -> Any:
        return _normalize_cells(v)

    @field_validator("dispatches", mode="before")
    @classmethod
    def parse_dispatches(cls, v: Any) -> Any:
        return _normalize_dispatches(v)


class FragmentRef(BaseModel):
    """A host manifest's use of a fragment.

    Exactly one of ``fragment`` (inline) or ``ref`` (YAML path, relative to
    the manifest file) is given. ``as`` renames the fragment's entry cell
    in the host; it defaults to the reference's key in ``fragments``.
    """

    model_config = _MODEL_CONFIG

    fragment: Fragment | None = None
    ref: str | None = None
    entry_as: str | None = Field(default=None, alias="as")
    exits: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def validate_source(self) -> FragmentRef:
        if (self.fragment is None) == (self.ref is None):
            raise ValueError("fragment reference needs exactly one of 'fragment' (inline) or 'ref' (file path)")
        return self


class Manifest(BaseModel):
    """In-memory workflow description.

    Frozen after construction. Fragment expansion returns a new Manifest
    rather than modifying this one.
    """

    model_config = _MODEL_CONFIG

    id: str = Field(min_length=1)
    doc: str | None = None
    start: str = "start"
    input_schema: SchemaConfig | None = None
    cells: dict[str, CellRef]
    edges: dict[str, str | dict[str, str]] = Field(default_factory=dict)
    dispatches: dict[str, tuple[tuple[str, Any], ...]] = Field(default_factory=dict)
    joins: dict[str, JoinDef] = Field(default_factory=dict)
    interceptors: tuple[InterceptorDef, ...] = ()
    fragments: dict[str, FragmentRef] = Field(default_factory=dict)
    source_path: Path | None = Field(default=None, exclude=True)

    @model_validator(mode="before")
    @classmethod
    def expand_pipeline(cls, data: Any) -> Any:
        """Turn ``pipeline: [a, b, c]`` into ``a -> b -> c -> end``."""
        if not isinstance(data, Mapping) or "pipeline" not in data:
            return data
        conflicting = sorted(k for k in ("edges", "dispatches", "fragments", "joins") if data.get(k))
        if conflicting:
            raise ValueError(f"'pipeline' cannot be combined with {conflicting}")
        pipeline = data["pipeline"]
        if not isinstance(pipeline, list | tuple) or not pipeline:
            raise ValueError("'pipeline' must be a non-empty list of cell names")
        names = [str(name) for name in pipeline]
        if "start" in data and data["start"] != names[0]:
            raise ValueError(f"'start' ({data['start']!r}) must be the first pipeline cell ({names[0]!r})")

        expanded = {k: v for k, v in data.items() if k != "pipeline"}
        expanded["start"] = names[0]
        expanded["edges"] = {name: target for name, target in zip(names, [*names[1:], "end"], strict=True)}
        expanded["dispatches"] = {}
        return expanded

    @field_validator("cells", mode="before")
    @classmethod
    def parse_cells(cls, v: Any) -> Any:
        return _normalize_cells(v)

    @field_validator("dispatches", mode="before")
    @classmethod
    def parse_dispatches(cls, v: Any) -> Any:
        return _normalize_dispatches(v)

    @field_validator("input_schema", mode="before")
    @classmethod
    def parse_input_schema(cls, v: Any) -> SchemaConfig | None:
        if v is None:
            return None
        try:
            return SchemaConfig.from_value(v)
        except SchemaDefinitionError as e:
            raise ValueError(f"invalid input schema: {e}") from e

    @property
    def join_members(self) -> dict[str, str]:
        """Member cell name -> owning join name."""
        return {member: join_name for join_name, join in self.joins.items() for member in join.cells}

    @property
    def node_names(self) -> frozenset[str]:
        """Every state a run can occupy besides the terminal markers."""
        return frozenset(self.cells) | frozenset(self.joins)
