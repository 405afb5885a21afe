"""Declarative schema descriptions for cell inputs and outputs.

A schema describes the keys a cell needs in the data record (input) or
promises to put there (output). Three document forms are accepted:

1. ``"dynamic"``: accept anything, guarantee nothing
2. A list of field specs (free mode: at least these fields, extras allowed)::

       input:
         - "user_id: str"
         - "score: int"
         - "note: str?"   # optional
         - "http-request: dict"   # hyphens are allowed, dots are not

3. A mapping with an explicit mode::

       output:
         mode: strict     # exactly these fields
         fields: ["html: str"]

Output schemas may additionally be a mapping of transition label to one of
the forms above, so each outgoing transition has its own contract::

       output:
         approved: ["decision: str", "rate: float"]
         rejected: ["decision: str"]

Validation itself is delegated to pydantic (see cellflow.core.schema_factory);
this module only parses and describes.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal

from cellflow.contracts.errors import SchemaDefinitionError

SUPPORTED_TYPES = frozenset({"str", "int", "float", "bool", "dict", "list", "any"})

FieldType = Literal["str", "int", "float", "bool", "dict", "list", "any"]

# Pattern: "field_name: type" or "field_name: type?"
# Names start with a letter or underscore; hyphens are allowed after that.
# Dots are rejected so declared fields can never shadow reserved "cellflow." keys.
FIELD_PATTERN = re.compile(r"^([A-Za-z_][\w-]*):\s*(str|int|float|bool|dict|list|any)(\?)?$")
FIELD_NAME_PATTERN = re.compile(r"^[A-Za-z_][\w-]*$")

_SCHEMA_KEYS = frozenset({"mode", "fields"})


@dataclass(frozen=True)
class FieldDefinition:
    """Definition of a single field in a schema.

    Attributes:
        name: Field name (letters, digits, underscores and hyphens)
        field_type: One of SUPPORTED_TYPES
        required: If False, field can be missing or None
    """

    name: str
    field_type: FieldType
    required: bool = True

    @classmethod
    def parse(cls, spec: str) -> FieldDefinition:
        """Parse a field specification string.

        Args:
            spec: Field spec like "name: str" or "score: float?"

        Raises:
            SchemaDefinitionError: If spec is malformed or type is unknown
        """
        spec = spec.strip()
        match = FIELD_PATTERN.match(spec)

        if not match:
            if ":" in spec:
                name_part, type_part = (p.strip() for p in spec.split(":", 1))
                type_part = type_part.rstrip("?")
                if type_part not in SUPPORTED_TYPES:
                    raise SchemaDefinitionError(
                        f"Unknown type '{type_part}' in field spec '{spec}'. Supported types: {', '.join(sorted(SUPPORTED_TYPES))}"
                    )
                if name_part[:1].isdigit():
                    raise SchemaDefinitionError(f"Invalid field name '{name_part}' in field spec '{spec}' (cannot start with a digit).")
                if name_part and not FIELD_NAME_PATTERN.match(name_part):
                    raise SchemaDefinitionError(
                        f"Invalid field name '{name_part}' in field spec '{spec}'. "
                        f"Field names may contain letters, digits, underscores and hyphens. "
                        f"Use '{name_part.replace('.', '_')}' instead."
                    )
            raise SchemaDefinitionError(f"Invalid field spec '{spec}'. Expected format: 'field_name: type' or 'field_name: type?'")

        name, field_type, optional_marker = match.groups()
        typed_field: FieldType = field_type  # type: ignore[assignment]
        return cls(name=name, field_type=typed_field, required=optional_marker is None)

    def to_spec(self) -> str:
        """Render back to the document form."""
        return f"{self.name}: {self.field_type}{'' if self.required else '?'}"


def _normalize_field_spec(spec: Any, *, index: int) -> str:
    """Accept both ``"id: int"`` and the YAML-parsed ``{"id": "int"}`` form."""
    if isinstance(spec, str):
        return spec

    if isinstance(spec, dict):
        if len(spec) != 1:
            raise SchemaDefinitionError(
                f"Field spec at index {index} is a dict with {len(spec)} keys. "
                f"Expected single-key dict like {{'field_name': 'type'}} or a string like 'field_name: type'."
            )
        name, type_spec = next(iter(spec.items()))
        if not isinstance(name, str) or not isinstance(type_spec, str):
            raise SchemaDefinitionError(f"Field spec at index {index}: dict keys and values must be strings.")
        return f"{name}: {type_spec}"

    raise SchemaDefinitionError(
        f"Field spec at index {index} must be a string like 'field_name: type' or a dict like {{'field_name': 'type'}}, got {type(spec).__name__}."
    )


@dataclass(frozen=True)
class SchemaConfig:
    """Parsed schema description.

    Attributes:
        mode: "free" (at least these fields), "strict" (exactly these), or
            None for dynamic schemas
        fields: Declared fields, or None if dynamic
    """

    mode: Literal["free", "strict"] | None
    fields: tuple[FieldDefinition, ...] | None

    @property
    def is_dynamic(self) -> bool:
        return self.fields is None

    @classmethod
    def dynamic(cls) -> SchemaConfig:
        return cls(mode=None, fields=None)

    @classmethod
    def from_value(cls, value: Any) -> SchemaConfig:
        """Parse any accepted document form.

        Raises:
            SchemaDefinitionError: If the description is malformed
        """
        if isinstance(value, SchemaConfig):
            return value
        if value is None or value == "dynamic":
            return cls.dynamic()
        if isinstance(value, list):
            return cls._from_fields("free", value)
        if isinstance(value, Mapping):
            unknown = set(value) - _SCHEMA_KEYS
            if unknown:
                raise SchemaDefinitionError(f"Unknown schema keys: {sorted(unknown)}. Allowed: {sorted(_SCHEMA_KEYS)}")
            if "fields" not in value:
                raise SchemaDefinitionError("'fields' key is required in schema mapping. Use 'dynamic' to accept any fields.")
            if value["fields"] == "dynamic":
                return cls.dynamic()
            mode = value.get("mode", "free")
            if mode not in ("free", "strict"):
                raise SchemaDefinitionError(f"Invalid schema mode '{mode}'. Expected 'free' or 'strict'.")
            return cls._from_fields(mode, value["fields"])
        raise SchemaDefinitionError(f"Schema must be 'dynamic', a list of field specs or a mapping, got {type(value).__name__}")

    @classmethod
    def _from_fields(cls, mode: Literal["free", "strict"], fields_value: Any) -> SchemaConfig:
        if not isinstance(fields_value, list):
            raise SchemaDefinitionError(f"Schema fields must be a list, got {type(fields_value).__name__}")

        parsed = tuple(FieldDefinition.parse(_normalize_field_spec(f, index=i)) for i, f in enumerate(fields_value))

        names = [f.name for f in parsed]
        if len(names) != len(set(names)):
            duplicates = sorted({n for n in names if names.count(n) > 1})
            raise SchemaDefinitionError(f"Duplicate field names in schema: {', '.join(duplicates)}")

        return cls(mode=mode, fields=parsed)

    def to_dict(self) -> dict[str, Any]:
        """Serializable description, used in error records and the system index."""
        if self.fields is None:
            return {"mode": "dynamic", "fields": None}
        return {"mode": self.mode, "fields": [f.to_spec() for f in self.fields]}

    @property
    def allows_extra_fields(self) -> bool:
        return self.fields is None or self.mode == "free"

    @property
    def field_names(self) -> frozenset[str]:
        """Every declared field, required or optional."""
        if self.fields is None:
            return frozenset()
        return frozenset(f.name for f in self.fields)

    @property
    def required_keys(self) -> frozenset[str]:
        """Keys that must be present.

        On an input schema these are the keys a cell requires; on an output
        schema they are the keys the cell guarantees. Optional fields are
        never guaranteed since producers may omit them.
        """
        if self.fields is None:
            return frozenset()
        return frozenset(f.name for f in self.fields if f.required)


type OutputSchema = SchemaConfig | Mapping[str, SchemaConfig]
"""A single output schema, or one schema per transition label."""


def _is_single_schema(value: Any) -> bool:
    if value is None or isinstance(value, SchemaConfig | str | list):
        return True
    return isinstance(value, Mapping) and "fields" in value


def parse_output_schema(value: Any) -> OutputSchema:
    """Parse an output schema that may be per-transition.

    A mapping containing a ``fields`` key is a single schema; any other
    mapping is read as transition label -> schema.
    """
    if _is_single_schema(value):
        return SchemaConfig.from_value(value)
    if isinstance(value, Mapping):
        if not value:
            raise SchemaDefinitionError("Per-transition output schema must declare at least one transition")
        return {str(label): SchemaConfig.from_value(schema) for label, schema in value.items()}
    raise SchemaDefinitionError(f"Invalid output schema: {value!r}")


def is_per_transition(output: OutputSchema) -> bool:
    return not isinstance(output, SchemaConfig)


def output_schema_for(output: OutputSchema, transition: str | None) -> SchemaConfig | None:
    """Schema for the transition actually taken.

    Returns None when the cell declares per-transition schemas and none
    exists for ``transition``.
    """
    if isinstance(output, SchemaConfig):
        return output
    if transition is None:
        return None
    return output.get(transition)


def guaranteed_output_keys(output: OutputSchema, transition: str | None) -> frozenset[str]:
    """Keys guaranteed after taking ``transition``.

    With per-transition schemas and no known transition, only the keys
    guaranteed by every transition count.
    """
    if isinstance(output, SchemaConfig):
        return output.required_keys
    if transition is not None:
        schema = output.get(transition)
        return schema.required_keys if schema is not None else frozenset()
    key_sets = [schema.required_keys for schema in output.values()]
    return frozenset.intersection(*key_sets) if key_sets else frozenset()


def all_output_field_names(output: OutputSchema) -> frozenset[str]:
    """Every key a cell may write, across all transitions."""
    if isinstance(output, SchemaConfig):
        return output.field_names
    names: set[str] = set()
    for schema in output.values():
        names |= schema.field_names
    return frozenset(names)


def output_schema_to_dict(output: OutputSchema) -> dict[str, Any]:
    if isinstance(output, SchemaConfig):
        return output.to_dict()
    return {"transitions": {label: schema.to_dict() for label, schema in sorted(output.items())}}
