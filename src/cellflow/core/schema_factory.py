"""Factory for creating Pydantic models from schema descriptions.

Cells declare schemas as data (see cellflow.contracts.schema). The compiler
turns each description into a pydantic model once, so runs only pay the
validation cost, never the parse cost.

Cell outputs are checked without coercion: a cell that returns "42" where
an int is declared has a bug, and the run reports it. The manifest's input
schema is the one boundary where coercion is allowed, since initial data
usually comes from outside (e.g. form values).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from cellflow.contracts.keys import strip_reserved
from cellflow.contracts.schema import FieldDefinition, SchemaConfig

ExtraMode = Literal["allow", "forbid"]

TYPE_MAP: dict[str, Any] = {
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "dict": dict[str, Any],
    "list": list[Any],
    "any": Any,
}


class RecordSchema(BaseModel):
    """Base class for generated data-record schemas (coercing, extras allowed)."""

    model_config = ConfigDict(extra="allow")


class _StrictRecordSchema(RecordSchema):
    model_config = ConfigDict(extra="allow", strict=True)


class _ClosedRecordSchema(RecordSchema):
    model_config = ConfigDict(extra="forbid")


class _StrictClosedRecordSchema(RecordSchema):
    model_config = ConfigDict(extra="forbid", strict=True)


# pydantic's create_model() refuses __config__ together with __base__,
# so config combinations are expressed as base classes.
_BASES: dict[tuple[ExtraMode, bool], type[RecordSchema]] = {
    ("allow", False): RecordSchema,
    ("allow", True): _StrictRecordSchema,
    ("forbid", False): _ClosedRecordSchema,
    ("forbid", True): _StrictClosedRecordSchema,
}


def create_schema_model(
    config: SchemaConfig,
    name: str,
    allow_coercion: bool = False,
) -> type[RecordSchema]:
    """Create a Pydantic model class from a schema description.

    Args:
        config: Schema description
        name: Name for the generated class (shows up in error messages)
        allow_coercion: If True, coerce types (e.g. "42" -> 42)

    The generated model:
    - dynamic: extra="allow", no fields
    - free: extra="allow", declared fields validated
    - strict: extra="forbid", only declared fields accepted
    """
    if config.fields is None:
        return create_model(name, __base__=RecordSchema, __module__=__name__)

    field_definitions: dict[str, Any] = {}
    for index, field_def in enumerate(config.fields):
        python_type = _get_python_type(field_def)
        default = ... if field_def.required else None
        if field_def.name.isidentifier():
            field_definitions[field_def.name] = (python_type, default)
        else:
            # Hyphenated keys live under a generated attribute and validate by alias
            attribute = f"field_{index}_{field_def.name.replace('-', '_')}"
            field_definitions[attribute] = (python_type, Field(default, alias=field_def.name))

    extra_mode: ExtraMode = "allow" if config.allows_extra_fields else "forbid"
    base = _BASES[(extra_mode, not allow_coercion)]

    return create_model(name, __base__=base, __module__=__name__, **field_definitions)


def _get_python_type(field_def: FieldDefinition) -> Any:
    base_type = TYPE_MAP[field_def.field_type]
    if field_def.required:
        return base_type
    return base_type | None


def _translate_errors(exc: ValidationError) -> list[dict[str, Any]]:
    """Reduce pydantic error details to plain, serializable dicts."""
    return [
        {
            "loc": [str(part) for part in err["loc"]],
            "msg": err["msg"],
            "type": err["type"],
        }
        for err in exc.errors(include_url=False)
    ]


@dataclass(frozen=True)
class SchemaValidator:
    """A schema description paired with its generated pydantic model.

    Built once at compile time; ``validate`` is the only per-run cost.
    """

    config: SchemaConfig
    model: type[RecordSchema]

    @classmethod
    def build(cls, config: SchemaConfig, name: str, *, allow_coercion: bool = False) -> SchemaValidator:
        return cls(config=config, model=create_schema_model(config, name, allow_coercion))

    def validate(self, data: dict[str, Any]) -> list[dict[str, Any]] | None:
        """Check ``data``; return error details, or None if valid.

        Engine-owned keys are removed first so strict schemas are not
        tripped by trace or error records.
        """
        if self.config.is_dynamic:
            return None
        try:
            self.model.model_validate(strip_reserved(data))
        except ValidationError as exc:
            return _translate_errors(exc)
        return None

    def coerce(self, data: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of ``data`` with declared fields replaced by their validated values.

        Only differs from ``data`` for models built with ``allow_coercion``.

        Raises:
            pydantic.ValidationError: ``data`` does not match the schema
        """
        if self.config.is_dynamic:
            return dict(data)
        validated = self.model.model_validate(strip_reserved(data))
        declared = self.model.model_fields
        values = {field.alias or name: getattr(validated, name) for name, field in declared.items() if name in validated.model_fields_set}
        return {**data, **values}

    def describe(self) -> dict[str, Any]:
        return self.config.to_dict()
