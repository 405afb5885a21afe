"""Cell briefs: self-contained descriptions of one cell for its implementer.

A brief collects what a manifest and the registry know about a cell (its
schemas, transition labels, required resources and documentation) plus
example data generated from the schemas, and renders them as a prompt-style
text. ``reassignment_brief`` appends the context of a failed attempt so the
cell can be handed back for another implementation.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from cellflow.contracts.errors import ManifestCellNotFoundError
from cellflow.contracts.schema import OutputSchema, SchemaConfig, is_per_transition, output_schema_to_dict
from cellflow.core.manifest.fragments import expand_all_fragments
from cellflow.core.manifest.models import Manifest
from cellflow.core.registry import CellRegistry

# Placeholder per declared type; also the default sample input for workflow status checks
EXAMPLE_VALUES: dict[str, Any] = {
    "str": "example",
    "int": 1,
    "float": 1.0,
    "bool": True,
    "dict": {},
    "list": [],
    "any": None,
}


def example_record(schema: SchemaConfig) -> dict[str, Any]:
    """One placeholder value per declared field; empty for dynamic schemas."""
    if schema.fields is None:
        return {}
    return {f.name: EXAMPLE_VALUES[f.field_type] for f in schema.fields}


@dataclass(frozen=True)
class CellBrief:
    """Everything an implementer needs to write one cell.

    ``example_outputs`` is keyed by transition label for per-transition
    output schemas, and by None otherwise.
    """

    name: str
    cell_id: str
    doc: str | None
    input_schema: dict[str, Any]
    output_schema: dict[str, Any]
    transitions: tuple[str, ...]
    requires: tuple[str, ...]
    example_input: dict[str, Any]
    example_outputs: dict[str | None, dict[str, Any]] = field(default_factory=dict)
    prompt: str = ""


def _transition_labels(manifest: Manifest, cell_name: str, output: OutputSchema, default_labels: frozenset[str]) -> tuple[str, ...]:
    """Labels from the manifest's dispatches, else the cell's defaults, else its edges."""
    if cell_name in manifest.dispatches:
        return tuple(label for label, _ in manifest.dispatches[cell_name])
    if default_labels:
        return tuple(sorted(default_labels))
    edge = manifest.edges.get(cell_name)
    if isinstance(edge, Mapping):
        return tuple(edge)
    if isinstance(output, Mapping):
        return tuple(sorted(output))
    return ()


def _dump(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _schema_text(schema: SchemaConfig) -> str:
    if schema.fields is None:
        return "dynamic (any keys)"
    text = _dump([f.to_spec() for f in schema.fields])
    return f"{text} (exactly these keys)" if schema.mode == "strict" else text


def _render_prompt(brief: CellBrief, input_schema: SchemaConfig, output: OutputSchema) -> str:
    lines = [f"## Cell: {brief.cell_id}", ""]
    if brief.doc:
        lines += ["## Purpose", brief.doc, ""]

    lines += ["## Contract", "", "Input schema:", f"  {_schema_text(input_schema)}", ""]
    if isinstance(output, SchemaConfig):
        lines += ["Output schema:", f"  {_schema_text(output)}"]
    else:
        lines.append("Output schema (per transition):")
        lines += [f"  {label}: {_schema_text(schema)}" for label, schema in sorted(output.items())]
    lines.append("")

    lines.append(f"Required resources: {', '.join(brief.requires) if brief.requires else 'none'}")
    lines.append("")
    if brief.transitions:
        lines.append(f"Transitions: {', '.join(brief.transitions)}")
        lines.append("  The manifest's dispatch predicates pick one from the data the handler returns.")
    else:
        lines.append("Transitions: none (unconditional edge)")

    lines += ["", "## Example Data", "", "Example input:", f"  {_dump(brief.example_input)}", ""]
    for label, example in brief.example_outputs.items():
        heading = "Example output:" if label is None else f"Example output ({label}):"
        lines += [heading, f"  {_dump(example)}"]

    lines += [
        "",
        "## Rules",
        "- Handler signature: handler(resources, data) -> dict",
        "- Return the incoming data with this cell's output keys added",
        "- Do not import or call any other cell",
        "- The returned data must pass the output schema",
    ]
    return "\n".join(lines) + "\n"


def cell_brief(manifest: Manifest, cell_name: str, registry: CellRegistry | None = None) -> CellBrief:
    """Build the brief for ``cell_name``.

    Fragments are expanded first, so cells contributed by a fragment are
    addressed by their name after expansion. Inline manifest schemas win
    over registered ones; a cell that is not registered yet gets dynamic
    schemas unless the manifest declares them.

    Raises:
        ManifestCellNotFoundError: ``cell_name`` is not a cell of the manifest
    """
    expanded = expand_all_fragments(manifest)
    ref = expanded.cells.get(cell_name)
    if ref is None:
        raise ManifestCellNotFoundError(manifest.id, cell_name)

    spec = registry.get(ref.id) if registry is not None else None
    input_schema, output = ref.schemas(spec)
    default_labels = spec.default_labels if spec is not None else frozenset()
    example_input = example_record(input_schema)

    if is_per_transition(output):
        example_outputs: dict[str | None, dict[str, Any]] = {
            label: {**example_input, **example_record(schema)} for label, schema in sorted(output.items())
        }
    else:
        example_outputs = {None: {**example_input, **example_record(output)}}

    brief = CellBrief(
        name=cell_name,
        cell_id=ref.id,
        doc=ref.doc or (spec.doc if spec is not None else None),
        input_schema=input_schema.to_dict(),
        output_schema=output_schema_to_dict(output),
        transitions=_transition_labels(expanded, cell_name, output, default_labels),
        requires=ref.requires or (spec.requires if spec is not None else ()),
        example_input=example_input,
        example_outputs=example_outputs,
    )
    return replace(brief, prompt=_render_prompt(brief, input_schema, output))


def cell_briefs(manifest: Manifest, registry: CellRegistry | None = None) -> dict[str, CellBrief]:
    """Brief for every cell of the manifest, join members included."""
    expanded = expand_all_fragments(manifest)
    return {name: cell_brief(expanded, name, registry) for name in expanded.cells}


def reassignment_brief(
    manifest: Manifest,
    cell_name: str,
    registry: CellRegistry | None = None,
    *,
    error: str,
    input: Any = None,
    output: Any = None,
) -> CellBrief:
    """Brief for re-implementing a cell whose previous attempt failed."""
    brief = cell_brief(manifest, cell_name, registry)
    failure = (
        "\n## Previous Implementation Failed\n\n"
        f"Error: {error}\n\n"
        f"Given input: {_dump(input)}\n\n"
        f"Your handler returned: {_dump(output)}\n\n"
        "Fix the handler to satisfy the output schema.\n"
    )
    return replace(brief, prompt=brief.prompt + failure)
