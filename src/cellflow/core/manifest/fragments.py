"""Fragment expansion.

A fragment is a reusable sub-graph. The host picks a name for the
fragment's entry cell and wires each of the fragment's exits to one of its
own targets; expansion then merges the renamed, rewired cells, edges and
dispatches into the host. Only the entry cell is renamed, so the other
fragment cell names must not clash with host names.

Expansion is structural only. The schema chain is checked afterwards over
the merged graph.
"""

from __future__ import annotations

from collections.abc import Collection, Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog

from cellflow.contracts.errors import FragmentError
from cellflow.contracts.keys import EXIT_PREFIX, TERMINAL_STATES
from cellflow.core.manifest.loader import load_fragment
from cellflow.core.manifest.models import CellRef, Fragment, FragmentRef, Manifest

slog = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FragmentExpansion:
    """Cells, edges and dispatches ready to merge into a host."""

    cells: dict[str, CellRef] = field(default_factory=dict)
    edges: dict[str, str | dict[str, str]] = field(default_factory=dict)
    dispatches: dict[str, tuple[tuple[str, Any], ...]] = field(default_factory=dict)


def _exit_name(target: str) -> str | None:
    return target[len(EXIT_PREFIX) :] if target.startswith(EXIT_PREFIX) else None


def _edge_targets(edge: str | dict[str, str]) -> list[str]:
    return [edge] if isinstance(edge, str) else list(edge.values())


def check_fragment(fragment: Fragment) -> None:
    """Validate a fragment in isolation.

    Raises:
        FragmentError: Missing entry, undeclared or unused exits, or
            references to cells the fragment does not define
    """
    if fragment.entry not in fragment.cells:
        raise FragmentError(fragment.id, f"entry cell {fragment.entry!r} is not declared", entry=fragment.entry)

    duplicates = sorted({e for e in fragment.exits if fragment.exits.count(e) > 1})
    if duplicates:
        raise FragmentError(fragment.id, f"exits declared more than once: {duplicates}", exits=duplicates)

    referenced: set[str] = set()
    for source, edge in fragment.edges.items():
        if source not in fragment.cells:
            raise FragmentError(fragment.id, f"edges entry {source!r} is not a fragment cell", source=source)
        for target in _edge_targets(edge):
            exit_name = _exit_name(target)
            if exit_name is not None:
                referenced.add(exit_name)
            elif target not in fragment.cells and target not in TERMINAL_STATES:
                raise FragmentError(fragment.id, f"{source!r} targets unknown cell {target!r}", source=source, target=target)
    for name, ref in fragment.cells.items():
        if ref.on_error is None:
            continue
        exit_name = _exit_name(ref.on_error)
        if exit_name is not None:
            referenced.add(exit_name)
        elif ref.on_error not in fragment.cells:
            raise FragmentError(fragment.id, f"cell {name!r} on_error targets unknown cell {ref.on_error!r}", cell=name)
    for name in fragment.dispatches:
        if name not in fragment.cells:
            raise FragmentError(fragment.id, f"dispatches entry {name!r} is not a fragment cell", cell=name)

    undeclared = sorted(referenced - set(fragment.exits))
    if undeclared:
        raise FragmentError(fragment.id, f"references undeclared exits {undeclared}", exits=undeclared)
    unused = sorted(set(fragment.exits) - referenced)
    if unused:
        raise FragmentError(fragment.id, f"declared exits {unused} are never referenced", exits=unused)


def expand_fragment(fragment: Fragment, mapping: FragmentRef, host_cells: Collection[str]) -> FragmentExpansion:
    """Rename the entry, rewrite exit references and check for collisions.

    Args:
        fragment: The fragment to inline
        mapping: Host wiring: ``as`` (entry name in the host, defaults to
            the fragment's own entry name) and ``exits`` (exit -> host target)
        host_cells: Names already taken in the host

    Raises:
        FragmentError: The fragment is inconsistent, an exit is not wired,
            or a fragment cell collides with a host name
    """
    check_fragment(fragment)

    exits: Mapping[str, str] = mapping.exits
    unwired = sorted(set(fragment.exits) - set(exits))
    if unwired:
        raise FragmentError(fragment.id, f"exits {unwired} are not wired by the host", exits=unwired)
    unknown = sorted(set(exits) - set(fragment.exits))
    if unknown:
        raise FragmentError(fragment.id, f"host wires unknown exits {unknown}", exits=unknown)

    entry_as = mapping.entry_as or fragment.entry

    def rename(name: str) -> str:
        return entry_as if name == fragment.entry else name

    def resolve(target: str) -> str:
        exit_name = _exit_name(target)
        if exit_name is not None:
            return exits[exit_name]
        return rename(target)

    collisions = sorted(rename(name) for name in fragment.cells if rename(name) in host_cells)
    if collisions:
        raise FragmentError(fragment.id, f"cells {collisions} collide with existing host names", collisions=collisions)

    cells: dict[str, CellRef] = {}
    for name, ref in fragment.cells.items():
        if ref.on_error is not None:
            ref = ref.model_copy(update={"on_error": resolve(ref.on_error)})
        cells[rename(name)] = ref

    edges: dict[str, str | dict[str, str]] = {}
    for source, edge in fragment.edges.items():
        if isinstance(edge, str):
            edges[rename(source)] = resolve(edge)
        else:
            edges[rename(source)] = {label: resolve(target) for label, target in edge.items()}

    dispatches = {rename(name): entries for name, entries in fragment.dispatches.items()}
    return FragmentExpansion(cells=cells, edges=edges, dispatches=dispatches)


def expand_all_fragments(manifest: Manifest) -> Manifest:
    """Inline every fragment reference; returns a new manifest.

    File references (``ref:``) resolve relative to the manifest's file.
    """
    if not manifest.fragments:
        return manifest

    cells = dict(manifest.cells)
    edges = dict(manifest.edges)
    dispatches = dict(manifest.dispatches)

    for ref_name, ref in manifest.fragments.items():
        if ref.fragment is not None:
            fragment = ref.fragment
        else:
            fragment = load_fragment(str(ref.ref), relative_to=manifest.source_path)
        if ref.entry_as is None:
            ref = ref.model_copy(update={"entry_as": ref_name})

        taken = set(cells) | set(edges) | set(manifest.joins)
        expansion = expand_fragment(fragment, ref, taken)
        cells.update(expansion.cells)
        edges.update(expansion.edges)
        dispatches.update(expansion.dispatches)
        slog.debug(
            "fragment_expanded",
            manifest_id=manifest.id,
            fragment_id=fragment.id,
            entry=ref.entry_as,
            cells=sorted(expansion.cells),
        )

    return manifest.model_copy(update={"cells": cells, "edges": edges, "dispatches": dispatches, "fragments": {}})
