"""Structural validation of manifests.

Every rule is checked and every failure collected; the caller receives one
ManifestValidationError listing all of them. Nothing is repaired.

Rules (ValidationIssue.rule):
    document_shape         the manifest declares no cells
    fragments_unexpanded   fragment references remain (expand first)
    reserved_name          a cell or join uses a terminal marker as its name
    start_cell             start is not a declared cell or join
    unknown_cell_id        cell id not registered and no inline schema
    on_error_target        on_error names something other than a declared cell
    on_error_required      strict mode: on_error not declared
    edge_source            edges entry for an undeclared cell or join
    edge_target            edge target is not a cell, join or terminal marker
    missing_edges          cell or join without an edges entry
    dispatch_coverage      conditional labels and predicates disagree
    transition_schema      per-transition output schema labels disagree with edges
    join_size              join with fewer than two members
    join_member            join member undeclared, shared, routed to, or owns edges
    join_name              join name collides with a cell name
    join_transition        join edge labels other than done/failure
    interceptor            duplicate interceptor id or unknown scoped cell
    unreachable            cell or join not reachable from start
"""

from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING

import structlog

from cellflow.contracts.errors import ManifestValidationError, ValidationIssue
from cellflow.contracts.keys import TERMINAL_STATES
from cellflow.contracts.schema import is_per_transition
from cellflow.core.dag.graph import WorkflowGraph
from cellflow.core.dag.models import suggest_similar

if TYPE_CHECKING:
    from cellflow.core.manifest.models import Manifest
    from cellflow.core.registry import CellRegistry

slog = structlog.get_logger(__name__)

JOIN_DONE = "done"
JOIN_FAILURE = "failure"
JOIN_LABELS = frozenset({JOIN_DONE, JOIN_FAILURE})


def dispatch_labels(manifest: Manifest, name: str, registry: CellRegistry) -> list[str] | None:
    """Labels a cell can emit, or None if it declares no dispatch at all.

    Manifest dispatches win; otherwise the registered default dispatches
    (used by sub-workflow cells) apply.
    """
    if name in manifest.dispatches:
        return [label for label, _ in manifest.dispatches[name]]
    ref = manifest.cells.get(name)
    if ref is None:
        return None
    spec = registry.get(ref.id)
    if spec is not None and spec.default_dispatches:
        return [label for label, _ in spec.default_dispatches]
    return None


def _hint(name: str, candidates: list[str]) -> str:
    similar = suggest_similar(name, candidates)
    return f" Did you mean: {', '.join(similar)}?" if similar else ""


class _Collector:
    def __init__(self) -> None:
        self.issues: list[ValidationIssue] = []

    def add(self, rule: str, message: str, **context: object) -> None:
        self.issues.append(ValidationIssue(rule=rule, message=message, context=dict(context)))


def _check_names(manifest: Manifest, out: _Collector) -> None:
    for name in [*manifest.cells, *manifest.joins]:
        if name in TERMINAL_STATES:
            out.add("reserved_name", f"{name!r} is a terminal marker and cannot name a cell or join", name=name)
    if manifest.start not in manifest.cells and manifest.start not in manifest.joins:
        out.add(
            "start_cell",
            f"start cell {manifest.start!r} is not declared.{_hint(manifest.start, list(manifest.cells))}",
            start=manifest.start,
        )
    elif manifest.start in manifest.join_members:
        out.add("start_cell", f"start cell {manifest.start!r} is a join member", start=manifest.start)


def _check_cells(manifest: Manifest, registry: CellRegistry, strict: bool, out: _Collector) -> None:
    members = manifest.join_members
    for name, ref in manifest.cells.items():
        if ref.id not in registry and ref.cell_schema is None:
            out.add(
                "unknown_cell_id",
                f"cell {name!r} references unregistered id {ref.id!r} and has no inline schema.{_hint(ref.id, registry.ids())}",
                cell=name,
                cell_id=ref.id,
            )
        if ref.on_error is not None and ref.on_error not in manifest.cells:
            out.add(
                "on_error_target",
                f"cell {name!r} has on_error {ref.on_error!r}, which is not a declared cell.{_hint(ref.on_error, list(manifest.cells))}",
                cell=name,
                target=ref.on_error,
            )
        elif ref.on_error in members:
            out.add(
                "join_member",
                f"cell {name!r} has on_error {ref.on_error!r}, a member of join {members[ref.on_error]!r}; route to the join instead",
                cell=name,
                target=ref.on_error,
            )
        if strict and not ref.on_error_declared:
            out.add("on_error_required", f"cell {name!r} must declare on_error (use null for none)", cell=name)


def _check_edges(manifest: Manifest, out: _Collector) -> None:
    members = manifest.join_members
    valid_targets = (set(manifest.cells) - set(members)) | set(manifest.joins) | TERMINAL_STATES

    for source, edge in manifest.edges.items():
        if source in members:
            out.add(
                "join_member",
                f"join member {source!r} owns an edges entry; the join {members[source]!r} owns the edge",
                cell=source,
                join=members[source],
            )
            continue
        if source not in manifest.cells and source not in manifest.joins:
            out.add("edge_source", f"edges entry {source!r} is not a declared cell or join", source=source)
            continue
        targets = [(None, edge)] if isinstance(edge, str) else list(edge.items())
        if not targets:
            out.add("edge_target", f"{source!r} has an empty conditional edge", source=source)
        for label, target in targets:
            if target in members:
                out.add(
                    "join_member",
                    f"{source!r} routes to {target!r}, a member of join {members[target]!r}; route to the join instead",
                    source=source,
                    target=target,
                )
            elif target not in valid_targets:
                out.add(
                    "edge_target",
                    f"{source!r} -> {target!r}{'' if label is None else f' (label {label!r})'} does not resolve to a cell, "
                    f"join or terminal marker.{_hint(target, sorted(valid_targets))}",
                    source=source,
                    target=target,
                    label=label,
                )

    for name in manifest.node_names:
        if name not in members and name not in manifest.edges:
            out.add("missing_edges", f"{name!r} has no edges entry", node=name)


def _check_dispatches(manifest: Manifest, registry: CellRegistry, out: _Collector) -> None:
    members = manifest.join_members

    for name in manifest.dispatches:
        if name in manifest.joins:
            out.add("join_transition", f"join {name!r} cannot declare dispatches; joins route on done/failure", join=name)
        elif name not in manifest.cells or name in members:
            out.add("dispatch_coverage", f"dispatches entry {name!r} is not a routable cell", cell=name)

    for name, ref in manifest.cells.items():
        if name in members or name not in manifest.edges:
            continue
        edge = manifest.edges[name]
        labels = dispatch_labels(manifest, name, registry)

        if labels is not None:
            duplicates = sorted(label for label, count in Counter(labels).items() if count > 1)
            if duplicates:
                out.add("dispatch_coverage", f"cell {name!r} has duplicate dispatch labels {duplicates}", cell=name, labels=duplicates)

        if isinstance(edge, str):
            if name in manifest.dispatches:
                out.add(
                    "dispatch_coverage",
                    f"cell {name!r} declares dispatches but its edge is unconditional",
                    cell=name,
                )
        else:
            edge_labels = set(edge)
            predicate_labels = set(labels or ())
            missing_predicates = sorted(edge_labels - predicate_labels)
            orphan_predicates = sorted(predicate_labels - edge_labels)
            if missing_predicates:
                out.add(
                    "dispatch_coverage",
                    f"cell {name!r}: edge labels {missing_predicates} have no dispatch predicate",
                    cell=name,
                    labels=missing_predicates,
                )
            if orphan_predicates:
                out.add(
                    "dispatch_coverage",
                    f"cell {name!r}: dispatch labels {orphan_predicates} have no matching edge",
                    cell=name,
                    labels=orphan_predicates,
                )

        _, output = ref.schemas(registry.get(ref.id))
        if is_per_transition(output):
            schema_labels = set(output)
            if isinstance(edge, str):
                if labels is None or schema_labels != set(labels):
                    out.add(
                        "transition_schema",
                        f"cell {name!r} declares per-transition output schemas {sorted(schema_labels)} "
                        f"but has no matching dispatch labels",
                        cell=name,
                    )
            elif schema_labels != set(edge):
                out.add(
                    "transition_schema",
                    f"cell {name!r}: per-transition output schemas {sorted(schema_labels)} do not match edge labels {sorted(edge)}",
                    cell=name,
                )


def _check_joins(manifest: Manifest, registry: CellRegistry, out: _Collector) -> None:
    seen: dict[str, str] = {}
    for join_name, join in manifest.joins.items():
        if join_name in manifest.cells:
            out.add("join_name", f"join {join_name!r} collides with a cell of the same name", join=join_name)
        if len(join.cells) < 2:
            out.add("join_size", f"join {join_name!r} needs at least 2 members, has {len(join.cells)}", join=join_name)
        for member in join.cells:
            if member not in manifest.cells:
                out.add(
                    "join_member",
                    f"join {join_name!r} member {member!r} is not a declared cell.{_hint(member, list(manifest.cells))}",
                    join=join_name,
                    cell=member,
                )
                continue
            if member in seen and seen[member] != join_name:
                out.add("join_member", f"cell {member!r} belongs to joins {seen[member]!r} and {join_name!r}", cell=member)
            elif member in seen:
                out.add("join_member", f"join {join_name!r} lists {member!r} twice", join=join_name, cell=member)
            seen[member] = join_name
            ref = manifest.cells[member]
            _, output = ref.schemas(registry.get(ref.id))
            if is_per_transition(output):
                out.add(
                    "join_member",
                    f"join member {member!r} must declare a single output schema, not per-transition schemas",
                    join=join_name,
                    cell=member,
                )

        edge = manifest.edges.get(join_name)
        if isinstance(edge, dict):
            unknown = sorted(set(edge) - JOIN_LABELS)
            if unknown:
                out.add(
                    "join_transition",
                    f"join {join_name!r} edge labels {unknown} are not {sorted(JOIN_LABELS)}",
                    join=join_name,
                    labels=unknown,
                )


def _check_interceptors(manifest: Manifest, out: _Collector) -> None:
    counts = Counter(interceptor.id for interceptor in manifest.interceptors)
    for interceptor_id, count in counts.items():
        if count > 1:
            out.add("interceptor", f"interceptor id {interceptor_id!r} declared {count} times", interceptor=interceptor_id)
    for interceptor in manifest.interceptors:
        for name in interceptor.scope.cells or ():
            if name not in manifest.cells:
                out.add(
                    "interceptor",
                    f"interceptor {interceptor.id!r} scopes undeclared cell {name!r}",
                    interceptor=interceptor.id,
                    cell=name,
                )


def _check_reachability(manifest: Manifest, out: _Collector) -> None:
    if manifest.start not in manifest.node_names:
        return
    graph = WorkflowGraph.from_manifest(manifest)
    for name in graph.unreachable_from(manifest.start):
        out.add("unreachable", f"{name!r} is not reachable from start {manifest.start!r}", node=name)


def collect_issues(manifest: Manifest, registry: CellRegistry, *, strict: bool = False) -> list[ValidationIssue]:
    """Run every rule and return the failures (empty when valid)."""
    out = _Collector()
    if manifest.fragments:
        out.add(
            "fragments_unexpanded",
            f"fragment references {sorted(manifest.fragments)} must be expanded before validation",
            fragments=sorted(manifest.fragments),
        )
    if not manifest.cells:
        out.add("document_shape", "manifest declares no cells")
    _check_names(manifest, out)
    _check_cells(manifest, registry, strict, out)
    _check_edges(manifest, out)
    _check_dispatches(manifest, registry, out)
    _check_joins(manifest, registry, out)
    _check_interceptors(manifest, out)
    _check_reachability(manifest, out)
    return out.issues


def validate_manifest(manifest: Manifest, registry: CellRegistry, *, strict: bool = False) -> None:
    """Raise ManifestValidationError listing every failing rule.

    Cells whose id is not registered but which carry an inline schema are
    accepted with a warning; the compiler gives them a passthrough handler.
    """
    issues = collect_issues(manifest, registry, strict=strict)
    if issues:
        slog.warning("manifest_invalid", manifest_id=manifest.id, rules=sorted({i.rule for i in issues}), count=len(issues))
        raise ManifestValidationError(manifest.id, issues)
    for name, ref in manifest.cells.items():
        if ref.id not in registry:
            slog.warning("cell_unregistered_inline_schema", manifest_id=manifest.id, cell=name, cell_id=ref.id)
