# src/cellflow/core/dag/schema_chain.py
"""Schema-chain analysis: are required inputs guaranteed on every path?

A forward data-flow analysis over the workflow graph. For every reachable
node it computes the keys guaranteed present on entry, which is the
intersection over all incoming edges of what that edge guarantees. A key
that only one of several converging branches produces is not guaranteed.

What an edge guarantees:
    cell, FLOW edge with label L   in | required inputs | guaranteed outputs for L
    cell, unconditional edge       in | required inputs | outputs every transition guarantees
    cell, ERROR edge (on_error)    in  (the handler sees the data the cell received)
    join, done / unconditional     in | union of member guaranteed outputs
    join, failure                  in

Loops are handled by iterating to a fixed point; sets only shrink, so the
iteration terminates.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import TYPE_CHECKING

import structlog

from cellflow.contracts.errors import JoinConflictError, SchemaChainError, SchemaChainViolation
from cellflow.contracts.schema import OutputSchema, all_output_field_names, guaranteed_output_keys
from cellflow.core.dag.graph import WorkflowGraph
from cellflow.core.dag.models import EdgeInfo, EdgeKind, NodeKind

if TYPE_CHECKING:
    from cellflow.core.manifest.models import Manifest
    from cellflow.core.registry import CellRegistry

slog = structlog.get_logger(__name__)

JOIN_FAILURE_LABEL = "failure"


@dataclass(frozen=True)
class _CellContract:
    required: frozenset[str]
    output: OutputSchema


@dataclass(frozen=True)
class ChainAnalysis:
    """Result of a successful analysis.

    Attributes:
        entry_keys: Node -> keys guaranteed present when a run enters it
        exit_keys: (node, label) -> keys guaranteed after leaving along that
            transition; label is None for unconditional edges
    """

    entry_keys: Mapping[str, frozenset[str]]
    exit_keys: Mapping[tuple[str, str | None], frozenset[str]]


class SchemaChainAnalyzer:
    """Runs the analysis for one expanded, structurally valid manifest."""

    def __init__(self, manifest: Manifest, registry: CellRegistry) -> None:
        self._manifest = manifest
        self._graph = WorkflowGraph.from_manifest(manifest)
        self._contracts: dict[str, _CellContract] = {}
        for name, ref in manifest.cells.items():
            input_schema, output_schema = ref.schemas(registry.get(ref.id))
            self._contracts[name] = _CellContract(required=input_schema.required_keys, output=output_schema)

    @property
    def graph(self) -> WorkflowGraph:
        return self._graph

    def entry_set(self) -> frozenset[str]:
        """Keys guaranteed when the run starts."""
        manifest = self._manifest
        if manifest.input_schema is not None:
            return manifest.input_schema.required_keys
        if manifest.start in self._contracts:
            return self._contracts[manifest.start].required
        if manifest.start in manifest.joins:
            return frozenset().union(*(self._contracts[m].required for m in manifest.joins[manifest.start].cells))
        return frozenset()

    def added_keys(self, edge: EdgeInfo) -> frozenset[str]:
        """Keys an edge adds on top of its source's entry set."""
        if edge.kind == EdgeKind.ERROR:
            return frozenset()
        source = edge.source
        if self._graph.node_kind(source) == NodeKind.JOIN:
            if edge.label == JOIN_FAILURE_LABEL:
                return frozenset()
            members = self._manifest.joins[source].cells
            return frozenset().union(*(guaranteed_output_keys(self._contracts[m].output, None) for m in members))
        contract = self._contracts[source]
        return contract.required | guaranteed_output_keys(contract.output, edge.label)

    def check_join_disjointness(self) -> None:
        """Raise JoinConflictError for the first join whose members overlap.

        Joins with a merge function resolve conflicts themselves and are
        skipped.
        """
        for join_name, join in self._manifest.joins.items():
            if join.merge is not None:
                continue
            producers: dict[str, list[str]] = {}
            for member in join.cells:
                for key in all_output_field_names(self._contracts[member].output):
                    producers.setdefault(key, []).append(member)
            conflicts = {key: cells for key, cells in producers.items() if len(cells) > 1}
            if conflicts:
                slog.warning("join_key_conflict", manifest_id=self._manifest.id, join=join_name, keys=sorted(conflicts))
                raise JoinConflictError(self._manifest.id, join_name, conflicts)

    def compute(self) -> dict[str, frozenset[str]]:
        """Fixed-point entry sets for every reachable node."""
        start = self._manifest.start
        reachable = self._graph.reachable_from(start)
        entry: dict[str, frozenset[str] | None] = {name: None for name in reachable}
        entry[start] = self.entry_set()

        queue = deque([start])
        queued = {start}
        while queue:
            node = queue.popleft()
            queued.discard(node)
            node_in = entry[node]
            if node_in is None or self._graph.node_kind(node) == NodeKind.TERMINAL:
                continue
            for edge in self._graph.out_edges(node):
                if self._graph.node_kind(edge.target) == NodeKind.TERMINAL:
                    continue
                carried = node_in | self.added_keys(edge)
                current = entry[edge.target]
                updated = carried if current is None else current & carried
                if updated != current:
                    entry[edge.target] = updated
                    if edge.target not in queued:
                        queue.append(edge.target)
                        queued.add(edge.target)

        return {name: keys for name, keys in entry.items() if keys is not None and self._graph.node_kind(name) != NodeKind.TERMINAL}

    def witness_path(self, target: str, key: str) -> tuple[str, ...]:
        """A path from start to ``target`` along which ``key`` is never added."""
        start = self._manifest.start
        if key in self.entry_set():
            return (start, target) if start != target else (start,)
        parents: dict[str, str | None] = {start: None}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            if node == target:
                break
            if self._graph.node_kind(node) == NodeKind.TERMINAL:
                continue
            for edge in self._graph.out_edges(node):
                if edge.target in parents or key in self.added_keys(edge):
                    continue
                parents[edge.target] = node
                queue.append(edge.target)
        if target not in parents:
            return (start, target)
        path: list[str] = []
        current: str | None = target
        while current is not None:
            path.append(current)
            current = parents[current]
        return tuple(reversed(path))

    def violations(self, entry: Mapping[str, frozenset[str]]) -> list[SchemaChainViolation]:
        found: list[SchemaChainViolation] = []
        for node in sorted(entry):
            available = entry[node]
            if self._graph.node_kind(node) == NodeKind.JOIN:
                for member in self._manifest.joins[node].cells:
                    for key in sorted(self._contracts[member].required - available):
                        path = (*self.witness_path(node, key), member)
                        found.append(SchemaChainViolation(cell_name=member, missing_key=key, path=path))
                continue
            for key in sorted(self._contracts[node].required - available):
                found.append(SchemaChainViolation(cell_name=node, missing_key=key, path=self.witness_path(node, key)))
        return found

    def exit_sets(self, entry: Mapping[str, frozenset[str]]) -> dict[tuple[str, str | None], frozenset[str]]:
        exits: dict[tuple[str, str | None], frozenset[str]] = {}
        for node, keys in entry.items():
            for edge in self._graph.out_edges(node):
                if edge.kind == EdgeKind.FLOW:
                    exits[(node, edge.label)] = keys | self.added_keys(edge)
        return exits


def analyze_schema_chain(manifest: Manifest, registry: CellRegistry) -> ChainAnalysis:
    """Check join disjointness, then every reachable input requirement.

    Raises:
        JoinConflictError: Join members declare overlapping output keys
            without a merge function
        SchemaChainError: Some required input key is missing on some path
    """
    analyzer = SchemaChainAnalyzer(manifest, registry)
    analyzer.check_join_disjointness()

    entry = analyzer.compute()
    violations = analyzer.violations(entry)
    if violations:
        slog.warning(
            "schema_chain_violations",
            manifest_id=manifest.id,
            count=len(violations),
            cells=sorted({v.cell_name for v in violations}),
        )
        raise SchemaChainError(manifest.id, violations)

    return ChainAnalysis(
        entry_keys=MappingProxyType(entry),
        exit_keys=MappingProxyType(analyzer.exit_sets(entry)),
    )

