# src/cellflow/core/dag/graph.py
"""WorkflowGraph: the manifest's state machine as a networkx graph.

Nodes are cell names, join names and the terminal markers. Join members are
not nodes of their own; they run inside their join node. Each transition is
an edge keyed by its label so that several labels may lead to the same
target. ``on_error`` routes are ERROR edges.

Construction tolerates dangling references (they are simply left out) so
the validator can build a graph from a broken manifest and still report
reachability problems alongside everything else.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import TYPE_CHECKING, cast

import networkx as nx
from networkx import MultiDiGraph

from cellflow.contracts.keys import TERMINAL_STATES
from cellflow.core.dag.models import ON_ERROR_KEY, UNCONDITIONAL_KEY, EdgeInfo, EdgeKind, NodeKind

if TYPE_CHECKING:
    from cellflow.core.manifest.models import Manifest


class WorkflowGraph:
    """Directed multigraph over workflow states.

    Wraps a NetworkX MultiDiGraph with workflow-specific queries.
    """

    def __init__(self) -> None:
        self._graph: MultiDiGraph[str] = nx.MultiDiGraph()

    @classmethod
    def from_manifest(cls, manifest: Manifest) -> WorkflowGraph:
        graph = cls()
        members = manifest.join_members
        for name in manifest.cells:
            if name not in members:
                graph.add_node(name, kind=NodeKind.CELL)
        for name in manifest.joins:
            graph.add_node(name, kind=NodeKind.JOIN)
        for terminal in sorted(TERMINAL_STATES):
            graph.add_node(terminal, kind=NodeKind.TERMINAL)

        for source, edge in manifest.edges.items():
            if not graph.has_node(source):
                continue
            if isinstance(edge, str):
                if graph.has_node(edge):
                    graph.add_edge(source, edge, label=None)
            else:
                for label, target in edge.items():
                    if graph.has_node(target):
                        graph.add_edge(source, target, label=label)

        for name, ref in manifest.cells.items():
            if ref.on_error is not None and graph.has_node(name) and graph.has_node(ref.on_error):
                graph.add_edge(name, ref.on_error, label=None, kind=EdgeKind.ERROR)
        return graph

    @property
    def node_count(self) -> int:
        return self._graph.number_of_nodes()

    def has_node(self, name: str) -> bool:
        return self._graph.has_node(name)

    def node_kind(self, name: str) -> NodeKind:
        """Raises KeyError for unknown nodes."""
        if not self._graph.has_node(name):
            raise KeyError(f"Node not found: {name}")
        return cast(NodeKind, self._graph.nodes[name]["kind"])

    def get_nx_graph(self) -> MultiDiGraph[str]:
        """Frozen copy of the underlying graph for ad hoc networkx analysis."""
        return nx.freeze(self._graph.copy())  # type: ignore[no-any-return]

    def add_node(self, name: str, *, kind: NodeKind) -> None:
        self._graph.add_node(name, kind=kind)

    def add_edge(self, source: str, target: str, *, label: str | None, kind: EdgeKind = EdgeKind.FLOW) -> None:
        if kind == EdgeKind.ERROR:
            key = ON_ERROR_KEY
        else:
            key = UNCONDITIONAL_KEY if label is None else label
        self._graph.add_edge(source, target, key=key, label=label, kind=kind)

    def out_edges(self, name: str) -> list[EdgeInfo]:
        return [
            EdgeInfo(source=u, target=v, label=attrs["label"], kind=attrs["kind"])
            for u, v, attrs in self._graph.out_edges(name, data=True)
        ]

    def in_edges(self, name: str) -> list[EdgeInfo]:
        return [
            EdgeInfo(source=u, target=v, label=attrs["label"], kind=attrs["kind"])
            for u, v, attrs in self._graph.in_edges(name, data=True)
        ]

    def reachable_from(self, start: str) -> set[str]:
        """Start plus every node reachable from it (error routes included)."""
        if not self._graph.has_node(start):
            return set()
        reachable = nx.descendants(self._graph, start)
        reachable.add(start)
        return reachable

    def unreachable_from(self, start: str) -> list[str]:
        """Cells and joins that no run starting at ``start`` can enter."""
        reachable = self.reachable_from(start)
        return sorted(
            name for name, attrs in self._graph.nodes(data=True) if attrs["kind"] != NodeKind.TERMINAL and name not in reachable
        )

    def shortest_path(self, start: str, target: str) -> list[str]:
        """A witness path, or an empty list if ``target`` is unreachable."""
        try:
            return cast(list[str], nx.shortest_path(self._graph, start, target))
        except (nx.NetworkXNoPath, nx.NodeNotFound):
            return []

    def is_acyclic(self) -> bool:
        return nx.is_directed_acyclic_graph(self._graph)

    def cycles(self) -> list[list[str]]:
        """Elementary cycles; workflows may loop, so this is informational."""
        return [list(cycle) for cycle in nx.simple_cycles(self._graph)]

    def iter_paths(self, start: str, *, include_errors: bool = False) -> Iterator[list[EdgeInfo]]:
        """Every simple path from ``start`` to a terminal marker, as edge lists.

        Loops are followed at most once, since simple paths never revisit
        a node.
        """
        if not self._graph.has_node(start):
            return
        graph = self._graph
        if not include_errors:
            graph = nx.subgraph_view(
                self._graph,
                filter_edge=lambda u, v, k: self._graph.edges[u, v, k]["kind"] == EdgeKind.FLOW,
            )
        for terminal in sorted(TERMINAL_STATES):
            if start == terminal or not graph.has_node(terminal):
                continue
            for edge_path in nx.all_simple_edge_paths(graph, start, terminal):
                yield [
                    EdgeInfo(
                        source=u,
                        target=v,
                        label=self._graph.edges[u, v, k]["label"],
                        kind=self._graph.edges[u, v, k]["kind"],
                    )
                    for u, v, k in edge_path
                ]
