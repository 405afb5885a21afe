# src/cellflow/core/dag/__init__.py
"""Graph operations over workflow state machines."""

from cellflow.core.dag.graph import WorkflowGraph
from cellflow.core.dag.models import EdgeInfo, EdgeKind, NodeKind
from cellflow.core.dag.schema_chain import ChainAnalysis, SchemaChainAnalyzer, analyze_schema_chain

__all__ = [
    "ChainAnalysis",
    "EdgeInfo",
    "EdgeKind",
    "NodeKind",
    "SchemaChainAnalyzer",
    "WorkflowGraph",
    "analyze_schema_chain",
]
