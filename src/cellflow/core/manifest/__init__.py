# src/cellflow/core/manifest/__init__.py
"""Workflow manifests: document models, loading, fragments and static validation."""

from cellflow.core.manifest.brief import CellBrief, cell_brief, cell_briefs, reassignment_brief
from cellflow.core.manifest.fragments import expand_all_fragments, expand_fragment
from cellflow.core.manifest.loader import (
    load_fragment,
    load_manifest,
    parse_fragment,
    parse_manifest,
    resolve_import,
)
from cellflow.core.manifest.models import (
    CellRef,
    CellSchema,
    Fragment,
    FragmentRef,
    InterceptorDef,
    InterceptorScope,
    JoinDef,
    Manifest,
)
from cellflow.core.manifest.validation import collect_issues, validate_manifest

__all__ = [
    "CellBrief",
    "CellRef",
    "CellSchema",
    "Fragment",
    "FragmentRef",
    "InterceptorDef",
    "InterceptorScope",
    "JoinDef",
    "Manifest",
    "cell_brief",
    "cell_briefs",
    "collect_issues",
    "expand_all_fragments",
    "expand_fragment",
    "load_fragment",
    "load_manifest",
    "parse_fragment",
    "parse_manifest",
    "reassignment_brief",
    "resolve_import",
    "validate_manifest",
]
