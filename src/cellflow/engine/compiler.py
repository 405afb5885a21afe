"""Manifest -> CompiledWorkflow.

Pipeline:
    1. expand fragments
    2. structural validation (every failing rule reported at once)
    3. join disjointness and schema-chain analysis
    4. resolve import strings, wrap handlers with interceptors,
       build pydantic models, parse predicates, freeze tables

Compilation is pure: the manifest and the registry are only read.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Any

import structlog

from cellflow.contracts.errors import ManifestValidationError, ValidationIssue
from cellflow.contracts.schema import OutputSchema, is_per_transition
from cellflow.contracts.types import MergeFunction, Resources
from cellflow.core.config import EngineSettings
from cellflow.core.dag.schema_chain import analyze_schema_chain
from cellflow.core.manifest.fragments import expand_all_fragments
from cellflow.core.manifest.loader import resolve_import
from cellflow.core.manifest.models import CellRef, Manifest
from cellflow.core.manifest.validation import validate_manifest
from cellflow.core.registry import CellRegistry
from cellflow.core.schema_factory import SchemaValidator
from cellflow.engine.compiled import CompiledCell, CompiledJoin, CompiledWorkflow
from cellflow.engine.dispatch import compile_predicates
from cellflow.engine.interceptors import ResolvedInterceptor, resolve_interceptors, wrap_handler

slog = structlog.get_logger(__name__)


def _passthrough(resources: Resources, data: dict[str, Any]) -> dict[str, Any]:
    """Handler for cells that only exist as an inline schema."""
    return data


def _output_validators(output: OutputSchema, model_prefix: str) -> SchemaValidator | MappingProxyType[str, SchemaValidator]:
    if not is_per_transition(output):
        return SchemaValidator.build(output, f"{model_prefix}.output")
    return MappingProxyType(
        {label: SchemaValidator.build(schema, f"{model_prefix}.output.{label}") for label, schema in sorted(output.items())}
    )


class WorkflowCompiler:
    """Compiles one manifest against one registry."""

    def __init__(self, registry: CellRegistry, settings: EngineSettings | None = None) -> None:
        self._registry = registry
        self._settings = settings or EngineSettings()

    def compile(self, manifest: Manifest) -> CompiledWorkflow:
        """Raises ManifestValidationError, FragmentError, SchemaChainError or JoinConflictError."""
        expanded = expand_all_fragments(manifest)
        validate_manifest(expanded, self._registry, strict=self._settings.strict_manifests)
        analysis = analyze_schema_chain(expanded, self._registry)

        issues: list[ValidationIssue] = []
        interceptors = self._resolve_interceptors(expanded, issues)
        merges = self._resolve_merges(expanded, issues)
        if issues:
            raise ManifestValidationError(expanded.id, issues)

        members = expanded.join_members
        cells: dict[str, CompiledCell] = {}
        member_cells: dict[str, CompiledCell] = {}
        for name, ref in expanded.cells.items():
            compiled = self._compile_cell(expanded, name, ref, interceptors, is_member=name in members)
            if name in members:
                member_cells[name] = compiled
            else:
                cells[name] = compiled

        joins: dict[str, CompiledJoin] = {}
        for join_name, join in expanded.joins.items():
            merge, merge_source = merges.get(join_name, (None, None))
            edge = expanded.edges[join_name]
            joins[join_name] = CompiledJoin(
                name=join_name,
                members=tuple(member_cells[m] for m in join.cells),
                edge=edge if isinstance(edge, str) else MappingProxyType(dict(edge)),
                strategy=join.strategy,
                merge=merge,
                merge_source=merge_source,
            )

        input_validator = None
        if expanded.input_schema is not None:
            input_validator = SchemaValidator.build(expanded.input_schema, f"{expanded.id}.input", allow_coercion=True)

        workflow = CompiledWorkflow(
            id=expanded.id,
            start=expanded.start,
            cells=MappingProxyType(cells),
            joins=MappingProxyType(joins),
            input_validator=input_validator,
            guaranteed_keys=analysis.entry_keys,
            exit_keys=analysis.exit_keys,
            interceptors=tuple(i.describe() for i in interceptors),
            doc=expanded.doc,
        )
        slog.info(
            "workflow_compiled",
            manifest_id=workflow.id,
            cells=len(cells),
            joins=len(joins),
            interceptors=len(interceptors),
        )
        return workflow

    def _compile_cell(
        self,
        manifest: Manifest,
        name: str,
        ref: CellRef,
        interceptors: tuple[ResolvedInterceptor, ...],
        *,
        is_member: bool,
    ) -> CompiledCell:
        spec = self._registry.get(ref.id)
        input_schema, output_schema = ref.schemas(spec)
        model_prefix = f"{manifest.id}.{name}"

        if spec is not None:
            handler, is_async = spec.handler, spec.is_async
            requires = tuple(dict.fromkeys([*spec.requires, *ref.requires]))
            doc = ref.doc or spec.doc
            child = spec.child
            default_dispatches = spec.default_dispatches
        else:
            handler, is_async = _passthrough, False
            requires, doc, child, default_dispatches = ref.requires, ref.doc, None, ()

        matching = tuple(i for i in interceptors if i.matches(name, ref.id))
        entries = manifest.dispatches.get(name, default_dispatches)

        edge: str | MappingProxyType[str, str] | None = None
        if not is_member:
            raw_edge = manifest.edges[name]
            edge = raw_edge if isinstance(raw_edge, str) else MappingProxyType(dict(raw_edge))

        return CompiledCell(
            name=name,
            cell_id=ref.id,
            handler=wrap_handler(handler, matching),
            input=SchemaValidator.build(input_schema, f"{model_prefix}.input"),
            output=_output_validators(output_schema, model_prefix),
            edge=edge,
            predicates=compile_predicates(entries) if not is_member else (),
            on_error=ref.on_error,
            is_async=is_async,
            requires=requires,
            interceptors=tuple(i.id for i in matching),
            child=child,
            doc=doc,
        )

    @staticmethod
    def _resolve_interceptors(manifest: Manifest, issues: list[ValidationIssue]) -> tuple[ResolvedInterceptor, ...]:
        try:
            return resolve_interceptors(manifest.interceptors)
        except (ImportError, TypeError) as e:
            issues.append(ValidationIssue(rule="unresolved_import", message=f"interceptor transform: {e}"))
            return ()

    @staticmethod
    def _resolve_merges(manifest: Manifest, issues: list[ValidationIssue]) -> dict[str, tuple[MergeFunction, str]]:
        merges: dict[str, tuple[MergeFunction, str]] = {}
        for join_name, join in manifest.joins.items():
            if join.merge is None:
                continue
            if isinstance(join.merge, str):
                try:
                    merges[join_name] = (resolve_import(join.merge), join.merge)
                except (ImportError, TypeError) as e:
                    issues.append(
                        ValidationIssue(
                            rule="unresolved_import",
                            message=f"join {join_name!r} merge: {e}",
                            context={"join": join_name, "target": join.merge},
                        )
                    )
            else:
                qualname = getattr(join.merge, "__qualname__", type(join.merge).__name__)
                merges[join_name] = (join.merge, f"{getattr(join.merge, '__module__', '?')}:{qualname}")
        return merges


def compile_workflow(manifest: Manifest, registry: CellRegistry, settings: EngineSettings | None = None) -> CompiledWorkflow:
    """Validate and compile ``manifest``.

    Raises:
        ManifestValidationError: Structural rules failed (all listed)
        FragmentError: A fragment could not be expanded
        JoinConflictError: Join members overlap without a merge function
        SchemaChainError: A required input is not guaranteed on some path
    """
    return WorkflowCompiler(registry, settings).compile(manifest)
