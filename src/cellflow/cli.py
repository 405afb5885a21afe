# src/cellflow/cli.py
"""cellflow Command Line Interface.

Entry point for the cellflow CLI tool. Cell implementations are supplied
with ``--cells package.module:function``, where the function takes no
arguments and returns a populated CellRegistry.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer
import yaml
from pydantic import ValidationError

from cellflow import __version__
from cellflow.contracts.errors import (
    FragmentError,
    JoinConflictError,
    ManifestCellNotFoundError,
    ManifestValidationError,
    SchemaChainError,
)
from cellflow.core.config import EngineSettings, load_settings
from cellflow.core.manifest.loader import load_manifest, resolve_import
from cellflow.core.registry import CellRegistry

if TYPE_CHECKING:
    from cellflow.core.manifest.models import Manifest
    from cellflow.engine.compiled import CompiledWorkflow

__all__ = ["app"]

app = typer.Typer(
    name="cellflow",
    help="cellflow: declarative cell workflows.",
    no_args_is_help=True,
)

# --verbose / --json-logs given on the command line; these win over a settings file
_log_flags: dict[str, Any] = {}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"cellflow version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """cellflow: declarative cell workflows."""
    from cellflow.core.logging import configure_logging

    _log_flags.clear()
    if verbose:
        _log_flags["level"] = "DEBUG"
    if json_logs:
        _log_flags["json_output"] = True
    configure_logging(json_output=json_logs, level="DEBUG" if verbose else "WARNING")


def _format_validation_error(
    title: str,
    message: str,
    hint: str | None = None,
    details: list[str] | None = None,
) -> None:
    """Display a formatted validation error with optional hint and details."""
    from rich.console import Console
    from rich.panel import Panel
    from rich.text import Text

    console = Console(stderr=True)

    content = Text()
    content.append(message, style="white")

    if details:
        content.append("\n\n")
        for detail in details:
            content.append(f"  • {detail}\n", style="dim")

    if hint:
        content.append("\n")
        content.append("Hint: ", style="yellow bold")
        content.append(hint, style="yellow")

    console.print(Panel(content, title=f"[red bold]{title}[/]", border_style="red", expand=False))


def _load_settings_or_exit(settings: str | None) -> EngineSettings:
    try:
        loaded = load_settings(Path(settings).expanduser() if settings else None)
    except FileNotFoundError:
        _format_validation_error("File Not Found", f"Settings file does not exist: {settings}")
        raise typer.Exit(1) from None
    except ValidationError as e:
        details = [f"{'.'.join(str(x) for x in error['loc'])}: {error['msg']}" for error in e.errors()]
        _format_validation_error(
            title="Configuration Validation Failed",
            message=f"Invalid settings in {settings}",
            details=details,
            hint="Check field names, types, and required values.",
        )
        raise typer.Exit(1) from None

    if settings:
        from cellflow.core.logging import configure_logging

        configure_logging(settings=loaded, **_log_flags)
    return loaded


def _load_registry_or_exit(cells: str) -> CellRegistry:
    try:
        factory = resolve_import(cells)
    except (ImportError, TypeError) as e:
        _format_validation_error(
            title="Cell Registry Not Found",
            message=str(e),
            hint="Pass --cells package.module:function, a function returning a CellRegistry.",
        )
        raise typer.Exit(1) from None
    registry = factory()
    if not isinstance(registry, CellRegistry):
        _format_validation_error("Cell Registry Not Found", f"{cells} returned {type(registry).__name__}, expected a CellRegistry")
        raise typer.Exit(1)
    return registry


def _compile_or_exit(manifest_path: Path, registry: CellRegistry, settings: EngineSettings) -> CompiledWorkflow:
    """Load and compile one manifest, printing a formatted error on failure."""
    from cellflow.engine.compiler import compile_workflow

    try:
        manifest = load_manifest(manifest_path)
        return compile_workflow(manifest, registry, settings)
    except FileNotFoundError:
        _format_validation_error("File Not Found", f"Manifest does not exist: {manifest_path}")
        raise typer.Exit(1) from None
    except yaml.YAMLError as e:
        _format_validation_error(
            title="YAML Syntax Error",
            message=f"Failed to parse {manifest_path.name}",
            details=[str(e)],
            hint="Check for unclosed brackets, incorrect indentation, or invalid characters.",
        )
        raise typer.Exit(1) from None
    except ManifestValidationError as e:
        _format_validation_error(
            title="Manifest Validation Failed",
            message=f"{len(e.issues)} issue(s) in {manifest_path.name}",
            details=[f"[{issue.rule}] {issue.message}" for issue in e.issues],
        )
        raise typer.Exit(1) from None
    except FragmentError as e:
        _format_validation_error("Fragment Error", str(e))
        raise typer.Exit(1) from None
    except JoinConflictError as e:
        details = [f"{key}: written by {', '.join(cells)}" for key, cells in sorted(e.conflicts.items())]
        _format_validation_error(
            title="Join Key Conflict",
            message=str(e),
            details=details,
            hint="Give the join a merge function, or make member outputs disjoint.",
        )
        raise typer.Exit(1) from None
    except SchemaChainError as e:
        _format_validation_error(
            title="Schema Chain Broken",
            message=f"{len(e.violations)} missing key(s) in {manifest_path.name}",
            details=[violation.describe() for violation in e.violations],
        )
        raise typer.Exit(1) from None
    except ValueError as e:
        _format_validation_error("Invalid Manifest", str(e))
        raise typer.Exit(1) from None


@app.command()
def validate(
    manifest: Path = typer.Argument(..., help="Path to the workflow manifest YAML."),
    cells: str = typer.Option(
        ...,
        "--cells",
        "-c",
        help="Import string of a function returning the CellRegistry.",
    ),
    settings: str | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to engine settings YAML file.",
    ),
) -> None:
    """Compile a manifest and report every problem found."""
    engine_settings = _load_settings_or_exit(settings)
    registry = _load_registry_or_exit(cells)
    workflow = _compile_or_exit(manifest.expanduser(), registry, engine_settings)

    typer.echo(f"Workflow {workflow.id!r} valid: {len(workflow.cells)} cells, {len(workflow.joins)} joins")
    if workflow.requires:
        typer.echo(f"  Resources: {', '.join(sorted(workflow.requires))}")


@app.command()
def paths(
    manifest: Path = typer.Argument(..., help="Path to the workflow manifest YAML."),
    include_errors: bool = typer.Option(
        False,
        "--include-errors",
        help="Follow on_error routes as well.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output as JSON.",
    ),
) -> None:
    """List every path from the start state to a terminal state."""
    from cellflow.dev import enumerate_paths

    try:
        loaded = load_manifest(manifest.expanduser())
        found = enumerate_paths(loaded, include_errors=include_errors)
    except (FileNotFoundError, ValueError, yaml.YAMLError, ManifestValidationError, FragmentError) as e:
        _format_validation_error("Invalid Manifest", str(e))
        raise typer.Exit(1) from None

    if json_output:
        typer.echo(
            json.dumps(
                [[{"source": e.source, "label": e.label, "target": e.target, "kind": str(e.kind)} for e in path] for path in found],
                indent=2,
            )
        )
        return

    for path in found:
        rendered = path[0].source if path else loaded.start
        for edge in path:
            rendered += f" -{edge.label}-> {edge.target}" if edge.label else f" -> {edge.target}"
        typer.echo(rendered)
    typer.echo(f"{len(found)} path(s)", err=True)


def _load_manifest_or_exit(manifest: Path) -> Manifest:
    try:
        return load_manifest(manifest.expanduser())
    except (FileNotFoundError, ValueError, yaml.YAMLError, ManifestValidationError, FragmentError) as e:
        _format_validation_error("Invalid Manifest", str(e))
        raise typer.Exit(1) from None


@app.command()
def status(
    manifest: Path = typer.Argument(..., help="Path to the workflow manifest YAML."),
    cells: str = typer.Option(
        ...,
        "--cells",
        "-c",
        help="Import string of a function returning the CellRegistry.",
    ),
) -> None:
    """Report the implementation status of every manifest cell.

    Exits 1 when any registered cell fails its check.
    """
    from cellflow.dev import format_status, workflow_status

    loaded = _load_manifest_or_exit(manifest)
    registry = _load_registry_or_exit(cells)
    try:
        report = workflow_status(loaded, registry)
    except FragmentError as e:
        _format_validation_error("Invalid Manifest", str(e))
        raise typer.Exit(1) from None
    typer.echo(format_status(report), nl=False)
    if report.failing:
        raise typer.Exit(1)


@app.command()
def brief(
    manifest: Path = typer.Argument(..., help="Path to the workflow manifest YAML."),
    cell: str = typer.Argument(..., help="Manifest cell name."),
    cells: str | None = typer.Option(
        None,
        "--cells",
        "-c",
        help="Import string of a function returning the CellRegistry; registered schemas fill in what the manifest omits.",
    ),
    error: str | None = typer.Option(
        None,
        "--error",
        help="Failure of a previous implementation, appended to the brief.",
    ),
) -> None:
    """Print the implementation brief for one cell."""
    from cellflow.core.manifest.brief import cell_brief, reassignment_brief

    loaded = _load_manifest_or_exit(manifest)
    registry = _load_registry_or_exit(cells) if cells else None
    try:
        if error is not None:
            result = reassignment_brief(loaded, cell, registry, error=error)
        else:
            result = cell_brief(loaded, cell, registry)
    except (ManifestCellNotFoundError, FragmentError) as e:
        _format_validation_error("Unknown Cell", str(e), hint=f"Cells: {', '.join(loaded.cells)}")
        raise typer.Exit(1) from None
    typer.echo(result.prompt, nl=False)


@app.command()
def system(
    routes: Path = typer.Argument(..., help="YAML mapping of route to manifest path."),
    cells: str = typer.Option(
        ...,
        "--cells",
        "-c",
        help="Import string of a function returning the CellRegistry.",
    ),
    settings: str | None = typer.Option(
        None,
        "--settings",
        "-s",
        help="Path to engine settings YAML file.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Output the full index as JSON.",
    ),
) -> None:
    """Compile every routed manifest and print the cross-workflow index.

    Manifest paths in the routes file are relative to the routes file.
    """
    from cellflow.system import build_index

    routes_path = routes.expanduser()
    try:
        with routes_path.open(encoding="utf-8") as f:
            table = yaml.safe_load(f)
    except (FileNotFoundError, yaml.YAMLError) as e:
        _format_validation_error("Invalid Routes File", str(e))
        raise typer.Exit(1) from None
    if not isinstance(table, dict):
        _format_validation_error("Invalid Routes File", f"{routes_path.name} must map route to manifest path")
        raise typer.Exit(1)

    engine_settings = _load_settings_or_exit(settings)
    registry = _load_registry_or_exit(cells)
    compiled = {
        str(route): _compile_or_exit(routes_path.parent / str(manifest_path), registry, engine_settings)
        for route, manifest_path in table.items()
    }
    index = build_index(compiled)

    if json_output:
        typer.echo(json.dumps(index.to_dict(), indent=2, default=str))
        return

    for route, info in sorted(index.routes.items()):
        typer.echo(f"{route}  ({info.manifest_id})")
        typer.echo(f"  cells: {', '.join(sorted(info.cells))}")
        if info.requires:
            typer.echo(f"  resources: {', '.join(sorted(info.requires))}")
    if index.shared_cells:
        typer.echo(f"Shared cells: {', '.join(sorted(index.shared_cells))}")
    for conflict in index.schema_conflicts:
        typer.secho(
            f"Schema conflict: {conflict.cell_id} differs across {', '.join(sorted(conflict.schemas))}",
            fg=typer.colors.YELLOW,
            err=True,
        )


if __name__ == "__main__":
    app()
