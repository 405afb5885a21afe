"""Load manifest and fragment documents.

Documents are YAML files or already-parsed mappings. Shape errors raised by
pydantic are converted into a ManifestValidationError carrying one
ValidationIssue per problem, matching what validation.py reports for
graph-level rules.
"""

from __future__ import annotations

import importlib
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from cellflow.contracts.errors import FragmentError, ManifestValidationError, ValidationIssue
from cellflow.core.manifest.models import Fragment, Manifest

slog = structlog.get_logger(__name__)


def _issues_from_pydantic(exc: ValidationError) -> list[ValidationIssue]:
    issues = []
    for err in exc.errors(include_url=False):
        location = ".".join(str(part) for part in err["loc"]) or "<document>"
        issues.append(
            ValidationIssue(
                rule="document_shape",
                message=f"{location}: {err['msg']}",
                context={"loc": location, "type": err["type"]},
            )
        )
    return issues


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise FileNotFoundError(f"Document not found: {path}")
    with path.open(encoding="utf-8") as f:
        loaded = yaml.safe_load(f)
    if not isinstance(loaded, dict):
        raise ValueError(f"Document {path} must be a YAML mapping, got {type(loaded).__name__}")
    return loaded


def parse_manifest(document: Mapping[str, Any], *, source_path: Path | None = None) -> Manifest:
    """Build a Manifest from a parsed document.

    Raises:
        ManifestValidationError: The document has the wrong shape
    """
    manifest_id = str(document.get("id", "<unknown>"))
    try:
        manifest = Manifest.model_validate({**document, "source_path": source_path})
    except ValidationError as e:
        raise ManifestValidationError(manifest_id, _issues_from_pydantic(e)) from e
    slog.debug("manifest_parsed", manifest_id=manifest.id, cells=len(manifest.cells), source=str(source_path) if source_path else None)
    return manifest


def load_manifest(path: Path | str) -> Manifest:
    """Read a YAML manifest file.

    Raises:
        FileNotFoundError: The file does not exist
        yaml.YAMLError: The file is not valid YAML
        ValueError: The top level is not a mapping
        ManifestValidationError: The document has the wrong shape
    """
    path = Path(path)
    return parse_manifest(_read_yaml(path), source_path=path.resolve())


def parse_fragment(document: Mapping[str, Any]) -> Fragment:
    """Build a Fragment from a parsed document.

    Raises:
        FragmentError: The document has the wrong shape
    """
    fragment_id = str(document.get("id", "<unknown>"))
    try:
        return Fragment.model_validate(document)
    except ValidationError as e:
        details = "; ".join(issue.message for issue in _issues_from_pydantic(e))
        raise FragmentError(fragment_id, f"invalid fragment document: {details}") from e


def load_fragment(ref: str, *, relative_to: Path | None = None) -> Fragment:
    """Read a fragment YAML file.

    Relative paths resolve against the directory of the referencing
    manifest when it came from a file, otherwise against the working
    directory.
    """
    path = Path(ref)
    if not path.is_absolute() and relative_to is not None:
        path = (relative_to.parent / path).resolve()
    try:
        document = _read_yaml(path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        raise FragmentError(ref, f"cannot load fragment file: {e}") from e
    return parse_fragment(document)


def resolve_import(target: str) -> Callable[..., Any]:
    """Resolve ``"package.module:attribute"`` to a callable.

    Raises:
        ImportError: Module or attribute missing
        TypeError: The attribute is not callable
    """
    module_name, sep, attr_path = target.partition(":")
    if not sep or not module_name or not attr_path:
        raise ImportError(f"Invalid import string {target!r}; expected 'package.module:function'")

    obj: Any = importlib.import_module(module_name)
    for attr in attr_path.split("."):
        try:
            obj = getattr(obj, attr)
        except AttributeError as e:
            raise ImportError(f"{module_name!r} has no attribute {attr_path!r}") from e
    if not callable(obj):
        raise TypeError(f"{target!r} resolved to a non-callable {type(obj).__name__}")
    return obj  # type: ignore[no-any-return]
