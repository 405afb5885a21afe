# src/cellflow/core/logging.py
"""Structured logging configuration for cellflow.

Engine modules log through ``structlog.get_logger(__name__)``; stdlib
records from cell handlers are routed through the same processor chain via
ProcessorFormatter, so both come out in one format (JSON or console).

Every event emitted while a workflow runs carries ``manifest_id`` and
``run_id``. The runner binds them with :func:`run_context`; nested
sub-workflow runs rebind ``manifest_id`` and keep a ``parent_run_id``.
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import structlog
from structlog.stdlib import ProcessorFormatter

if TYPE_CHECKING:
    from cellflow.core.config import EngineSettings

# Event keys whose values are whole data records; rendered as their key list
_RECORD_KEYS: frozenset[str] = frozenset({"data", "output", "snapshot"})


def _remove_internal_fields(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """ProcessorFormatter always adds _record and _from_structlog."""
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _summarize_records(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Replace data records with their sorted keys.

    Records hold application data (tokens, personal details) and can be
    large; the keys are what matters when following a run.
    """
    for key in _RECORD_KEYS & event_dict.keys():
        value = event_dict[key]
        if isinstance(value, dict):
            event_dict[key] = sorted(str(k) for k in value)
    return event_dict


def configure_logging(
    *,
    settings: EngineSettings | None = None,
    json_output: bool | None = None,
    level: str | None = None,
) -> None:
    """Configure structlog and stdlib logging for cellflow.

    Args:
        settings: Source of ``log_level`` and ``log_json``
        json_output: Overrides ``settings.log_json`` when given
        level: Overrides ``settings.log_level`` when given
    """
    if json_output is None:
        json_output = settings.log_json if settings is not None else False
    if level is None:
        level = settings.log_level if settings is not None else "INFO"
    log_level = getattr(logging, level.upper())

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        _summarize_records,
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        final_processors: list[Any] = [
            _remove_internal_fields,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ]
    else:
        final_processors = [
            _remove_internal_fields,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ]

    structlog.configure(
        processors=[*shared_processors, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Caching disabled so tests can reconfigure logging
        cache_logger_on_first_use=False,
    )

    # stdout carries command output (paths, JSON indexes); logs go to stderr
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ProcessorFormatter(processors=final_processors, foreign_pre_chain=shared_processors))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level)
    logging.getLogger("asyncio").setLevel(max(log_level, logging.WARNING))


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@contextmanager
def run_context(manifest_id: str, run_id: str | None = None) -> Iterator[str]:
    """Bind ``manifest_id`` and ``run_id`` to every event logged inside.

    An enclosing run's id is kept as ``parent_run_id``. Yields the run id.
    """
    outer = structlog.contextvars.get_contextvars().get("run_id")
    run_id = run_id or new_run_id()
    bound: dict[str, Any] = {"manifest_id": manifest_id, "run_id": run_id}
    if outer is not None:
        bound["parent_run_id"] = outer
    with structlog.contextvars.bound_contextvars(**bound):
        yield run_id
