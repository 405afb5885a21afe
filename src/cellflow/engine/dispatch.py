"""Dispatch predicate compilation and transition selection."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

from cellflow.contracts.errors import DispatchError
from cellflow.engine.expression_parser import ExpressionParser


@dataclass(frozen=True)
class CompiledPredicate:
    """A dispatch label with its ready-to-call predicate.

    Attributes:
        label: Transition label selected when the predicate is truthy
        source: Expression text, or the qualified name of a Python callable
        fn: ``data -> Any``
    """

    label: str
    source: str
    fn: Callable[[dict[str, Any]], Any]

    def describe(self) -> dict[str, str]:
        return {"label": self.label, "predicate": self.source}


def _callable_name(fn: Callable[..., Any]) -> str:
    module = getattr(fn, "__module__", None) or "?"
    name = getattr(fn, "__qualname__", None) or type(fn).__name__
    return f"{module}:{name}"


def compile_predicate(label: str, predicate: Any) -> CompiledPredicate:
    """Parse expression strings; pass callables through."""
    if isinstance(predicate, ExpressionParser):
        return CompiledPredicate(label=label, source=predicate.expression, fn=predicate.evaluate)
    if isinstance(predicate, str):
        parser = ExpressionParser(predicate)
        return CompiledPredicate(label=label, source=predicate, fn=parser.evaluate)
    if callable(predicate):
        return CompiledPredicate(label=label, source=_callable_name(predicate), fn=predicate)
    raise TypeError(f"Predicate for label {label!r} must be a callable or expression string, got {type(predicate).__name__}")


def compile_predicates(entries: Sequence[tuple[str, Any]]) -> tuple[CompiledPredicate, ...]:
    return tuple(compile_predicate(label, predicate) for label, predicate in entries)


def select_transition(cell_name: str, predicates: Sequence[CompiledPredicate], data: dict[str, Any]) -> str:
    """Return the label of the first truthy predicate.

    Predicate exceptions (including ExpressionEvaluationError) propagate.

    Raises:
        DispatchError: No predicate matched
    """
    for predicate in predicates:
        if predicate.fn(data):
            return predicate.label
    raise DispatchError(cell_name, [p.label for p in predicates])
