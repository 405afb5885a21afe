"""Interceptor scope matching and handler wrapping.

Interceptors apply ``data -> data`` transforms around cell handlers. With
interceptors [A, B] both matching a cell, the call order is::

    A.pre -> B.pre -> handler -> B.post -> A.post

Wrapping happens once, at compile time.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Sequence
from concurrent.futures import Future
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any

from cellflow.contracts.types import DataTransform, Handler, Resources
from cellflow.core.manifest.loader import resolve_import
from cellflow.core.manifest.models import InterceptorDef, InterceptorScope


@dataclass(frozen=True)
class ResolvedInterceptor:
    """An interceptor with its transforms resolved to callables."""

    id: str
    scope: InterceptorScope
    pre: DataTransform | None
    post: DataTransform | None

    def matches(self, cell_name: str, cell_id: str) -> bool:
        return scope_matches(self.scope, cell_name, cell_id)

    def describe(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "scope": self.scope.model_dump(exclude_defaults=True),
            "pre": self.pre is not None,
            "post": self.post is not None,
        }


def scope_matches(scope: InterceptorScope, cell_name: str, cell_id: str) -> bool:
    """``all`` matches everything, ``id_match`` globs the registry id, ``cells`` lists manifest names."""
    if scope.all:
        return True
    if scope.id_match is not None:
        return fnmatchcase(cell_id, scope.id_match)
    return cell_name in (scope.cells or ())


def _resolve_transform(value: Any) -> DataTransform | None:
    if value is None:
        return None
    if isinstance(value, str):
        return resolve_import(value)
    return value  # type: ignore[no-any-return]


def resolve_interceptors(definitions: Sequence[InterceptorDef]) -> tuple[ResolvedInterceptor, ...]:
    """Resolve import strings; raises ImportError/TypeError for bad targets."""
    return tuple(
        ResolvedInterceptor(
            id=definition.id,
            scope=definition.scope,
            pre=_resolve_transform(definition.pre),
            post=_resolve_transform(definition.post),
        )
        for definition in definitions
    )


def _apply(transforms: Sequence[DataTransform], data: dict[str, Any]) -> dict[str, Any]:
    for transform in transforms:
        data = transform(data)
    return data


def wrap_handler(handler: Handler, interceptors: Sequence[ResolvedInterceptor]) -> Handler:
    """Return ``handler`` wrapped by every interceptor in ``interceptors``.

    ``interceptors`` must already be filtered to those matching the cell.
    When the handler returns an awaitable or Future, whether or not the cell
    was registered as async, the post-transforms are chained onto it and run
    once the result is available.
    """
    pres = [i.pre for i in interceptors if i.pre is not None]
    posts = [i.post for i in reversed(interceptors) if i.post is not None]
    if not pres and not posts:
        return handler

    def wrapped(resources: Resources, data: dict[str, Any]) -> Any:
        pending = handler(resources, _apply(pres, data))
        if not posts:
            return pending
        if isinstance(pending, Future):
            chained: Future[dict[str, Any]] = Future()

            def _done(source: Future[dict[str, Any]]) -> None:
                try:
                    chained.set_result(_apply(posts, source.result()))
                except BaseException as exc:
                    chained.set_exception(exc)

            pending.add_done_callback(_done)
            return chained
        if inspect.isawaitable(pending):
            return _post_await(pending, posts)
        return _apply(posts, pending)

    return wrapped


async def _post_await(pending: Awaitable[dict[str, Any]], posts: Sequence[Callable[[dict[str, Any]], dict[str, Any]]]) -> dict[str, Any]:
    return _apply(posts, await pending)
