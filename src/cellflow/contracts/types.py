"""Semantic type aliases for handlers, predicates and transforms."""

from collections.abc import Callable, Mapping
from typing import Any

type DataRecord = dict[str, Any]
"""The accumulating data record passed from cell to cell."""

type Resources = Mapping[str, Any]
"""Handles (connections, clients) passed to every cell by reference."""

type Handler = Callable[[Resources, DataRecord], Any]
"""Cell handler. Sync handlers return a DataRecord; async handlers return an
awaitable or a concurrent.futures.Future resolving to one."""

type Predicate = Callable[[DataRecord], Any]
"""Dispatch predicate; a truthy result selects its label."""

type DataTransform = Callable[[DataRecord], DataRecord]
"""Interceptor pre/post transform."""

type MergeFunction = Callable[[DataRecord, list[DataRecord]], DataRecord]
"""Join merge: (snapshot, member outputs in declaration order) -> merged record."""
