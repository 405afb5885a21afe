# tests/property/test_schema_chain_properties.py
"""Property-based tests for schema-chain analysis.

For generated pipelines and diamonds, the fixed-point analysis must agree
with a direct computation of which keys every path guarantees.
"""

from __future__ import annotations

import pytest
from hypothesis import given
from hypothesis import strategies as st

from cellflow.contracts.errors import SchemaChainError
from cellflow.core.dag.schema_chain import analyze_schema_chain
from cellflow.core.registry import CellRegistry
from tests.conftest import manifest, passthrough

KEYS = ["alpha", "beta", "gamma", "delta", "epsilon"]

key_sets = st.frozensets(st.sampled_from(KEYS), max_size=3)
contracts = st.tuples(key_sets, key_sets)  # (required, produced)


def _register(registry: CellRegistry, name: str, required: frozenset[str], produced: frozenset[str]) -> None:
    registry.register(
        name,
        passthrough,
        input=[f"{key}: int" for key in sorted(required)],
        output=[f"{key}: int" for key in sorted(produced)],
    )


@given(steps=st.lists(contracts, min_size=1, max_size=6))
def test_pipeline_accepted_iff_every_requirement_produced_upstream(steps) -> None:
    registry = CellRegistry()
    names = [f"c{i}" for i in range(len(steps))]
    for name, (required, produced) in zip(names, steps, strict=True):
        _register(registry, name, required, produced)

    available = set(steps[0][0])
    expected_ok = True
    for required, produced in steps:
        if not required <= available:
            expected_ok = False
        available |= required | produced

    m = manifest(pipeline=names, cells={name: name for name in names})
    if expected_ok:
        analyze_schema_chain(m, registry)
    else:
        with pytest.raises(SchemaChainError):
            analyze_schema_chain(m, registry)


@given(left=key_sets, right=key_sets, head=key_sets)
def test_diamond_guarantees_intersection(left, right, head) -> None:
    registry = CellRegistry()
    _register(registry, "head", frozenset(), head)
    _register(registry, "left", frozenset(), left)
    _register(registry, "right", frozenset(), right)
    registry.register("tail", passthrough)
    m = manifest(
        cells={"start": "head", "left": "left", "right": "right", "tail": "tail"},
        edges={"start": {"l": "left", "r": "right"}, "left": "tail", "right": "tail", "tail": "end"},
        dispatches={"start": {"l": "data.get('go_left')", "r": "True"}},
    )

    analysis = analyze_schema_chain(m, registry)

    assert analysis.entry_keys["tail"] == head | (left & right)


@given(produced=key_sets, required=key_sets)
def test_loop_does_not_invent_keys(produced, required) -> None:
    registry = CellRegistry()
    _register(registry, "body", frozenset(), produced)
    _register(registry, "check", required, frozenset())
    m = manifest(
        cells={"start": "body", "check": "check"},
        edges={"start": "check", "check": {"again": "start", "done": "end"}},
        dispatches={"check": {"again": "data.get('n', 0) < 3", "done": "True"}},
    )
    if required <= produced:
        assert analyze_schema_chain(m, registry).entry_keys["check"] == produced
    else:
        with pytest.raises(SchemaChainError):
            analyze_schema_chain(m, registry)
