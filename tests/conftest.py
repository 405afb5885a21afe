# tests/conftest.py
"""Shared test fixtures and helpers.

Hypothesis Configuration:
- "ci" profile: Fast tests for CI (100 examples) - default
- "nightly" profile: Thorough tests (1000 examples)
- "debug" profile: Minimal tests with verbose output (10 examples)

Set profile via environment variable:
    HYPOTHESIS_PROFILE=nightly pytest tests/property/
"""

import os
from collections.abc import Callable
from typing import Any

import pytest
from hypothesis import Phase, Verbosity, settings

from cellflow.core.manifest.loader import parse_manifest
from cellflow.core.manifest.models import Manifest
from cellflow.core.registry import CellRegistry
from tests.fixtures.loan import build_registry

# =============================================================================
# Hypothesis Configuration
# =============================================================================

# CI profile: Fast tests for continuous integration
settings.register_profile(
    "ci",
    max_examples=100,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,  # Disable deadline for CI (timing varies)
)

# Nightly profile: Thorough testing for scheduled runs
settings.register_profile(
    "nightly",
    max_examples=1000,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Debug profile: Minimal examples with verbose output for debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    phases=[Phase.explicit, Phase.reuse, Phase.generate, Phase.shrink],
    deadline=None,
)

# Load profile from environment, default to "ci"
settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "ci"))


# =============================================================================
# Registry helpers
# =============================================================================


def passthrough(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
    return data


def adds(**values: Any) -> Callable[[Any, dict[str, Any]], dict[str, Any]]:
    """Handler that merges fixed ``values`` into the record."""

    def handler(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, **values}

    return handler


def fails(message: str = "boom") -> Callable[[Any, dict[str, Any]], dict[str, Any]]:
    def handler(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        raise RuntimeError(message)

    return handler


def manifest(**document: Any) -> Manifest:
    """Build a Manifest from keyword arguments (``id`` defaults to 'test')."""
    document.setdefault("id", "test")
    return parse_manifest(document)


@pytest.fixture
def registry() -> CellRegistry:
    """Empty registry."""
    return CellRegistry()


@pytest.fixture
def loan_registry() -> CellRegistry:
    """Registry with the loan approval cells."""
    return build_registry()
