# tests/fixtures/__init__.py
"""Manifests, cell factories and hook functions shared by the test suite."""
