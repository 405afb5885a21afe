#!/usr/bin/env python3
"""
Run the loan processing workflow for a handful of applicants.

Prints each applicant's decision, the run status and the path taken.

Usage:
    python run_example.py
"""

import sys
from pathlib import Path

from cells import build_registry, sample_resources

from cellflow import WorkflowRunner, compile_workflow, load_manifest
from cellflow.contracts.keys import STATUS_KEY, TRACE_KEY
from cellflow.contracts.trace import transitions_of
from cellflow.core.logging import configure_logging

APPLICANTS = [
    ({"id": "a-100", "name": "ada lovelace", "ssn": "000-00-0001"}, "25000"),
    ({"id": "a-200", "name": "alan turing", "ssn": "000-00-0002"}, 10_000),
    ({"id": "a-300", "name": "grace hopper", "ssn": "000-00-0003"}, 5_000),
    ({"id": "a-999", "name": "mallory", "ssn": "000-00-0009"}, 1_000),
    ({"id": "a-100", "name": "ada lovelace", "ssn": "000-00-0001"}, -1),
]


def main() -> int:
    configure_logging(level="WARNING")
    manifest = load_manifest(Path(__file__).parent / "workflow.yaml")
    workflow = compile_workflow(manifest, build_registry())
    runner = WorkflowRunner()

    for applicant, amount in APPLICANTS:
        result = runner.run(workflow, sample_resources(), {"applicant": applicant, "amount": amount})
        path = " -> ".join(name if label is None else f"{name}[{label}]" for name, label in transitions_of(result[TRACE_KEY]))
        print(f"{applicant['id']} {amount!s:>6}: {result.get('decision', '-'):<14} {result[STATUS_KEY]!s:<10} {path}")  # noqa: T201
    return 0


if __name__ == "__main__":
    sys.exit(main())
