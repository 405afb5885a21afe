"""Loan approval cells and manifest shared by engine, system and CLI tests."""

from typing import Any

from cellflow.core.registry import CellRegistry

LOAN_MANIFEST: dict[str, Any] = {
    "id": "loan-approval",
    "input_schema": ["applicant: dict"],
    "cells": {
        "start": "loan/intake",
        "assess": "loan/assess",
        "approve": "loan/approve",
        "reject": "loan/reject",
        "review": "loan/review",
    },
    "edges": {
        "start": "assess",
        "assess": {"approve": "approve", "reject": "reject", "review": "review"},
        "approve": "end",
        "reject": "end",
        "review": "end",
    },
    "dispatches": {
        "assess": {
            "approve": "data['score'] >= 750 and data['amount'] <= 50000",
            "reject": "data['score'] < 500",
            "review": "True",
        },
    },
}


def applicant(score: int, amount: float = 20_000) -> dict[str, Any]:
    return {"applicant": {"name": "Ada", "score": score, "amount": amount}}


def build_registry() -> CellRegistry:
    registry = CellRegistry()

    @registry.cell("loan/intake", input=["applicant: dict"], output=["score: int", "amount: float"])
    def intake(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        applicant = data["applicant"]
        return {**data, "score": int(applicant["score"]), "amount": float(applicant["amount"])}

    @registry.cell("loan/assess", input=["score: int", "amount: float"], output=["risk: str"])
    def assess(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "risk": "low" if data["score"] >= 750 else "high"}

    @registry.cell("loan/approve", input=["amount: float"], output=["decision: str"])
    def approve(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "decision": "approved"}

    @registry.cell("loan/reject", output=["decision: str"])
    def reject(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "decision": "rejected"}

    @registry.cell("loan/review", input=["risk: str"], output=["decision: str"])
    def review(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "decision": "manual_review"}

    return registry
