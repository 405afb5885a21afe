"""Cell implementations for the loan processing example.

Point the CLI at ``build_registry`` with this directory on the import path:

    PYTHONPATH=examples/loan_processing cellflow validate \\
        examples/loan_processing/workflow.yaml --cells cells:build_registry
"""

from typing import Any

import structlog

from cellflow import CellRegistry

slog = structlog.get_logger(__name__)

BUREAU: dict[str, dict[str, int]] = {
    "a-100": {"score": 810, "late_payments": 0},
    "a-200": {"score": 660, "late_payments": 2},
    "a-300": {"score": 480, "late_payments": 6},
}


def sample_resources() -> dict[str, Any]:
    """Stand-ins for the bureau client and the identity store."""
    return {"bureau": BUREAU, "identities": frozenset({"a-100", "a-200", "a-300"})}


def redact_applicant(data: dict[str, Any]) -> dict[str, Any]:
    """Drop the SSN before any decision cell sees the applicant."""
    applicant = {key: value for key, value in data["applicant"].items() if key != "ssn"}
    return {**data, "applicant": applicant}


def build_registry() -> CellRegistry:
    registry = CellRegistry()

    @registry.cell("loan/normalize", input=["applicant: dict", "amount: float"], output=["applicant_id: str", "name: str"])
    def normalize(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        """Pull the identifying fields out of the raw application."""
        applicant = data["applicant"]
        return {**data, "applicant_id": str(applicant["id"]), "name": str(applicant["name"]).strip().title()}

    @registry.cell(
        "identity/lookup",
        input=["applicant_id: str"],
        output=["identity_status: str"],
        requires=("identities",),
    )
    def lookup(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        known = data["applicant_id"] in resources["identities"]
        return {**data, "identity_status": "verified" if known else "unknown"}

    @registry.cell("loan/credit-score", input=["applicant_id: str"], output=["score: int"], requires=("bureau",))
    def credit_score(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "score": resources["bureau"][data["applicant_id"]]["score"]}

    @registry.cell("loan/payment-history", input=["applicant_id: str"], output=["late_payments: int"], requires=("bureau",))
    def payment_history(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "late_payments": resources["bureau"][data["applicant_id"]]["late_payments"]}

    @registry.cell("loan/assess", input=["score: int", "late_payments: int", "amount: float"], output=["risk: str"])
    def assess(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        """Low risk needs a 700+ score and at most one late payment."""
        if data["amount"] <= 0:
            raise ValueError(f"amount must be positive, got {data['amount']}")
        if data["score"] >= 700 and data["late_payments"] <= 1:
            risk = "low"
        elif data["score"] < 500 or data["late_payments"] > 4:
            risk = "high"
        else:
            risk = "medium"
        slog.info("loan_assessed", applicant_id=data["applicant_id"], risk=risk)
        return {**data, "risk": risk}

    @registry.cell("loan/decide-approve", output=["decision: str"])
    def approve(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "decision": "approved"}

    @registry.cell("loan/decide-decline", output=["decision: str"])
    def decline(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "decision": "declined"}

    @registry.cell("loan/manual-review", output=["decision: str"])
    def manual_review(resources: Any, data: dict[str, Any]) -> dict[str, Any]:
        return {**data, "decision": "manual_review"}

    return registry
