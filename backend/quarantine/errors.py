"""
Error taxonomy for the quarantine subsystem.

Each error carries the HTTP status the API layer should surface. Quarantine
cap suppression is deliberately absent: it is reported as a decision.
"""

from typing import Dict, List, Optional


class QuarantineError(Exception):
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class PolicyValidationError(QuarantineError):
    """Raised when a policy configuration has one or more invalid fields."""

    status_code = 422

    def __init__(self, errors: List[Dict[str, str]]) -> None:
        self.errors = list(errors)
        fields = ", ".join(err["field"] for err in self.errors) or "<config>"
        super().__init__(f"Invalid quarantine policy: {fields}")

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.errors}


class NotFoundError(QuarantineError):
    status_code = 404

    def __init__(self, kind: str, identifier: Optional[object] = None) -> None:
        self.kind = kind
        self.identifier = identifier
        if identifier is None:
            message = f"{kind} not found"
        else:
            message = f"{kind} '{identifier}' not found"
        super().__init__(message)


class ConflictError(QuarantineError):
    """The quarantine state changed underneath a check-and-write."""

    status_code = 409

    def __init__(self, pattern_id: int, expected_quarantined: bool) -> None:
        self.pattern_id = pattern_id
        self.expected_quarantined = expected_quarantined
        state = "quarantined" if expected_quarantined else "not quarantined"
        super().__init__(
            f"Quarantine state of test {pattern_id} changed concurrently (expected {state})"
        )
