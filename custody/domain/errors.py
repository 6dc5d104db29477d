"""
Error hierarchy for the custody reconciliation engine.

Every error carries a stable ``code`` and a ``context`` dict so the calling
application can render a user-facing message without parsing strings.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CustodyError(Exception):
    """Base class for all errors raised by the engine."""

    code = "CUSTODY_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "context": dict(self.context)}


class ValidationError(CustodyError):
    """Raised when input is malformed (non-positive amounts, empty line items...)."""

    code = "VALIDATION_ERROR"


class NotEligible(CustodyError):
    """Raised when an advance is not in a settleable or transferable state."""

    code = "ADVANCE_NOT_ELIGIBLE"


class AmountExceedsBalance(CustodyError):
    """Raised when a settlement would take more than the remaining balance."""

    code = "AMOUNT_EXCEEDS_BALANCE"

    def __init__(self, message: str, *, requested, remaining, **context: Any) -> None:
        super().__init__(
            message, requested=str(requested), remaining=str(remaining), **context
        )


class NotFound(CustodyError):
    """Raised when an advance, vendor, account, employee or cost center is unknown."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, identifier: Optional[Any], **context: Any) -> None:
        super().__init__(
            f"{entity} not found: {identifier}", entity=entity, identifier=identifier, **context
        )


class ExternalDependencyFailure(CustodyError):
    """Raised when the treasury, a lookup service or the database fails."""

    code = "EXTERNAL_DEPENDENCY_FAILURE"

    def __init__(self, dependency: str, reason: str, **context: Any) -> None:
        super().__init__(
            f"{dependency} failed: {reason}", dependency=dependency, reason=reason, **context
        )


class ConcurrentModification(CustodyError):
    """Raised when an advance changed between read and write."""

    code = "CONCURRENT_MODIFICATION"
