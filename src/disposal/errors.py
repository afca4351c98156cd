from __future__ import annotations

from typing import Any


class DisposalError(Exception):
    """Base for every error the disposal workflow surfaces to callers."""

    kind = "disposal_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(DisposalError):
    """Malformed or out-of-range input; fixed by correcting the request."""

    kind = "validation"


class NotFoundError(DisposalError):
    kind = "not_found"


class InvalidStateError(DisposalError):
    """Entity is not in the state the operation requires."""

    kind = "invalid_state"


class BusinessRuleError(DisposalError):
    """Domain rule violated against otherwise valid state."""

    kind = "business_rule"
