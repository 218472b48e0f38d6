"""Reconciliation error hierarchy.

Every failure raised by the engine derives from ReconciliationError and
carries the line numbers that caused it (if any) so callers can highlight
the offending rows instead of failing a whole bill opaquely.
"""

from typing import Any, Dict, List, Optional


class ReconciliationError(Exception):
    """Base exception for reconciliation engine errors."""

    code = "reconciliation_error"
    default_retryable = False

    def __init__(
        self,
        message: str,
        line_numbers: Optional[List[int]] = None,
        retryable: Optional[bool] = None,
    ):
        super().__init__(message)
        self.message = message
        self.line_numbers = sorted(set(line_numbers or []))
        self.retryable = self.default_retryable if retryable is None else retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "line_numbers": self.line_numbers,
            "retryable": self.retryable,
        }


class ValidationError(ReconciliationError):
    """Malformed input (empty alias fields, bad template, non-positive quantity)."""
    code = "validation_error"


class NotFoundError(ReconciliationError):
    """Unknown bill, line or alias id."""
    code = "not_found"


class InvalidStateError(ReconciliationError):
    """Operation not permitted in the bill's current status."""
    code = "invalid_state"


class AlreadyPostedError(InvalidStateError):
    """Post attempted on a bill that is already POSTED."""
    code = "already_posted"


class ConflictError(ReconciliationError):
    """Concurrent modification detected while committing."""
    code = "conflict"
    default_retryable = True


class CollaboratorError(ReconciliationError):
    """Catalog or another collaborator was unavailable or timed out."""
    code = "collaborator_error"
    default_retryable = True
