"""
Domain Error Taxonomy

Every rejected mutation raises one of these. They are recoverable at the
call boundary: the REST layer and the event gateway turn them into a
structured failure for the requesting client and never let them crash the
process or touch other orders.

Only PersistenceError is an infrastructure failure; everything else is a
domain decision made before (or instead of) any state change.
"""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class FieldViolation:
    """A single field-level rule violation."""
    field: str
    message: str

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.message}


class OrderEngineError(Exception):
    """Base class for all errors surfaced to clients."""

    code = "order_engine_error"
    status_code = 400

    def __init__(self, message: str, errors: Optional[list[FieldViolation]] = None):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])

    def to_dict(self) -> dict:
        payload = {
            "success": False,
            "code": self.code,
            "message": self.message,
        }
        if self.errors:
            payload["errors"] = [e.to_dict() for e in self.errors]
        return payload


class ValidationError(OrderEngineError):
    """Input or channel rule violated; nothing was mutated."""

    code = "validation_error"
    status_code = 400

    @classmethod
    def from_violations(cls, violations: list[FieldViolation]) -> "ValidationError":
        message = "; ".join(v.message for v in violations)
        return cls(message, violations)


class InvalidTransition(OrderEngineError):
    """Requested status change is not permitted from the current status."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: str, requested: str):
        super().__init__(f"cannot move order from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class TerminalStateError(OrderEngineError):
    """Mutation attempted on a completed or cancelled order."""

    code = "terminal_state"
    status_code = 409

    def __init__(self, order_id: str, status: str):
        super().__init__(f"order {order_id} is {status} and can no longer be changed")
        self.order_id = order_id
        self.status = status


class ConcurrencyConflict(OrderEngineError):
    """A commit found the stored order at a different version than it read."""

    code = "concurrency_conflict"
    status_code = 409

    def __init__(self, order_id: str, expected: int, found: int):
        super().__init__(
            f"order {order_id} changed concurrently (expected version {expected}, found {found})"
        )
        self.order_id = order_id


class NotFound(OrderEngineError):
    """Referenced order (or item) does not exist."""

    code = "not_found"
    status_code = 404


class PermissionDenied(OrderEngineError):
    """The acting role may not perform the requested action."""

    code = "permission_denied"
    status_code = 403


class RequestTimeout(OrderEngineError):
    """The caller stopped waiting; the operation itself may still complete."""

    code = "timeout"
    status_code = 504


class PersistenceError(OrderEngineError):
    """Repository unavailable after retries. Transient; safe to retry with the same request id."""

    code = "persistence_unavailable"
    status_code = 503


class RepositoryUnavailable(Exception):
    """Raised by repository adapters for transient storage failures; retried by the store."""
