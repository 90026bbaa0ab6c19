"""Error taxonomy for the order, dispute, negotiation and payout engine.

Services raise these; the application renders them as the JSON error
contract (``ok``/``error``/``message``/``status``/``trace_id``).
"""

from __future__ import annotations


class EngineError(Exception):
    status_code = 500
    default_code = "ENGINE_ERROR"

    def __init__(self, message: str = "", *, code: str | None = None, details: dict | None = None):
        super().__init__(message or self.default_code)
        self.code = (code or self.default_code).strip().upper()
        self.message = message or self.code
        self.details = dict(details or {})

    def to_dict(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status_code),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(EngineError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class AuthorizationError(EngineError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(EngineError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(EngineError):
    """Lost an optimistic-concurrency race; refetch and retry."""

    status_code = 409
    default_code = "CONFLICT"


class PreconditionFailed(EngineError):
    """Entity is not in a state compatible with the requested transition."""

    status_code = 422
    default_code = "PRECONDITION_FAILED"


class ProcessorUnavailable(EngineError):
    """Payment processor gave no definitive answer; nothing was applied."""

    status_code = 502
    default_code = "PAYMENT_PROCESSOR_UNAVAILABLE"
