"""
Error taxonomy for the fan-out core.

- ValidationError: malformed action, particulars or task kind
- PersistenceError: storage write failed; fatal to the caller's transaction
- DeliveryError: webhook network failure, timeout or non-2xx (retried)
- ExhaustedRetriesError: terminal state after the last allowed attempt
- NotFoundError: the addressed resource does not exist
- TenantMismatchError: an operation crossed account boundaries (always fatal)
"""

from __future__ import annotations

from typing import Optional


class FizzyError(Exception):
    """Base class. `code` and `status` feed the API error envelope."""

    code = "FIZZY_ERROR"
    status = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(FizzyError):
    code = "VALIDATION_FAILED"
    status = 422


class PersistenceError(FizzyError):
    code = "PERSISTENCE_FAILED"
    status = 503


class DeliveryError(FizzyError):
    code = "DELIVERY_FAILED"
    status = 502

    def __init__(self, message: str, response_status: Optional[int] = None):
        super().__init__(message)
        self.response_status = response_status


class ExhaustedRetriesError(FizzyError):
    code = "RETRIES_EXHAUSTED"
    status = 500

    def __init__(self, what: str, attempts: int, last_error: str):
        super().__init__(f"{what} gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class NotFoundError(FizzyError):
    code = "NOT_FOUND"
    status = 404


class TenantMismatchError(NotFoundError):
    # Reported as a plain 404; other accounts' resources are not revealed
    pass
