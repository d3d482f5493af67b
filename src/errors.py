"""Error taxonomy shared by the credit-control services.

Services raise these; the Flask layer in ``src.main`` turns them into JSON
responses. None of them is retried automatically.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class CreditControlError(Exception):
    """Base class for all domain errors raised by the services."""

    status_code = 400
    code = "ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "code": self.code}
        body.update(self.details)
        return body


class NotFoundError(CreditControlError):
    """Referenced account, order, or product does not exist."""

    status_code = 404
    code = "NOT_FOUND"


class UnauthorizedError(CreditControlError):
    """Acting account lacks the role or permission for the operation."""

    status_code = 403
    code = "UNAUTHORIZED"


class InvalidArgumentError(CreditControlError):
    status_code = 400
    code = "INVALID_ARGUMENT"


class StorageError(CreditControlError):
    """Underlying data access failed; callers must fail closed."""

    status_code = 503
    code = "STORAGE_ERROR"
