"""Error types raised by the matching services."""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes for client handling."""

    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    BUSINESS_RULE = "BUSINESS_RULE"
    UPSTREAM_UNAVAILABLE = "UPSTREAM_UNAVAILABLE"


class MatchingError(Exception):
    """Base exception with structured error info."""

    code = ErrorCode.BUSINESS_RULE

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to API response format."""
        result: dict[str, Any] = {"error": self.code.value, "message": self.message}
        if self.context:
            result["context"] = self.context
        return result


class NotFoundError(MatchingError):
    """Referenced record does not exist or belongs to another user."""

    code = ErrorCode.NOT_FOUND

    def __init__(self, kind: str, record_id: Any):
        super().__init__(f"{kind} {record_id} not found", {"kind": kind, "id": str(record_id)})


class UnauthorizedError(MatchingError):
    """Caller can see the account but may not change it."""

    code = ErrorCode.UNAUTHORIZED


class BusinessRuleViolation(MatchingError):
    """Request breaks a rule the caller can fix and retry."""

    code = ErrorCode.BUSINESS_RULE


class UpstreamUnavailable(MatchingError):
    """Bank feed or category service failed or timed out."""

    code = ErrorCode.UPSTREAM_UNAVAILABLE

    def __init__(self, service: str, detail: str):
        super().__init__(f"{service} unavailable: {detail}", {"service": service})
        self.service = service
