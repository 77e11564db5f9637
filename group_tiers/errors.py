"""
group_tiers/errors.py
Centralized error taxonomy

Every service failure is raised as one of the APIError subclasses below and
rendered by the handler registered in main.py.

ERROR RESPONSE STRUCTURE:
{
    "success": false,
    "error": "ErrorType",
    "message": "Human-readable description",
    "code": "UNIQUE_ERROR_CODE",
    "details": {} (optional)
}

HTTP STATUS CODE DISCIPLINE:
- 400: Validation (bad enum, missing field, out-of-range number)
- 401: Authentication missing or expired
- 403: Actor lacks the standing for the action
- 404: Subject row does not exist
- 409: State invariant would be violated
- 422: Request body failed schema validation (Pydantic)
- 503: Store transaction could not be completed, retry later
"""

import logging
from typing import Any, Dict, Optional

from fastapi import status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ErrorCode:
    """Unique error codes for machine-readable error handling"""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_FIELD = "MISSING_FIELD"
    INVALID_ROLE = "INVALID_ROLE"
    INVALID_TIER = "INVALID_TIER"
    INVALID_STATUS = "INVALID_STATUS"

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INVALID = "AUTH_INVALID"

    FORBIDDEN = "FORBIDDEN"
    ADMIN_REQUIRED = "ADMIN_REQUIRED"
    CAPTAIN_REQUIRED = "CAPTAIN_REQUIRED"
    MEMBERSHIP_REQUIRED = "MEMBERSHIP_REQUIRED"

    NOT_FOUND = "NOT_FOUND"

    CONFLICT = "CONFLICT"
    ALREADY_IN_GROUP = "ALREADY_IN_GROUP"
    GROUP_FULL = "GROUP_FULL"
    GROUP_FROZEN = "GROUP_FROZEN"
    REJOIN_DEADLINE_PASSED = "REJOIN_DEADLINE_PASSED"
    NOT_CHANGE_DAY = "NOT_CHANGE_DAY"
    NO_ACTIVE_PHASE = "NO_ACTIVE_PHASE"
    MEMBERSHIP_NOT_ACTIVE = "MEMBERSHIP_NOT_ACTIVE"
    ROLE_ALREADY_FILLED = "ROLE_ALREADY_FILLED"
    DUPLICATE_PENDING_REQUEST = "DUPLICATE_PENDING_REQUEST"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    STATE_DRIFTED = "STATE_DRIFTED"
    ALREADY_APPLIED = "ALREADY_APPLIED"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"

    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class APIError(Exception):
    """Base API exception with consistent structure"""

    def __init__(
        self,
        status_code: int,
        error: str,
        message: str,
        code: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.status_code = status_code
        self.error = error
        self.message = message
        self.code = code
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        result = {
            "success": False,
            "error": self.error,
            "message": self.message,
            "code": self.code
        }
        if self.details:
            result["details"] = self.details
        return result

    def to_response(self) -> JSONResponse:
        """Convert to FastAPI JSONResponse"""
        return JSONResponse(status_code=self.status_code, content=self.to_dict())


class ValidationError(APIError):
    """400 Bad Request - malformed input"""
    def __init__(self, message: str, code: str = ErrorCode.INVALID_INPUT, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_400_BAD_REQUEST,
            error="Validation Error",
            message=message,
            code=code,
            details=details
        )


class UnauthorizedError(APIError):
    """401 Unauthorized - Authentication required"""
    def __init__(self, message: str = "Authentication required", code: str = ErrorCode.AUTH_REQUIRED):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error="Unauthorized",
            message=message,
            code=code
        )


class ForbiddenError(APIError):
    """403 Forbidden - actor lacks standing"""
    def __init__(self, message: str, code: str = ErrorCode.FORBIDDEN, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error="Forbidden",
            message=message,
            code=code,
            details=details
        )


class NotFoundError(APIError):
    """404 Not Found - Resource does not exist"""
    def __init__(self, resource: str, identifier: Any = None, code: str = ErrorCode.NOT_FOUND):
        message = f"{resource} not found"
        if identifier is not None:
            message = f"{resource} with id '{identifier}' not found"
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error="Not Found",
            message=message,
            code=code
        )


class ConflictError(APIError):
    """409 Conflict - a state invariant would be violated"""
    def __init__(self, message: str, code: str = ErrorCode.CONFLICT, details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            error="Conflict",
            message=message,
            code=code,
            details=details
        )


class UnavailableError(APIError):
    """503 Service Unavailable - transaction rolled back, caller should retry"""
    def __init__(self, message: str = "The operation could not be completed. Please retry later."):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            error="Unavailable",
            message=message,
            code=ErrorCode.SERVICE_UNAVAILABLE
        )


def validate_enum(value: Any, allowed_values, field_name: str, code: str = ErrorCode.INVALID_INPUT) -> str:
    """Normalize a string enum value (trim + upper) or raise ValidationError"""
    normalized = str(value or "").strip().upper()
    allowed = [str(v) for v in allowed_values]
    if normalized not in allowed:
        raise ValidationError(
            f"{field_name} must be one of {', '.join(allowed)}",
            code=code,
            details={"field": field_name, "value": value, "allowed": allowed}
        )
    return normalized


def validate_positive_int(value: Any, field_name: str) -> int:
    """Validate that a value is a positive integer"""
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = 0
    if isinstance(value, bool) or number <= 0 or str(number) != str(value).strip():
        raise ValidationError(
            f"{field_name} must be a positive integer",
            code=ErrorCode.INVALID_INPUT,
            details={"field": field_name, "value": value}
        )
    return number
