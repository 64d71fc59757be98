"""
Shared error handling for the Team Management service.

Every domain check raises an ``ApiError`` subclass carrying an HTTP status,
a human readable reason and a suggested solution. ``BaseService`` converts
them into the standard error envelope.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel


ERROR_TYPES: Dict[int, str] = {
    400: "BadRequest",
    401: "Unauthorized",
    403: "Forbidden",
    404: "NotFound",
    405: "MethodNotAllowed",
    408: "RequestTimeout",
    409: "Conflict",
    413: "PayloadTooLarge",
    415: "UnsupportedMediaType",
    422: "UnprocessableEntity",
    429: "TooManyRequests",
    500: "InternalServerError",
    501: "NotImplemented",
    502: "BadGateway",
    503: "ServiceUnavailable",
    504: "GatewayTimeout",
}

DEFAULT_REASONS: Dict[int, str] = {
    400: "The server cannot process the request due to client error",
    401: "Authentication is required and has failed or not been provided",
    403: "The server understood the request but refuses to authorize it",
    404: "The requested resource could not be found",
    409: "The request conflicts with the current state of the resource",
    429: "Too many requests were sent in a given amount of time",
    500: "An unexpected condition was encountered by the server",
}

DEFAULT_SOLUTIONS: Dict[int, str] = {
    400: "Check your request parameters and try again",
    401: "Provide valid authentication credentials",
    403: "Ensure you have proper permissions to access this resource",
    404: "Verify the resource exists and the URL is correct",
    409: "Use a different value or update the existing resource",
    429: "Wait before retrying the request",
    500: "Please try again later or contact support",
}


class ErrorDetail(BaseModel):
    """Machine readable part of the error envelope."""

    type: str
    reason: str
    solution: str
    timestamp: str
    metadata: Optional[Dict[str, Any]] = None


class ErrorResponse(BaseModel):
    """Standard error response format."""

    success: bool = False
    message: str
    error: ErrorDetail


class ApiError(Exception):
    """Base exception for typed, status-coded domain failures."""

    def __init__(
        self,
        status_code: int,
        message: str = "Something went wrong",
        *,
        reason: Optional[str] = None,
        solution: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.status_code = status_code
        self.message = message
        self.type = ERROR_TYPES.get(status_code, "UnknownError")
        self.reason = reason or DEFAULT_REASONS.get(status_code, "Unknown reason")
        self.solution = solution or DEFAULT_SOLUTIONS.get(status_code, "Please try again later")
        self.metadata = metadata
        self.headers = headers or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            message=self.message,
            error=ErrorDetail(
                type=self.type,
                reason=self.reason,
                solution=self.solution,
                timestamp=self.timestamp,
                metadata=self.metadata,
            ),
        )


class BadRequestError(ApiError):
    """Missing or invalid input."""

    def __init__(self, message: str = "Bad request!", **details: Any):
        super().__init__(400, message, **details)


class UnauthorizedError(ApiError):
    """Missing, expired or invalid credentials."""

    def __init__(self, message: str = "Unauthorized!", **details: Any):
        super().__init__(401, message, **details)


class ForbiddenError(ApiError):
    """Role or ownership check failed."""

    def __init__(self, message: str = "Forbidden!", **details: Any):
        super().__init__(403, message, **details)


class NotFoundError(ApiError):
    """Referenced entity absent or empty result set."""

    def __init__(self, message: str = "Not found!", **details: Any):
        super().__init__(404, message, **details)


class ConflictError(ApiError):
    """Duplicate name, email or membership."""

    def __init__(self, message: str = "Conflict!", **details: Any):
        super().__init__(409, message, **details)


class TooManyRequestsError(ApiError):
    """Rate limit bucket exhausted."""

    def __init__(self, message: str = "Too many requests. Please try again later!", **details: Any):
        super().__init__(429, message, **details)


class InternalServerError(ApiError):
    """Transaction failure or unexpected persistence error."""

    def __init__(self, message: str = "Internal Server Error", **details: Any):
        super().__init__(500, message, **details)


def internal_error_response(exc: BaseException) -> ErrorResponse:
    """Build the generic 500 envelope for an untyped exception.

    Only the first line of the exception is leaked as diagnostic metadata.
    """
    first_line = (f"{type(exc).__name__}: {exc}").splitlines()[0]
    return ErrorResponse(
        message="Internal Server Error",
        error=ErrorDetail(
            type="InternalServerError",
            reason="An unexpected error occurred!",
            solution="Please try again later!",
            timestamp=datetime.now(timezone.utc).isoformat(),
            metadata={"stack": first_line},
        ),
    )
