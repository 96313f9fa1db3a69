"""Error taxonomy for the API gatekeeper.

Every error is an ``HTTPException`` carrying a machine-readable ``error_code``;
``app.main`` renders them as ``ErrorResponse`` bodies. Authorization failures
share one generic message so callers cannot tell a missing key from a revoked,
expired, IP-blocked or wrong-tier one.
"""
import math
import time
from typing import Dict, Optional

from fastapi import HTTPException, status


class GatewayError(HTTPException):
    """Base class for all errors surfaced by the gatekeeper."""
    status_code_default: int = status.HTTP_400_BAD_REQUEST
    error_code: str = "error"
    default_detail: str = "Request failed"
    retryable: bool = False

    def __init__(
        self,
        detail: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(
            status_code=self.status_code_default,
            detail=detail or self.default_detail,
            headers=headers,
        )


class MalformedCredential(GatewayError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    error_code = "invalid_authorization"
    default_detail = "Missing or malformed Authorization header. Expected 'Bearer <api key>'."

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class Unauthorized(GatewayError):
    status_code_default = status.HTTP_401_UNAUTHORIZED
    error_code = "unauthorized"
    default_detail = "Invalid or missing API key"

    def __init__(self, detail: Optional[str] = None):
        super().__init__(detail, headers={"WWW-Authenticate": "Bearer"})


class RateLimited(GatewayError):
    status_code_default = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "rate_limited"
    default_detail = "Rate limit exceeded"
    retryable = True

    def __init__(self, limit: int, reset_at: float, now: Optional[float] = None):
        now = time.time() if now is None else now
        retry_after = max(1, math.ceil(reset_at - now))
        self.limit = limit
        self.reset_at = reset_at
        self.retry_after = retry_after
        super().__init__(
            f"Rate limit exceeded. Try again in {retry_after} seconds.",
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(math.ceil(reset_at)),
            },
        )


class QuotaExceeded(GatewayError):
    status_code_default = status.HTTP_429_TOO_MANY_REQUESTS
    error_code = "monthly_limit_exceeded"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            f"You have exceeded your monthly API request limit of {limit:,} requests. "
            "Limits reset on the first of each month.",
            headers={
                "X-RateLimit-Monthly-Limit": str(limit),
                "X-RateLimit-Monthly-Remaining": "0",
            },
        )


class ValidationFailed(GatewayError):
    status_code_default = status.HTTP_400_BAD_REQUEST
    error_code = "validation_failed"
    default_detail = "Invalid request"


class Forbidden(GatewayError):
    status_code_default = status.HTTP_403_FORBIDDEN
    error_code = "forbidden"
    default_detail = "Forbidden"


class NotFound(GatewayError):
    status_code_default = status.HTTP_404_NOT_FOUND
    error_code = "not_found"
    default_detail = "Not found"


class StoreUnavailable(GatewayError):
    """The record store or counter store could not be reached."""
    status_code_default = status.HTTP_503_SERVICE_UNAVAILABLE
    error_code = "store_unavailable"
    default_detail = "Service temporarily unavailable. Please retry."
    retryable = True

    def __init__(self, detail: Optional[str] = None, retry_after: int = 5):
        super().__init__(detail, headers={"Retry-After": str(retry_after)})
