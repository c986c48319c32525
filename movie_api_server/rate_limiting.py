"""
HTTP side of quota enforcement.

- Admission decisions become JSON error responses with quota headers
- Admitted responses carry the same quota headers
- Admin login is throttled per client IP with slowapi, since a wrong
  admin secret never reaches the per-key quota

Quota headers:
- X-Rate-Limit-Remaining: requests left today
- X-Rate-Limit-Reset: next UTC midnight (ISO-8601)
"""
from datetime import datetime
from typing import Optional, Union

from fastapi import Request, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from movie_api_server.clock import SystemClock, isoformat_z
from movie_api_server.config import settings
from movie_api_server.gate import Denied, DenialReason, ServiceUnavailable

REMAINING_HEADER = "X-Rate-Limit-Remaining"
RESET_HEADER = "X-Rate-Limit-Reset"
EXPOSED_HEADERS = [REMAINING_HEADER, RESET_HEADER, "X-Request-ID"]


class AdmissionDenied(Exception):
    """Raised by request dependencies when the gate refuses a request."""

    def __init__(self, decision: Union[Denied, ServiceUnavailable]):
        super().__init__(decision.error)
        self.decision = decision


def rate_limit_headers(remaining: Optional[int], reset_at: Optional[datetime]) -> dict:
    """Quota headers for a response; absent values render as '0' and ''."""
    return {
        REMAINING_HEADER: str(remaining or 0),
        RESET_HEADER: isoformat_z(reset_at) if reset_at else "",
    }


def admitted_headers(request: Request) -> dict:
    """Quota headers of an already admitted request, or {} if the gate never ran."""
    admission = getattr(request.state, "admission", None)
    if admission is None:
        return {}
    return rate_limit_headers(admission.remaining, admission.reset_at)


def admission_denied_handler(request: Request, exc: AdmissionDenied) -> JSONResponse:
    """
    Render a refused admission.

    Returns JSON response with:
    - error / message
    - quota details and Retry-After for exhausted quotas
    """
    decision = exc.decision
    content = {"error": decision.error, "message": decision.message}

    if isinstance(decision, ServiceUnavailable):
        return JSONResponse(
            status_code=decision.status_code,
            content=content,
            headers=rate_limit_headers(None, None),
        )

    headers = rate_limit_headers(decision.remaining, decision.reset_at)
    if decision.reason == DenialReason.QUOTA_EXCEEDED:
        content.update({
            "requests_remaining": 0,
            "daily_limit": decision.daily_limit,
            "reset_time": isoformat_z(decision.reset_at),
        })
        clock = getattr(request.app.state, "clock", None) or SystemClock()
        retry_after = (decision.reset_at - clock.now()).total_seconds()
        headers["Retry-After"] = str(max(int(retry_after), 0))

    return JSONResponse(status_code=decision.status, content=content, headers=headers)


# Admin login throttling. The limit is read per request so it follows settings.
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.rate_limit_storage_uri,
    enabled=settings.rate_limit_enabled,
)


def admin_login_limit():
    """Per-IP rate limit for the admin login endpoint."""
    return limiter.limit(lambda: settings.admin_login_rate_limit)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Custom handler for throttled admin logins."""
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "success": False,
            "error": "Rate limit exceeded",
            "message": f"Too many login attempts ({exc.detail}). Please wait before retrying.",
        },
    )


def apply_rate_limits(app) -> None:
    """
    Wire quota and throttling handlers into a FastAPI application.

    Sets up:
    - AdmissionDenied handler
    - slowapi RateLimitExceeded handler and app.state.limiter
    """
    app.add_exception_handler(AdmissionDenied, admission_denied_handler)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.state.limiter = limiter
