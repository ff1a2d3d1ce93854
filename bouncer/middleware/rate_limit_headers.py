"""
Rate Limit Headers Middleware - add rate limit info to responses.

Headers added:
- X-RateLimit-Limit: Maximum requests allowed in the window
- X-RateLimit-Remaining: Remaining requests in current window
- X-RateLimit-Reset: Epoch seconds when the window closes
- Retry-After: Seconds to wait before retrying (if rate limited)

Reads ``request.state.rate_limit_info`` set by the rate limit dependencies.
Responses without it are left untouched.
"""

from datetime import datetime

from starlette.middleware.base import BaseHTTPMiddleware


class RateLimitHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        rate_limit_info = getattr(request.state, "rate_limit_info", None)
        if not rate_limit_info:
            return response

        if "limit" in rate_limit_info:
            response.headers["X-RateLimit-Limit"] = str(rate_limit_info["limit"])
        if "remaining" in rate_limit_info:
            response.headers["X-RateLimit-Remaining"] = str(rate_limit_info["remaining"])
        if "reset_time" in rate_limit_info:
            reset = datetime.fromisoformat(rate_limit_info["reset_time"])
            response.headers["X-RateLimit-Reset"] = str(int(reset.timestamp()))
        if not rate_limit_info.get("allowed", True) and rate_limit_info.get("retry_after"):
            response.headers["Retry-After"] = str(rate_limit_info["retry_after"])

        return response
