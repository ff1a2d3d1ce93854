"""
Rate limit dependencies for the HTTP edge.

Usage:
    from bouncer.middleware.rate_limit_dependencies import rate_limit_client

    @router.post("/ingest/webhook")
    async def ingest(request: Request, _rate: None = Depends(rate_limit_client)):
        ...

Limits are per IP + User-Agent over a fixed window. The result is stored on
``request.state.rate_limit_info`` for RateLimitHeadersMiddleware.
"""

from fastapi import HTTPException, Request, status

from bouncer.config import settings
from bouncer.infrastructure.observability.logging import get_logger
from bouncer.middleware.rate_limiter import rate_limiter

logger = get_logger(__name__)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def _enforce(request: Request, limit: int) -> None:
    if not settings.RATE_LIMIT_ENABLED:
        return

    result = await rate_limiter.check_client_rate_limit(
        _client_ip(request), request.headers.get("user-agent"), limit=limit
    )
    info = result.to_dict()
    request.state.rate_limit_info = info

    if not result.allowed:
        logger.warning(
            "Client rate limit exceeded",
            ip=_client_ip(request),
            limit=info["limit"],
            retry_after=info["retry_after"],
            path=request.url.path,
        )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "rate_limit_exceeded",
                "message": f"Too many requests. Try again in {info['retry_after']} seconds.",
                "limit": info["limit"],
                "retry_after": info["retry_after"],
            },
            headers={
                "Retry-After": str(info["retry_after"]),
                "X-RateLimit-Limit": str(info["limit"]),
                "X-RateLimit-Remaining": "0",
            },
        )


async def rate_limit_client(request: Request) -> None:
    """Default API limit (RATE_LIMIT_API_MAX per window)."""
    await _enforce(request, settings.RATE_LIMIT_API_MAX)


async def rate_limit_webhook(request: Request) -> None:
    """Higher limit for third-party webhook deliveries (RATE_LIMIT_WEBHOOK_MAX per window)."""
    await _enforce(request, settings.RATE_LIMIT_WEBHOOK_MAX)
