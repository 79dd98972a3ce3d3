import os
import time
from typing import Optional, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from polaris.core.errors import RateLimitError, app_error_handler
from polaris.core.logging import get_request_id
from polaris.core.ratelimit import InMemoryRateLimiter, RateLimitConfig, build_rate_limit_config_from_env, policy_for


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token-bucket rate limiting middleware (opt-in via env)."""

    def __init__(self, app, *, config: Optional[RateLimitConfig] = None, env: Optional[dict] = None, time_fn: Optional[Callable[[], float]] = None):
        super().__init__(app)
        self.config = config or build_rate_limit_config_from_env(env or os.environ)
        self.limiter = InMemoryRateLimiter(self.config, time_fn=time_fn or time.monotonic)
        if hasattr(app, "state"):
            setattr(app.state, "rate_limiter", self.limiter)

    def _client_key(self, request: Request, scope: str) -> str:
        user_id = request.headers.get("X-User-Id")
        if not user_id:
            auth = request.headers.get("Authorization")
            if auth:
                # Tail of the bearer token (signature part), never logged
                user_id = auth[-24:]
        if user_id:
            return f"user:{user_id}:{scope}"

        ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
        return f"ip:{ip}:{scope}"

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled:
            return await call_next(request)

        policy = policy_for(self.config, request.url.path, request.method)
        if not policy:
            return await call_next(request)

        key = self._client_key(request, policy.scope)
        allowed = self.limiter.allow(key, per_minute=policy.per_minute, burst=policy.burst)
        if allowed:
            return await call_next(request)

        rid = getattr(request.state, "request_id", None) or get_request_id()
        response = await app_error_handler(
            request,
            RateLimitError(
                "Too many requests. Please try again later.",
                request_id=rid,
                details={"retryAfter": policy.retry_after_seconds},
            ),
        )
        response.headers["Retry-After"] = str(policy.retry_after_seconds)
        response.headers["X-RateLimit-Limit"] = str(policy.per_minute)
        response.headers["X-RateLimit-Remaining"] = "0"
        response.headers["X-RateLimit-Reset"] = "60"
        return response
