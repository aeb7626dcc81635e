"""
HTTP rate limiting middleware.
"""

from collections.abc import Awaitable, Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from learnacademy.security.exceptions import RateLimitError, error_response
from learnacademy.security.paths import (
    API_PREFIX,
    CONTACT_PATH,
    ENROLLMENT_PATH,
    LOGIN_PATH,
    RESET_PASSWORD_PATH,
)
from learnacademy.security.request_utils import get_client_ip, request_context

from .config import RateLimitRuleType
from .service import RateLimiter

logger = structlog.get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

DEFAULT_PATH_RULES: dict[str, str] = {
    CONTACT_PATH: RateLimitRuleType.CONTACT.value,
    ENROLLMENT_PATH: RateLimitRuleType.ENROLLMENT.value,
    LOGIN_PATH: RateLimitRuleType.AUTH.value,
    RESET_PASSWORD_PATH: RateLimitRuleType.PASSWORD_RESET.value,
    API_PREFIX: RateLimitRuleType.API.value,
}


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply the longest matching path rule to each request."""

    def __init__(
        self,
        app: ASGIApp,
        limiter: RateLimiter | Callable[[], RateLimiter],
        path_rules: dict[str, str] | None = None,
        form_methods_only: frozenset[str] = frozenset({"contact", "enrollment"}),
    ):
        super().__init__(app)
        self._limiter = limiter
        self.path_rules = sorted(
            (path_rules or DEFAULT_PATH_RULES).items(), key=lambda item: len(item[0]), reverse=True
        )
        self.form_methods_only = form_methods_only

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter if isinstance(self._limiter, RateLimiter) else self._limiter()

    def rule_for(self, path: str, method: str) -> str | None:
        for prefix, rule in self.path_rules:
            if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
                # Form rules only count submissions, not page loads.
                if rule in self.form_methods_only and method in ("GET", "HEAD", "OPTIONS"):
                    return RateLimitRuleType.API.value
                return rule
        return None

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        rule = self.rule_for(request.url.path, request.method.upper())
        client = get_client_ip(request)
        if rule is None or client is None:
            return await call_next(request)

        result = await self.limiter.check_rate_limit(rule, client, request_context(request))
        if not result.allowed:
            error = RateLimitError(
                "Access blocked" if result.blocked else "Too many requests",
                retry_after=result.retry_after,
                metadata={"rule": result.rule},
            )
            response = error_response(error)
            response.headers.update(result.headers())
            return response

        response = await call_next(request)
        response.headers.update(result.headers())
        return response
