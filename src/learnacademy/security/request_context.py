"""
Request-scoped logging context.

Every request gets a correlation id, taken from the configured header when
the caller supplies a well-formed one and generated otherwise. The id is
bound into structlog's contextvars for the lifetime of the request and
echoed on the response.
"""

import re
import time
import uuid
from collections.abc import Awaitable, Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from learnacademy.security.request_utils import get_client_ip
from learnacademy.security.settings import get_settings

logger = structlog.get_logger("http")

CallNext = Callable[[Request], Awaitable[Response]]

_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


def resolve_correlation_id(value: str | None) -> str:
    if value and _CORRELATION_ID_RE.match(value):
        return value
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        header_name: str | None = None,
        enable_logging: bool | None = None,
    ):
        super().__init__(app)
        observability = get_settings().observability
        self.header_name = header_name or observability.correlation_id_header
        self.enable_logging = (
            observability.enable_request_logging if enable_logging is None else enable_logging
        )

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        correlation_id = resolve_correlation_id(request.headers.get(self.header_name))
        request.state.correlation_id = correlation_id

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            correlation_id=correlation_id,
            method=request.method,
            path=request.url.path,
        )
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception(
                "http.request.failed",
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            raise
        finally:
            structlog.contextvars.clear_contextvars()

        response.headers[self.header_name] = correlation_id
        if self.enable_logging:
            logger.info(
                "http.request.completed",
                correlation_id=correlation_id,
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                client_ip=get_client_ip(request),
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
        return response
