"""Stateless CSRF tokens for form submissions.

Token layout: 13-digit millisecond timestamp, 32 hex chars of salt, then the
64 hex char HMAC-SHA256 of ``timestamp + salt``. Validity is determined
entirely by recomputing the HMAC and checking the age, so there is no server
side token store and a token may be replayed until it expires.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qs

import structlog
from fastapi import APIRouter, Depends, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from learnacademy.security.audit import AuditEventType, AuditLogger, AuditResult, get_audit_logger
from learnacademy.security.exceptions import AuthorizationError, error_response
from learnacademy.security.request_utils import request_context
from learnacademy.security.settings import get_settings

logger = structlog.get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

TIMESTAMP_LENGTH = 13
SALT_LENGTH = 32
SIGNATURE_LENGTH = 64
TOKEN_LENGTH = TIMESTAMP_LENGTH + SALT_LENGTH + SIGNATURE_LENGTH

CSRF_HEADER = "X-CSRF-Token"
CSRF_BODY_FIELDS = ("csrf_token", "csrfToken")

# Tolerated clock skew for tokens minted by another instance.
_MAX_FUTURE_SKEW_MS = 60_000


@dataclass(frozen=True)
class CSRFValidationResult:
    valid: bool
    reason: str | None = None
    expired: bool = False


def _now_ms() -> int:
    return int(time.time() * 1000)


class CSRFTokenService:
    """Mint and verify stateless CSRF tokens."""

    def __init__(
        self,
        secret: str | None = None,
        expiry_seconds: int | None = None,
        refresh_window_seconds: int | None = None,
        audit_logger: AuditLogger | None = None,
    ):
        settings = get_settings()
        self._secret = (secret or settings.secret_for("csrf")).encode("utf-8")
        self.expiry_seconds = expiry_seconds or settings.csrf.expiry_seconds
        self.refresh_window_seconds = (
            refresh_window_seconds or settings.csrf.refresh_window_seconds
        )
        self._audit_logger = audit_logger

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit_logger or get_audit_logger()

    def _sign(self, timestamp: str, salt: str) -> str:
        return hmac.new(self._secret, f"{timestamp}{salt}".encode(), hashlib.sha256).hexdigest()

    def generate(self, metadata: dict[str, Any] | None = None) -> str:
        """Mint a new token."""
        timestamp = str(_now_ms()).zfill(TIMESTAMP_LENGTH)
        salt = secrets.token_hex(SALT_LENGTH // 2)
        token = f"{timestamp}{salt}{self._sign(timestamp, salt)}"
        logger.debug("csrf.token_generated", path=(metadata or {}).get("path"))
        return token

    def check(self, token: str | None) -> CSRFValidationResult:
        """Pure validation without side effects."""
        if not token:
            return CSRFValidationResult(False, "missing_token")
        if len(token) != TOKEN_LENGTH:
            return CSRFValidationResult(False, "invalid_format")

        timestamp = token[:TIMESTAMP_LENGTH]
        salt = token[TIMESTAMP_LENGTH : TIMESTAMP_LENGTH + SALT_LENGTH]
        signature = token[TIMESTAMP_LENGTH + SALT_LENGTH :]

        if not timestamp.isdigit():
            return CSRFValidationResult(False, "invalid_timestamp")

        age_ms = _now_ms() - int(timestamp)
        if age_ms < -_MAX_FUTURE_SKEW_MS:
            return CSRFValidationResult(False, "invalid_timestamp")
        if age_ms >= self.expiry_seconds * 1000:
            return CSRFValidationResult(False, "expired", expired=True)

        if not hmac.compare_digest(signature.encode(), self._sign(timestamp, salt).encode()):
            return CSRFValidationResult(False, "invalid_signature")

        return CSRFValidationResult(True)

    async def validate(
        self, token: str | None, metadata: dict[str, Any] | None = None
    ) -> CSRFValidationResult:
        """Validate a token, recording every failure as a security event."""
        result = self.check(token)
        if not result.valid:
            metadata = metadata or {}
            logger.warning(
                "csrf_validation_failed",
                path=metadata.get("path"),
                method=metadata.get("method"),
                reason=result.reason,
            )
            await self.audit_logger.log_security_event(
                AuditEventType.CSRF_VIOLATION,
                f"CSRF validation failed: {result.reason}",
                result=AuditResult.BLOCKED,
                metadata={"reason": result.reason, "expired": result.expired},
                **{k: v for k, v in metadata.items() if k in _CONTEXT_FIELDS},
            )
        return result

    def get_token_info(self, token: str) -> dict[str, Any] | None:
        """Introspect a token's timestamp without verifying its signature."""
        if len(token) != TOKEN_LENGTH or not token[:TIMESTAMP_LENGTH].isdigit():
            return None
        issued_ms = int(token[:TIMESTAMP_LENGTH])
        age_seconds = (_now_ms() - issued_ms) / 1000
        expires_ms = issued_ms + self.expiry_seconds * 1000
        return {
            "issued_at": datetime.fromtimestamp(issued_ms / 1000, UTC),
            "expires_at": datetime.fromtimestamp(expires_ms / 1000, UTC),
            "age_seconds": age_seconds,
            "is_expired": age_seconds >= self.expiry_seconds,
        }

    async def refresh_if_needed(
        self, token: str | None, metadata: dict[str, Any] | None = None
    ) -> str:
        """Return ``token`` unless it is invalid or close to expiry."""
        if not token or not self.check(token).valid:
            return self.generate(metadata)

        info = self.get_token_info(token)
        remaining = self.expiry_seconds - info["age_seconds"] if info else 0
        if remaining <= self.refresh_window_seconds:
            return self.generate(metadata)
        return token


_CONTEXT_FIELDS = {"ip_address", "user_agent", "method", "path", "request_id", "user_id"}

_csrf_service: CSRFTokenService | None = None


def get_csrf_service() -> CSRFTokenService:
    global _csrf_service
    if _csrf_service is None:
        _csrf_service = CSRFTokenService()
    return _csrf_service


def set_csrf_service(service: CSRFTokenService | None) -> None:
    global _csrf_service
    _csrf_service = service


async def extract_request_token(request: Request) -> str | None:
    """CSRF token from the header, or from a JSON / form body field."""
    header = request.headers.get(CSRF_HEADER)
    if header:
        return header

    body = await request.body()
    if not body:
        return None

    content_type = (request.headers.get("Content-Type") or "").lower()
    if "application/json" in content_type:
        try:
            payload = json.loads(body)
        except json.JSONDecodeError:
            return None
        if isinstance(payload, dict):
            for field in CSRF_BODY_FIELDS:
                if isinstance(payload.get(field), str):
                    return payload[field]
    elif "application/x-www-form-urlencoded" in content_type:
        parsed = parse_qs(body.decode("utf-8", errors="ignore"))
        for field in CSRF_BODY_FIELDS:
            if parsed.get(field):
                return parsed[field][0]
    return None


async def validate_request_csrf(
    request: Request, service: CSRFTokenService | None = None
) -> CSRFValidationResult:
    """Validate the CSRF token carried by a form submission."""
    service = service or get_csrf_service()
    token = await extract_request_token(request)
    return await service.validate(token, request_context(request))


class CSRFMiddleware(BaseHTTPMiddleware):
    """Require a valid CSRF token on state-changing form submissions."""

    _SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}

    def __init__(
        self,
        app: ASGIApp,
        service: CSRFTokenService | None = None,
        protected_paths: list[str] | None = None,
    ):
        super().__init__(app)
        self.service = service
        self.protected_paths = tuple(
            protected_paths if protected_paths is not None else get_settings().csrf.protected_paths
        )

    def _is_protected(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.protected_paths)

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        method = request.method.upper()
        if method in self._SAFE_METHODS or not self._is_protected(request.url.path):
            return await call_next(request)

        body = await request.body()
        request._body = body  # allow downstream handlers to read the body

        result = await validate_request_csrf(request, self.service)
        if not result.valid:
            message = "CSRF token expired" if result.expired else "Invalid CSRF token"
            return error_response(AuthorizationError(message, metadata={"reason": result.reason}))

        return await call_next(request)


router = APIRouter(tags=["CSRF"])


@router.get("/api/csrf-token")
async def issue_csrf_token(
    request: Request,
    response: Response,
    service: CSRFTokenService = Depends(get_csrf_service),
) -> dict[str, Any]:
    """Mint a token for a form render."""
    token = service.generate(request_context(request))
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
    response.headers["Pragma"] = "no-cache"
    return {"csrf_token": token, "expires_in": service.expiry_seconds}
