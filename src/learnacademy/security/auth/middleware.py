"""
Authentication and authorization middleware.

Per request: extract credential, verify it, check role, permission and MFA
requirements of the endpoint policy, then forward the verified identity to
downstream handlers as ``x-user-*`` headers and ``request.state.auth_context``.
"""

from collections.abc import Awaitable, Callable
from typing import Any, Protocol
from urllib.parse import quote, unquote

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from learnacademy.security.audit import (
    AuditEventType,
    AuditLogger,
    AuditResult,
    AuditSeverity,
    get_audit_logger,
)
from learnacademy.security.exceptions import (
    ApplicationError,
    AuthenticationError,
    AuthorizationError,
    error_response,
)
from learnacademy.security.request_utils import request_context

from .core import (
    APIKeyService,
    AuthContext,
    CredentialError,
    JWTService,
    SessionService,
    TokenType,
)
from .policies import EndpointPolicy, PolicyTable

logger = structlog.get_logger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

FORWARDED_HEADERS = ("x-user-id", "x-user-email", "x-user-role", "x-user-permissions", "x-session-id")
# Forwarded values are percent-encoded UTF-8; read them back with ``forwarded_identity``.
FORWARDED_SAFE_CHARS = "@.+-_,:~"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Cache-Control": "no-store",
}


class IPBlocklist(Protocol):
    def is_ip_blocked(self, ip_address: str) -> bool: ...


def extract_credential(request: Request) -> tuple[TokenType, str] | None:
    """Find the first credential in header/cookie precedence order."""
    authorization = request.headers.get("authorization", "")
    scheme, _, value = authorization.partition(" ")
    value = value.strip()
    if value:
        match scheme.lower():
            case "bearer":
                return TokenType.BEARER, value
            case "jwt":
                return TokenType.JWT, value
            case "apikey":
                return TokenType.API_KEY, value

    api_key = request.headers.get("x-api-key")
    if api_key:
        return TokenType.API_KEY, api_key

    jwt_cookie = request.cookies.get("jwt_token")
    if jwt_cookie:
        return TokenType.JWT, jwt_cookie

    session_id = request.cookies.get("session_id")
    if session_id:
        return TokenType.SESSION, session_id

    return None


class Authenticator:
    """Credential verification and policy enforcement, independent of ASGI."""

    def __init__(
        self,
        jwt_service: JWTService | None = None,
        api_key_service: APIKeyService | None = None,
        session_service: SessionService | None = None,
        policies: PolicyTable | None = None,
        audit_logger: AuditLogger | None = None,
    ):
        self.jwt_service = jwt_service or JWTService()
        self.api_key_service = api_key_service or APIKeyService()
        self.session_service = session_service or SessionService()
        self.policies = policies or PolicyTable()
        self._audit_logger = audit_logger

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit_logger or get_audit_logger()

    async def verify(self, token_type: TokenType, credential: str) -> AuthContext:
        match token_type:
            case TokenType.BEARER | TokenType.JWT:
                context = await self.jwt_service.verify_token(credential)
            case TokenType.API_KEY:
                context = await self.api_key_service.verify_api_key(credential)
            case TokenType.SESSION:
                context = await self.session_service.verify_session(credential)
        return context.model_copy(update={"token_type": token_type})

    @staticmethod
    def authorize(context: AuthContext, policy: EndpointPolicy) -> str | None:
        """Return the first unmet requirement, or None when access is allowed."""
        if policy.roles and not context.has_role(policy.roles):
            return "insufficient_role"
        if policy.permissions and not context.has_any_permission(policy.permissions):
            return "insufficient_permissions"
        if policy.mfa_required and not context.mfa_verified:
            return "mfa_required"
        return None

    async def authenticate(self, request: Request) -> AuthContext | None:
        """
        Authenticate ``request`` against its endpoint policy.

        Returns:
            The verified context, or None for public endpoints without credentials

        Raises:
            AuthenticationError: missing or invalid credential (401)
            AuthorizationError: role, permission or MFA requirement unmet (403)
        """
        policy = self.policies.resolve(request.url.path, request.method)
        credential = extract_credential(request)

        if credential is None:
            if not policy.required:
                return None
            await self._record_failure(request, AuditEventType.AUTHENTICATION_FAILED, "missing_credentials")
            raise AuthenticationError()

        token_type, value = credential
        try:
            context = await self.verify(token_type, value)
        except CredentialError as e:
            if not policy.required:
                # Bad credentials on a public endpoint are ignored, not fatal.
                logger.info("auth.ignored_invalid_credential", path=request.url.path, reason=e.reason)
                return None
            await self._record_failure(
                request, AuditEventType.AUTHENTICATION_FAILED, e.reason, token_type=token_type.value
            )
            raise

        if policy.required:
            reason = self.authorize(context, policy)
            if reason is not None:
                await self._record_failure(
                    request,
                    AuditEventType.AUTHORIZATION_FAILED,
                    reason,
                    context=context,
                    required_roles=sorted(r.value for r in policy.roles),
                    required_permissions=sorted(policy.permissions),
                    mfa_required=policy.mfa_required,
                )
                raise AuthorizationError(
                    "MFA verification required" if reason == "mfa_required" else "Insufficient permissions",
                    metadata={"reason": reason},
                )

        await self.audit_logger.log_event(
            AuditEventType.AUTHENTICATION_SUCCESS,
            severity=AuditSeverity.INFO,
            result=AuditResult.SUCCESS,
            description=f"Authenticated via {token_type.value}",
            user_id=context.user_id,
            user_email=context.email,
            user_role=context.role.value,
            session_id=context.session_id,
            metadata={"token_type": token_type.value},
            **request_context(request),
        )
        return context

    async def _record_failure(
        self,
        request: Request,
        event_type: AuditEventType,
        reason: str,
        context: AuthContext | None = None,
        **details: Any,
    ) -> None:
        logger.warning(
            "auth.denied",
            event_type=event_type.value,
            reason=reason,
            path=request.url.path,
            method=request.method,
        )
        actor = {}
        if context is not None:
            actor = {
                "user_id": context.user_id,
                "user_email": context.email,
                "user_role": context.role.value,
                "session_id": context.session_id,
            }
        await self.audit_logger.log_security_event(
            event_type,
            f"{event_type.value.replace('_', ' ').capitalize()}: {reason}",
            severity=AuditSeverity.MEDIUM,
            metadata={"reason": reason, **details},
            **actor,
            **request_context(request),
        )

    def get_auth_stats(self) -> dict[str, Any]:
        return {
            **self.api_key_service.stats(),
            "blacklisted_tokens": self.jwt_service.blacklist_size(),
            "endpoint_policies": len(self.policies),
        }


def _denied(error: ApplicationError) -> Response:
    response = error_response(error)
    response.headers.update(SECURITY_HEADERS)
    return response


def forwarded_identity(request: Request) -> dict[str, str]:
    """Decoded identity headers set by the middleware."""
    return {name: unquote(request.headers[name]) for name in FORWARDED_HEADERS if name in request.headers}


def _forward_identity(request: Request, context: AuthContext | None) -> None:
    """Replace client-supplied identity headers with verified ones."""
    headers = [
        (name, value)
        for name, value in request.scope["headers"]
        if name.decode("latin-1").lower() not in FORWARDED_HEADERS
    ]
    if context is not None:
        forwarded = {
            "x-user-id": context.user_id,
            "x-user-email": context.email,
            "x-user-role": context.role.value,
            "x-user-permissions": ",".join(sorted(context.permissions)),
        }
        if context.session_id:
            forwarded["x-session-id"] = context.session_id
        headers.extend(
            (k.encode("latin-1"), quote(v, safe=FORWARDED_SAFE_CHARS).encode("ascii"))
            for k, v in forwarded.items()
        )
    request.scope["headers"] = headers
    # Drop Starlette's cached header view so downstream sees the new list.
    request.__dict__.pop("_headers", None)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app: ASGIApp,
        authenticator: Authenticator | Callable[[], Authenticator],
        blocklist: IPBlocklist | Callable[[], IPBlocklist | None] | None = None,
    ):
        super().__init__(app)
        self._authenticator = authenticator
        self._blocklist = blocklist

    @property
    def authenticator(self) -> Authenticator:
        if isinstance(self._authenticator, Authenticator):
            return self._authenticator
        return self._authenticator()

    @property
    def blocklist(self) -> IPBlocklist | None:
        if self._blocklist is None or hasattr(self._blocklist, "is_ip_blocked"):
            return self._blocklist
        return self._blocklist()

    async def dispatch(self, request: Request, call_next: CallNext) -> Response:
        _forward_identity(request, None)

        ip_address = request_context(request)["ip_address"]
        blocklist = self.blocklist
        if ip_address and blocklist is not None and blocklist.is_ip_blocked(ip_address):
            logger.warning("auth.blocked_ip", ip_address=ip_address, path=request.url.path)
            return _denied(AuthorizationError("Access denied", metadata={"reason": "ip_blocked"}))

        try:
            context = await self.authenticator.authenticate(request)
        except (AuthenticationError, AuthorizationError) as e:
            return _denied(e)

        request.state.auth_context = context
        _forward_identity(request, context)
        return await call_next(request)
