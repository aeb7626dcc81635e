"""
Authentication, authorization and CSRF protection.
"""

from .core import (
    APIKeyService,
    AuthContext,
    CredentialError,
    JWTService,
    SessionService,
    TokenType,
    UserRole,
    get_current_context,
    get_optional_context,
    require_roles,
)
from .csrf import CSRFMiddleware, CSRFTokenService, get_csrf_service, set_csrf_service
from .middleware import AuthenticationMiddleware, Authenticator, extract_credential, forwarded_identity
from .policies import DEFAULT_POLICIES, EndpointPolicy, PolicyTable

_authenticator: Authenticator | None = None


def get_authenticator() -> Authenticator:
    """Get the process-wide authenticator."""
    global _authenticator
    if _authenticator is None:
        _authenticator = Authenticator()
    return _authenticator


def set_authenticator(authenticator: Authenticator | None) -> None:
    global _authenticator
    _authenticator = authenticator


__all__ = [
    "APIKeyService",
    "AuthContext",
    "AuthenticationMiddleware",
    "Authenticator",
    "CSRFMiddleware",
    "CSRFTokenService",
    "CredentialError",
    "DEFAULT_POLICIES",
    "EndpointPolicy",
    "JWTService",
    "PolicyTable",
    "SessionService",
    "TokenType",
    "UserRole",
    "extract_credential",
    "forwarded_identity",
    "get_authenticator",
    "get_csrf_service",
    "get_current_context",
    "get_optional_context",
    "require_roles",
    "set_authenticator",
    "set_csrf_service",
]
