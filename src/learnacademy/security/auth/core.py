"""
Authentication core: identity model, token verification, API keys, sessions.

This module provides:
- AuthContext built fresh per authenticated request
- JWT issue/verify/revoke with PyJWT and a Redis blacklist
- API keys stored hashed
- Server-side sessions in Redis with an in-memory fallback
"""

import hashlib
import json
import secrets
import time
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

import jwt
import structlog
from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field
from redis.asyncio import Redis
from redis.exceptions import RedisError

from learnacademy.security.exceptions import AuthenticationError, AuthorizationError
from learnacademy.security.settings import get_settings

logger = structlog.get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid or expired credentials"


class UserRole(str, Enum):
    """User roles."""

    ADMIN = "admin"
    TEACHER = "teacher"
    PARENT = "parent"
    STUDENT = "student"
    GUEST = "guest"


class TokenType(str, Enum):
    """Credential types accepted by the middleware."""

    BEARER = "bearer"
    JWT = "jwt"
    API_KEY = "api_key"
    SESSION = "session"


class AuthContext(BaseModel):
    """Identity attached to an authenticated request. Never persisted as-is."""

    model_config = ConfigDict(extra="forbid")

    user_id: str
    email: str
    role: UserRole
    permissions: set[str] = Field(default_factory=set)
    session_id: str | None = None
    token_id: str | None = None
    token_type: TokenType | None = None
    mfa_verified: bool = False
    last_activity: datetime = Field(default_factory=lambda: datetime.now(UTC))
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    def has_role(self, roles: set[UserRole] | list[UserRole] | None) -> bool:
        return not roles or self.role in roles

    def has_any_permission(self, permissions: set[str] | list[str] | None) -> bool:
        """Admins bypass permission checks; otherwise any one permission suffices."""
        if not permissions or self.is_admin:
            return True
        return any(p in self.permissions for p in permissions)


class CredentialError(AuthenticationError):
    """Credential rejected. ``reason`` is for logs only; the message stays uniform."""

    def __init__(self, reason: str):
        super().__init__(INVALID_CREDENTIALS_MESSAGE, metadata={"reason": reason})
        self.reason = reason


# ----------------------------------------------------------------------
# JWT
# ----------------------------------------------------------------------


class JWTService:
    """JWT issue and verification with a revocation blacklist."""

    REQUIRED_CLAIMS = ("sub", "email", "role")

    def __init__(
        self,
        secret: str | None = None,
        algorithm: str | None = None,
        issuer: str | None = None,
        audience: str | None = None,
        redis_client: Redis | None = None,
    ):
        settings = get_settings()
        self.secret = secret or settings.secret_for("jwt")
        self.algorithm = algorithm or settings.jwt.algorithm
        self.issuer = issuer or settings.jwt.issuer
        self.audience = audience or settings.jwt.audience
        self.default_expiry = timedelta(hours=settings.jwt.access_token_expire_hours)
        self.redis_client = redis_client
        self._memory_blacklist: dict[str, float] = {}

    def create_token(self, context: AuthContext, expires_in: timedelta | None = None) -> str:
        """Issue a signed token for ``context``."""
        now = datetime.now(UTC)
        claims = {
            "sub": context.user_id,
            "email": context.email,
            "role": context.role.value,
            "permissions": sorted(context.permissions),
            "mfa": context.mfa_verified,
            "sid": context.session_id,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + (expires_in or self.default_expiry),
            "jti": secrets.token_urlsafe(16),
        }
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    async def verify_token(self, token: str) -> AuthContext:
        """
        Verify signature, expiry, issuer, audience, payload shape and blacklist.

        Raises:
            CredentialError: with the specific rejection reason
        """
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": ["exp", "iss", "aud"]},
            )
        except jwt.ExpiredSignatureError:
            raise CredentialError("token_expired") from None
        except jwt.InvalidIssuerError:
            raise CredentialError("invalid_issuer") from None
        except jwt.InvalidAudienceError:
            raise CredentialError("invalid_audience") from None
        except jwt.InvalidSignatureError:
            raise CredentialError("invalid_signature") from None
        except jwt.PyJWTError as e:
            raise CredentialError(f"invalid_token:{type(e).__name__}") from None

        missing = [claim for claim in self.REQUIRED_CLAIMS if not claims.get(claim)]
        if missing:
            raise CredentialError("invalid_payload")
        try:
            role = UserRole(claims["role"])
        except ValueError:
            raise CredentialError("invalid_role") from None

        jti = claims.get("jti")
        if jti and await self.is_token_revoked(jti):
            raise CredentialError("token_revoked")

        return AuthContext(
            user_id=str(claims["sub"]),
            email=claims["email"],
            role=role,
            permissions=set(claims.get("permissions") or []),
            session_id=claims.get("sid"),
            token_id=jti,
            mfa_verified=bool(claims.get("mfa", False)),
        )

    async def revoke_token(self, token: str) -> bool:
        """Blacklist a token's ``jti`` until it would have expired."""
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options={"verify_exp": False},
            )
        except jwt.PyJWTError as e:
            logger.warning("auth.revoke_invalid_token", error=str(e))
            return False

        jti = claims.get("jti")
        if not jti:
            return False

        exp = float(claims.get("exp") or time.time() + self.default_expiry.total_seconds())
        ttl = max(1, int(exp - time.time()))
        self._memory_blacklist[jti] = exp
        if self.redis_client is not None:
            try:
                await self.redis_client.setex(f"blacklist:{jti}", ttl, "1")
            except RedisError as e:
                logger.warning("auth.blacklist_store_unavailable", error=str(e))

        logger.info("auth.token_revoked", jti=jti)
        return True

    async def is_token_revoked(self, jti: str) -> bool:
        exp = self._memory_blacklist.get(jti)
        if exp is not None:
            if exp > time.time():
                return True
            del self._memory_blacklist[jti]
        if self.redis_client is not None:
            try:
                return bool(await self.redis_client.exists(f"blacklist:{jti}"))
            except RedisError as e:
                logger.warning("auth.blacklist_store_unavailable", error=str(e))
        return False

    def blacklist_size(self) -> int:
        now = time.time()
        return sum(1 for exp in self._memory_blacklist.values() if exp > now)


# ----------------------------------------------------------------------
# API keys
# ----------------------------------------------------------------------


class ApiKeyRecord(BaseModel):
    key_hash: str
    name: str
    user_id: str
    email: str
    role: UserRole
    permissions: set[str] = Field(default_factory=set)
    active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    expires_at: datetime | None = None
    last_used: datetime | None = None


class APIKeyService:
    """API keys, stored only as SHA-256 hashes."""

    def __init__(self) -> None:
        self._keys: dict[str, ApiKeyRecord] = {}

    @staticmethod
    def hash_key(api_key: str) -> str:
        return hashlib.sha256(api_key.encode()).hexdigest()

    def add_api_key(
        self,
        name: str,
        user_id: str,
        email: str,
        role: UserRole,
        permissions: set[str] | None = None,
        expires_in: timedelta | None = None,
    ) -> str:
        """Create a key and return its plaintext (only shown once)."""
        api_key = f"la_{secrets.token_urlsafe(32)}"
        key_hash = self.hash_key(api_key)
        self._keys[key_hash] = ApiKeyRecord(
            key_hash=key_hash,
            name=name,
            user_id=user_id,
            email=email,
            role=role,
            permissions=permissions or set(),
            expires_at=datetime.now(UTC) + expires_in if expires_in else None,
        )
        logger.info("auth.api_key_created", name=name, user_id=user_id)
        return api_key

    def revoke_api_key(self, api_key: str) -> bool:
        record = self._keys.get(self.hash_key(api_key))
        if record is None or not record.active:
            return False
        record.active = False
        logger.info("auth.api_key_revoked", name=record.name)
        return True

    async def verify_api_key(self, api_key: str) -> AuthContext:
        record = self._keys.get(self.hash_key(api_key))
        if record is None:
            raise CredentialError("unknown_api_key")
        if not record.active:
            raise CredentialError("api_key_revoked")
        if record.expires_at is not None and record.expires_at <= datetime.now(UTC):
            raise CredentialError("api_key_expired")

        record.last_used = datetime.now(UTC)
        return AuthContext(
            user_id=record.user_id,
            email=record.email,
            role=record.role,
            permissions=set(record.permissions),
            token_id=record.key_hash[:16],
            # A key is a single factor; MFA-gated routes need an interactive login.
            mfa_verified=False,
            metadata={"api_key_name": record.name},
        )

    def stats(self) -> dict[str, int]:
        return {
            "total_api_keys": len(self._keys),
            "active_api_keys": sum(1 for r in self._keys.values() if r.active),
        }


# ----------------------------------------------------------------------
# Sessions
# ----------------------------------------------------------------------


class SessionService:
    """Server-side sessions keyed by an opaque id."""

    def __init__(self, redis_client: Redis | None = None, min_id_length: int | None = None):
        self.redis_client = redis_client
        self.min_id_length = min_id_length or get_settings().jwt.min_session_id_length
        self._memory: dict[str, tuple[float, dict[str, Any]]] = {}

    async def create_session(self, context: AuthContext, ttl: int = 3600) -> str:
        session_id = secrets.token_urlsafe(32)
        payload = context.model_dump(mode="json", exclude={"session_id", "token_type"})
        if self.redis_client is not None:
            try:
                await self.redis_client.setex(f"session:{session_id}", ttl, json.dumps(payload))
                return session_id
            except RedisError as e:
                logger.warning("auth.session_store_unavailable", error=str(e))
        self._memory[session_id] = (time.time() + ttl, payload)
        return session_id

    async def _load(self, session_id: str) -> dict[str, Any] | None:
        if self.redis_client is not None:
            try:
                raw = await self.redis_client.get(f"session:{session_id}")
                if raw:
                    return json.loads(raw)
            except RedisError as e:
                logger.warning("auth.session_store_unavailable", error=str(e))
        entry = self._memory.get(session_id)
        if entry is None:
            return None
        expires_at, payload = entry
        if expires_at <= time.time():
            del self._memory[session_id]
            return None
        return payload

    async def verify_session(self, session_id: str) -> AuthContext:
        if len(session_id) < self.min_id_length:
            raise CredentialError("invalid_session_format")
        payload = await self._load(session_id)
        if payload is None:
            raise CredentialError("session_not_found")
        payload["session_id"] = session_id
        return AuthContext.model_validate(payload)

    async def delete_session(self, session_id: str) -> bool:
        removed = self._memory.pop(session_id, None) is not None
        if self.redis_client is not None:
            try:
                removed = bool(await self.redis_client.delete(f"session:{session_id}")) or removed
            except RedisError as e:
                logger.warning("auth.session_store_unavailable", error=str(e))
        return removed


# ----------------------------------------------------------------------
# Route dependencies
# ----------------------------------------------------------------------


def get_current_context(request: Request) -> AuthContext:
    """FastAPI dependency returning the context set by the middleware."""
    context = getattr(request.state, "auth_context", None)
    if context is None:
        raise AuthenticationError()
    return context


def get_optional_context(request: Request) -> AuthContext | None:
    return getattr(request.state, "auth_context", None)


def require_roles(*roles: UserRole):
    """Dependency factory enforcing role membership inside a route."""

    def dependency(request: Request) -> AuthContext:
        context = get_current_context(request)
        if not context.has_role(set(roles)):
            raise AuthorizationError(metadata={"required_roles": [r.value for r in roles]})
        return context

    return dependency
