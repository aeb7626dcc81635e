"""
Tests for JWT, API key and session credential services.
"""

from datetime import timedelta

import jwt as pyjwt
import pytest

from learnacademy.security.auth import (
    APIKeyService,
    AuthContext,
    CredentialError,
    JWTService,
    SessionService,
    UserRole,
)

pytestmark = pytest.mark.unit

SECRET = "jwt-test-secret"


@pytest.fixture
def context():
    return AuthContext(
        user_id="teacher-1",
        email="teacher@learn.academy",
        role=UserRole.TEACHER,
        permissions={"classes:read"},
        session_id="s" * 40,
    )


@pytest.fixture
def jwt_service():
    return JWTService(secret=SECRET)


class TestAuthContext:
    def test_admin_bypasses_permissions(self):
        admin = AuthContext(user_id="a", email="a@x.io", role=UserRole.ADMIN)
        assert admin.has_any_permission({"anything:write"}) is True

    def test_any_permission_suffices(self, context):
        assert context.has_any_permission({"classes:read", "classes:manage"}) is True
        assert context.has_any_permission({"users:write"}) is False

    def test_role_membership(self, context):
        assert context.has_role({UserRole.ADMIN, UserRole.TEACHER}) is True
        assert context.has_role({UserRole.ADMIN}) is False
        assert context.has_role(None) is True


class TestJWTService:
    @pytest.mark.asyncio
    async def test_round_trip(self, jwt_service, context):
        token = jwt_service.create_token(context)

        verified = await jwt_service.verify_token(token)

        assert verified.user_id == "teacher-1"
        assert verified.role == UserRole.TEACHER
        assert verified.permissions == {"classes:read"}
        assert verified.token_id

    @pytest.mark.asyncio
    async def test_expired_token(self, jwt_service, context):
        token = jwt_service.create_token(context, expires_in=timedelta(seconds=-5))

        with pytest.raises(CredentialError) as exc_info:
            await jwt_service.verify_token(token)
        assert exc_info.value.reason == "token_expired"

    @pytest.mark.asyncio
    async def test_wrong_issuer(self, context):
        token = JWTService(secret=SECRET, issuer="someone-else").create_token(context)

        with pytest.raises(CredentialError) as exc_info:
            await JWTService(secret=SECRET).verify_token(token)
        assert exc_info.value.reason == "invalid_issuer"

    @pytest.mark.asyncio
    async def test_wrong_audience(self, context):
        token = JWTService(secret=SECRET, audience="other-api").create_token(context)

        with pytest.raises(CredentialError) as exc_info:
            await JWTService(secret=SECRET).verify_token(token)
        assert exc_info.value.reason == "invalid_audience"

    @pytest.mark.asyncio
    async def test_bad_signature(self, context):
        token = JWTService(secret="another-secret").create_token(context)

        with pytest.raises(CredentialError) as exc_info:
            await JWTService(secret=SECRET).verify_token(token)
        assert exc_info.value.reason == "invalid_signature"

    @pytest.mark.asyncio
    async def test_missing_claims(self, jwt_service):
        token = pyjwt.encode(
            {"sub": "u1", "iss": "learn-academy", "aud": "learn-academy-api", "exp": 9999999999},
            SECRET,
            algorithm="HS256",
        )

        with pytest.raises(CredentialError) as exc_info:
            await jwt_service.verify_token(token)
        assert exc_info.value.reason == "invalid_payload"

    @pytest.mark.asyncio
    async def test_revoked_token(self, jwt_service, context):
        token = jwt_service.create_token(context)

        assert await jwt_service.revoke_token(token) is True
        with pytest.raises(CredentialError) as exc_info:
            await jwt_service.verify_token(token)
        assert exc_info.value.reason == "token_revoked"
        assert jwt_service.blacklist_size() == 1

    @pytest.mark.asyncio
    async def test_revocation_is_shared_through_redis(self, fake_redis, context):
        issuer = JWTService(secret=SECRET, redis_client=fake_redis)
        other_instance = JWTService(secret=SECRET, redis_client=fake_redis)
        token = issuer.create_token(context)

        await issuer.revoke_token(token)

        with pytest.raises(CredentialError):
            await other_instance.verify_token(token)


class TestAPIKeyService:
    @pytest.mark.asyncio
    async def test_verify_and_revoke(self):
        service = APIKeyService()
        api_key = service.add_api_key("reporting", "svc-1", "svc@learn.academy", UserRole.ADMIN)

        context = await service.verify_api_key(api_key)
        assert context.user_id == "svc-1"
        assert context.metadata["api_key_name"] == "reporting"
        assert context.mfa_verified is False

        assert service.revoke_api_key(api_key) is True
        with pytest.raises(CredentialError) as exc_info:
            await service.verify_api_key(api_key)
        assert exc_info.value.reason == "api_key_revoked"
        assert service.stats() == {"total_api_keys": 1, "active_api_keys": 0}

    @pytest.mark.asyncio
    async def test_expired_key(self):
        service = APIKeyService()
        live = service.add_api_key("live", "u", "u@x.io", UserRole.STUDENT, expires_in=timedelta(hours=1))
        stale = service.add_api_key("stale", "u", "u@x.io", UserRole.STUDENT, expires_in=timedelta(seconds=-1))

        assert (await service.verify_api_key(live)).user_id == "u"
        with pytest.raises(CredentialError) as exc_info:
            await service.verify_api_key(stale)
        assert exc_info.value.reason == "api_key_expired"

    @pytest.mark.asyncio
    async def test_unknown_key(self):
        with pytest.raises(CredentialError):
            await APIKeyService().verify_api_key("la_nope")

    def test_only_hash_is_stored(self):
        service = APIKeyService()
        api_key = service.add_api_key("k", "u", "u@x.io", UserRole.STUDENT)
        assert api_key not in service._keys
        assert APIKeyService.hash_key(api_key) in service._keys


class TestSessionService:
    @pytest.mark.asyncio
    async def test_memory_session_lifecycle(self, context):
        service = SessionService()
        session_id = await service.create_session(context)

        restored = await service.verify_session(session_id)
        assert restored.user_id == context.user_id
        assert restored.session_id == session_id

        assert await service.delete_session(session_id) is True
        with pytest.raises(CredentialError):
            await service.verify_session(session_id)

    @pytest.mark.asyncio
    async def test_redis_session(self, fake_redis, context):
        service = SessionService(redis_client=fake_redis)
        session_id = await service.create_session(context, ttl=60)

        assert await fake_redis.exists(f"session:{session_id}") == 1
        assert (await service.verify_session(session_id)).email == context.email

    @pytest.mark.asyncio
    async def test_short_session_id_rejected(self):
        with pytest.raises(CredentialError) as exc_info:
            await SessionService().verify_session("short")
        assert exc_info.value.reason == "invalid_session_format"
