"""
Tests for field-level encryption and key lifecycle.
"""

from datetime import UTC, datetime, timedelta

import pytest

from learnacademy.security.audit import AuditEventType, AuditQuery, AuditResult
from learnacademy.security.encryption import (
    DataClassification,
    DecryptionError,
    EncryptionAlgorithm,
    EncryptionService,
    KeyRevokedError,
    KeyStatus,
)
from learnacademy.security.encryption.service import parse_master_key
from learnacademy.security.exceptions import ConfigurationError, NotFoundError, ValidationError

pytestmark = pytest.mark.unit

MASTER_KEY = bytes(range(32))


@pytest.fixture
def service(audit_logger):
    return EncryptionService(master_key=MASTER_KEY, audit_logger=audit_logger)


def _flip_first_char(value: str) -> str:
    return ("B" if value[0] == "A" else "A") + value[1:]


class TestValues:
    @pytest.mark.asyncio
    async def test_round_trip(self, service):
        envelope = await service.encrypt_data("555-0100", DataClassification.CONFIDENTIAL, tenant="north")

        assert envelope.data != "555-0100"
        assert envelope.algorithm.value == "aes-256-gcm"
        assert envelope.metadata.tenant == "north"
        assert await service.decrypt_data(envelope) == "555-0100"

    @pytest.mark.asyncio
    async def test_chacha20_round_trip(self, service):
        envelope = await service.encrypt_data(
            "IBAN DE89", DataClassification.TOP_SECRET, algorithm=EncryptionAlgorithm.CHACHA20_POLY1305
        )
        aes = await service.get_active_key(DataClassification.TOP_SECRET)

        assert envelope.algorithm == EncryptionAlgorithm.CHACHA20_POLY1305
        assert envelope.key_id != aes.id
        assert await service.decrypt_data(envelope) == "IBAN DE89"

    @pytest.mark.asyncio
    async def test_algorithm_mismatch_is_rejected(self, service):
        envelope = await service.encrypt_data("x", DataClassification.INTERNAL)
        forged = envelope.model_copy(update={"algorithm": EncryptionAlgorithm.CHACHA20_POLY1305})

        with pytest.raises(DecryptionError):
            await service.decrypt_data(forged)

    @pytest.mark.asyncio
    async def test_fresh_iv_per_encryption(self, service):
        first = await service.encrypt_data("same", DataClassification.INTERNAL)
        second = await service.encrypt_data("same", DataClassification.INTERNAL)

        assert first.key_id == second.key_id
        assert first.iv != second.iv
        assert first.data != second.data

    @pytest.mark.asyncio
    async def test_envelope_dict_is_accepted(self, service):
        envelope = await service.encrypt_data("allergies: peanuts", DataClassification.TOP_SECRET)

        assert await service.decrypt_data(envelope.model_dump(mode="json")) == "allergies: peanuts"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["auth_tag", "data"])
    async def test_tampering_is_detected(self, service, audit_logger, field):
        envelope = await service.encrypt_data("4111111111111111", DataClassification.TOP_SECRET)
        tampered = envelope.model_copy(update={field: _flip_first_char(getattr(envelope, field))})

        with pytest.raises(DecryptionError):
            await service.decrypt_data(tampered)

        events = await audit_logger.query_logs(AuditQuery(event_types=[AuditEventType.DATA_DECRYPTED]))
        assert events[0].result == AuditResult.FAILURE

    @pytest.mark.asyncio
    async def test_key_id_is_bound_to_ciphertext(self, service):
        first = await service.encrypt_data("a", DataClassification.CONFIDENTIAL)
        other = await service.encrypt_data("b", DataClassification.RESTRICTED)

        forged = first.model_copy(update={"key_id": other.key_id})

        with pytest.raises(DecryptionError):
            await service.decrypt_data(forged)

    @pytest.mark.asyncio
    async def test_unknown_key(self, service):
        envelope = await service.encrypt_data("x", DataClassification.INTERNAL)

        with pytest.raises(NotFoundError):
            await service.decrypt_data(envelope.model_copy(update={"key_id": "missing"}))

    @pytest.mark.asyncio
    async def test_random_keys_without_master_key(self, audit_logger):
        service = EncryptionService(master_key=None, audit_logger=audit_logger)
        service._master_key = None

        envelope = await service.encrypt_data("hello", DataClassification.INTERNAL)

        assert await service.decrypt_data(envelope) == "hello"


class TestKeyLifecycle:
    @pytest.mark.asyncio
    async def test_one_active_key_per_scope(self, service):
        first = await service.get_active_key(DataClassification.CONFIDENTIAL, tenant="north")
        again = await service.get_active_key(DataClassification.CONFIDENTIAL, tenant="north")
        other_tenant = await service.get_active_key(DataClassification.CONFIDENTIAL, tenant="south")

        assert first is again
        assert other_tenant.id != first.id

    @pytest.mark.asyncio
    async def test_generate_key_deprecates_previous(self, service):
        first = await service.generate_key(DataClassification.RESTRICTED)
        second = await service.generate_key(DataClassification.RESTRICTED)

        assert first.status == KeyStatus.DEPRECATED
        assert second.status == KeyStatus.ACTIVE
        assert (await service.get_active_key(DataClassification.RESTRICTED)).id == second.id

    @pytest.mark.asyncio
    async def test_rotation_keeps_old_data_readable(self, service, audit_logger):
        envelope = await service.encrypt_data("grandfathered", DataClassification.CONFIDENTIAL)

        replacement = await service.rotate_key(envelope.key_id)
        newer = await service.encrypt_data("fresh", DataClassification.CONFIDENTIAL)

        assert service.get_key(envelope.key_id).status == KeyStatus.DEPRECATED
        assert newer.key_id == replacement.id
        assert await service.decrypt_data(envelope) == "grandfathered"

        rotated = await audit_logger.query_logs(AuditQuery(event_types=[AuditEventType.KEY_ROTATED]))
        assert rotated[0].metadata["previous_key_id"] == envelope.key_id

    @pytest.mark.asyncio
    async def test_rotating_retired_key_keeps_one_active_key(self, service):
        original = await service.get_active_key(DataClassification.CONFIDENTIAL)
        current = await service.rotate_key(original.id)

        again = await service.rotate_key(original.id)

        active = [
            k for k in service._keys.values()
            if k.scope == original.scope and k.status == KeyStatus.ACTIVE
        ]
        assert active == [again]
        assert current.status == KeyStatus.DEPRECATED
        assert (await service.get_active_key(DataClassification.CONFIDENTIAL)).id == again.id

    @pytest.mark.asyncio
    async def test_rotate_keys_only_rotates_due_keys(self, service):
        due = await service.get_active_key(DataClassification.CONFIDENTIAL)
        fresh = await service.get_active_key(DataClassification.INTERNAL)
        due.next_rotation = datetime.now(UTC) - timedelta(seconds=1)

        rotated = await service.rotate_keys()

        assert len(rotated) == 1
        assert due.status == KeyStatus.DEPRECATED
        assert fresh.status == KeyStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_revoked_key_refuses_decryption(self, service, audit_logger):
        envelope = await service.encrypt_data("secret", DataClassification.RESTRICTED)

        await service.revoke_key(envelope.key_id, "compromised", user_id="admin-1")

        with pytest.raises(KeyRevokedError):
            await service.decrypt_data(envelope)

        revoked = await audit_logger.query_logs(AuditQuery(event_types=[AuditEventType.KEY_REVOKED]))
        assert revoked[0].user_id == "admin-1"
        assert revoked[0].metadata["reason"] == "compromised"

        replacement = await service.encrypt_data("secret", DataClassification.RESTRICTED)
        assert replacement.key_id != envelope.key_id

    @pytest.mark.asyncio
    async def test_get_key_unknown(self, service):
        with pytest.raises(NotFoundError):
            service.get_key("nope")


class TestRecords:
    @pytest.mark.asyncio
    async def test_record_round_trip(self, service):
        record = {"id": "u-1", "email": "parent@example.com", "phone": "5550100", "name": "Ada"}

        encrypted = await service.encrypt_record("users", record)

        assert encrypted["name"] == "Ada"
        assert encrypted["id"] == "u-1"
        assert isinstance(encrypted["email"], dict)
        assert encrypted["email"]["metadata"]["tenant"] == "learn-academy"
        assert "date_of_birth" not in encrypted

        assert await service.decrypt_record("users", encrypted) == record

    @pytest.mark.asyncio
    async def test_missing_required_field(self, service):
        with pytest.raises(ValidationError) as exc_info:
            await service.encrypt_record("payments", {"bank_account": "123"})

        assert exc_info.value.fields == {"card_number": "required"}

    @pytest.mark.asyncio
    async def test_unknown_schema_passes_through(self, service):
        record = {"title": "Algebra"}
        assert await service.encrypt_record("courses", record) == record

    @pytest.mark.asyncio
    async def test_undecryptable_field_stays_encrypted(self, service):
        encrypted = await service.encrypt_record(
            "students", {"medical_info": "asthma", "emergency_contact": "555-0199"}
        )
        medical_key = encrypted["medical_info"]["key_id"]
        await service.revoke_key(medical_key, "rotation drill")

        decrypted = await service.decrypt_record("students", encrypted)

        assert decrypted["emergency_contact"] == "555-0199"
        assert decrypted["medical_info"] == encrypted["medical_info"]


@pytest.mark.asyncio
async def test_stats(service):
    envelope = await service.encrypt_data("x", DataClassification.CONFIDENTIAL)
    await service.decrypt_data(envelope)
    await service.rotate_key(envelope.key_id)

    stats = service.get_encryption_stats()

    assert stats["total_keys"] == 2
    assert stats["active_keys"] == 1
    assert stats["deprecated_keys"] == 1
    assert stats["encryption_operations"] == 1
    assert stats["decryption_operations"] == 1
    assert set(stats["schemas"]) == {"users", "students", "payments"}


@pytest.mark.parametrize("value", ["not-hex", "00" * 16])
def test_parse_master_key_rejects_bad_values(value):
    with pytest.raises(ConfigurationError):
        parse_master_key(value)


def test_parse_master_key():
    assert parse_master_key("ab" * 32) == b"\xab" * 32
    assert parse_master_key(None) is None
