"""
Field-level encryption at rest with key rotation.

AES-256-GCM (or ChaCha20-Poly1305) with a fresh 96-bit IV per call and the
key id bound in as associated data. Envelopes name the key that produced
them, so rotated-out (deprecated) keys keep decrypting old data; only
revoked keys refuse.
"""

import asyncio
import base64
import os
import time
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM, ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from learnacademy.security.audit import AuditEventType, AuditLogger, AuditResult, get_audit_logger
from learnacademy.security.exceptions import (
    BusinessLogicError,
    ConfigurationError,
    ErrorSeverity,
    NotFoundError,
    ValidationError,
)
from learnacademy.security.settings import get_settings

from .models import (
    DataClassification,
    EncryptedData,
    EncryptionAlgorithm,
    EncryptionKey,
    EncryptionMetadata,
    KeyStatus,
)
from .schemas import DEFAULT_SCHEMAS, EncryptionSchema

logger = structlog.get_logger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32


class KeyRevokedError(BusinessLogicError):
    code = "KEY_REVOKED"
    severity = ErrorSeverity.HIGH


class DecryptionError(BusinessLogicError):
    code = "DECRYPTION_FAILED"
    severity = ErrorSeverity.HIGH


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def _cipher(key: EncryptionKey) -> AESGCM | ChaCha20Poly1305:
    if key.algorithm == EncryptionAlgorithm.CHACHA20_POLY1305:
        return ChaCha20Poly1305(key.key)
    return AESGCM(key.key)


def parse_master_key(value: str | None) -> bytes | None:
    if not value:
        return None
    try:
        key = bytes.fromhex(value)
    except ValueError:
        raise ConfigurationError("Master encryption key must be hex encoded") from None
    if len(key) < KEY_LENGTH:
        raise ConfigurationError("Master encryption key must be at least 32 bytes")
    return key


class EncryptionService:
    """Encrypts values and records under per-scope keys."""

    def __init__(
        self,
        master_key: bytes | None = None,
        schemas: tuple[EncryptionSchema, ...] = DEFAULT_SCHEMAS,
        default_rotation_days: int | None = None,
        audit_logger: AuditLogger | None = None,
    ):
        settings = get_settings()
        self._master_key = master_key or parse_master_key(settings.encryption.master_key)
        self.default_rotation_days = (
            default_rotation_days or settings.encryption.default_rotation_days
        )
        self.schemas: dict[str, EncryptionSchema] = {s.table: s for s in schemas}
        self._keys: dict[str, EncryptionKey] = {}
        self._active: dict[tuple[DataClassification, EncryptionAlgorithm, str | None], str] = {}
        self._audit_logger = audit_logger
        self._running = False
        self._tasks: set[asyncio.Task[None]] = set()

        if self._master_key is None:
            logger.warning("encryption.master_key_missing_using_random_keys")

    @property
    def audit_logger(self) -> AuditLogger:
        return self._audit_logger or get_audit_logger()

    # ------------------------------------------------------------------
    # Keys
    # ------------------------------------------------------------------

    def _new_key_id(
        self, classification: DataClassification, algorithm: EncryptionAlgorithm, tenant: str | None
    ) -> str:
        stamp = int(time.time() * 1000)
        while True:
            key_id = f"{classification.value}-{algorithm.value}-{tenant or 'default'}-{stamp}"
            if key_id not in self._keys:
                return key_id
            stamp += 1

    def _key_material(self, key_id: str) -> bytes:
        if self._master_key is None:
            return os.urandom(KEY_LENGTH)
        return HKDF(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=os.urandom(16),
            info=key_id.encode("utf-8"),
        ).derive(self._master_key)

    def _create_key(
        self,
        classification: DataClassification,
        algorithm: EncryptionAlgorithm,
        tenant: str | None,
        rotation_days: int | None,
    ) -> EncryptionKey:
        # Synchronous so a scope never gets two active keys.
        previous_id = self._active.get((classification, algorithm, tenant))
        if previous_id is not None:
            self._keys[previous_id].status = KeyStatus.DEPRECATED
        key_id = self._new_key_id(classification, algorithm, tenant)
        key = EncryptionKey(
            id=key_id,
            key=self._key_material(key_id),
            algorithm=algorithm,
            classification=classification,
            tenant=tenant,
            rotation_interval=timedelta(days=rotation_days or self.default_rotation_days),
        )
        self._keys[key_id] = key
        self._active[key.scope] = key_id
        return key

    async def _audit_key_event(self, event_type: AuditEventType, key: EncryptionKey, **extra: Any) -> None:
        await self.audit_logger.log_event(
            event_type,
            description=f"Encryption key {event_type.value}: {key.id}",
            resource={"type": "encryption_key", "id": key.id},
            metadata={
                "key_id": key.id,
                "classification": key.classification.value,
                "tenant": key.tenant,
                "algorithm": key.algorithm.value,
                **extra,
            },
        )

    async def generate_key(
        self,
        classification: DataClassification,
        algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_GCM,
        tenant: str | None = None,
        rotation_days: int | None = None,
    ) -> EncryptionKey:
        """Mint a new active key for the scope, replacing any current one."""
        key = self._create_key(classification, algorithm, tenant, rotation_days)
        logger.info("encryption.key_generated", key_id=key.id, classification=classification.value)
        await self._audit_key_event(AuditEventType.KEY_GENERATED, key)
        return key

    async def get_active_key(
        self,
        classification: DataClassification,
        algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_GCM,
        tenant: str | None = None,
        rotation_days: int | None = None,
    ) -> EncryptionKey:
        key_id = self._active.get((classification, algorithm, tenant))
        if key_id is not None:
            return self._keys[key_id]
        key = self._create_key(classification, algorithm, tenant, rotation_days)
        logger.info("encryption.key_generated", key_id=key.id, classification=classification.value)
        await self._audit_key_event(AuditEventType.KEY_GENERATED, key)
        return key

    def get_key(self, key_id: str) -> EncryptionKey:
        key = self._keys.get(key_id)
        if key is None:
            raise NotFoundError("Encryption key", key_id)
        return key

    async def rotate_key(self, key_id: str) -> EncryptionKey:
        """
        Mint a replacement for ``key_id``'s scope. Whatever key is active for
        the scope is deprecated, so rotating an already retired key still
        leaves exactly one active key.
        """
        old = self.get_key(key_id)
        replacement = self._create_key(
            old.classification,
            old.algorithm,
            old.tenant,
            old.rotation_interval.days,
        )
        logger.info("encryption.key_rotated", old_key_id=old.id, new_key_id=replacement.id)
        await self._audit_key_event(AuditEventType.KEY_ROTATED, replacement, previous_key_id=old.id)
        return replacement

    async def rotate_keys(self) -> list[str]:
        """Rotate every active key whose rotation time has passed."""
        now = datetime.now(UTC)
        due = [k.id for k in self._keys.values() if k.is_due_for_rotation(now)]
        rotated = []
        for key_id in due:
            replacement = await self.rotate_key(key_id)
            rotated.append(replacement.id)
        if rotated:
            logger.info("encryption.rotation_sweep", rotated=len(rotated))
        return rotated

    async def revoke_key(self, key_id: str, reason: str, user_id: str | None = None) -> None:
        """Block a key from all further use, including decryption."""
        key = self.get_key(key_id)
        key.status = KeyStatus.REVOKED
        if self._active.get(key.scope) == key_id:
            del self._active[key.scope]
        logger.warning("encryption.key_revoked", key_id=key_id, reason=reason)
        await self.audit_logger.log_event(
            AuditEventType.KEY_REVOKED,
            user_id=user_id,
            description=f"Encryption key revoked: {key_id}",
            resource={"type": "encryption_key", "id": key_id},
            metadata={
                "key_id": key_id,
                "classification": key.classification.value,
                "tenant": key.tenant,
                "reason": reason,
            },
        )

    # ------------------------------------------------------------------
    # Values
    # ------------------------------------------------------------------

    async def encrypt_data(
        self,
        plaintext: str,
        classification: DataClassification,
        tenant: str | None = None,
        algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_GCM,
        user_id: str | None = None,
        rotation_days: int | None = None,
    ) -> EncryptedData:
        key = await self.get_active_key(classification, algorithm, tenant, rotation_days)

        iv = os.urandom(IV_LENGTH)
        sealed = _cipher(key).encrypt(iv, plaintext.encode("utf-8"), key.id.encode("utf-8"))
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

        key.usage.encryption_count += 1
        key.usage.last_used = datetime.now(UTC)

        envelope = EncryptedData(
            data=_b64(ciphertext),
            iv=_b64(iv),
            auth_tag=_b64(tag),
            algorithm=algorithm,
            key_id=key.id,
            metadata=EncryptionMetadata(
                classification=classification, tenant=tenant, user_id=user_id
            ),
        )
        await self.audit_logger.log_event(
            AuditEventType.DATA_ENCRYPTED,
            user_id=user_id,
            description="Data encrypted",
            metadata={"key_id": key.id, "classification": classification.value, "tenant": tenant},
        )
        return envelope

    async def decrypt_data(self, envelope: EncryptedData | dict[str, Any], user_id: str | None = None) -> str:
        if isinstance(envelope, dict):
            envelope = EncryptedData.model_validate(envelope)

        key = self.get_key(envelope.key_id)
        audit_meta = {
            "key_id": key.id,
            "classification": key.classification.value,
            "tenant": key.tenant,
        }

        if key.status == KeyStatus.REVOKED:
            await self.audit_logger.log_event(
                AuditEventType.DATA_DECRYPTED,
                user_id=user_id,
                result=AuditResult.BLOCKED,
                description="Decryption refused: key revoked",
                metadata=audit_meta,
            )
            raise KeyRevokedError(f"Encryption key {key.id} has been revoked")

        try:
            sealed = _unb64(envelope.data) + _unb64(envelope.auth_tag)
            if envelope.algorithm != key.algorithm:
                raise ValueError("envelope algorithm does not match key")
            plaintext = _cipher(key).decrypt(
                _unb64(envelope.iv), sealed, envelope.key_id.encode("utf-8")
            )
        except (InvalidTag, ValueError) as e:
            await self.audit_logger.log_event(
                AuditEventType.DATA_DECRYPTED,
                user_id=user_id,
                result=AuditResult.FAILURE,
                severity="high",
                description="Decryption failed integrity check",
                metadata=audit_meta,
            )
            raise DecryptionError("Unable to decrypt data", cause=e) from e

        key.usage.decryption_count += 1
        key.usage.last_used = datetime.now(UTC)
        await self.audit_logger.log_event(
            AuditEventType.DATA_DECRYPTED,
            user_id=user_id,
            description="Data decrypted",
            metadata=audit_meta,
        )
        return plaintext.decode("utf-8")

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def encrypt_record(
        self,
        schema_name: str,
        record: dict[str, Any],
        tenant: str | None = None,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """Encrypt the schema's declared fields; other fields are untouched."""
        schema = self.schemas.get(schema_name)
        if schema is None:
            return dict(record)

        missing = [
            name for name, spec in schema.fields.items() if spec.required and record.get(name) is None
        ]
        if missing:
            raise ValidationError(
                f"Missing required encrypted fields for {schema_name}",
                fields={name: "required" for name in missing},
            )

        encrypted = dict(record)
        for name, spec in schema.fields.items():
            value = record.get(name)
            if value is None:
                continue
            envelope = await self.encrypt_data(
                str(value),
                spec.classification,
                tenant or schema.tenant,
                spec.algorithm,
                user_id,
                spec.rotation_days,
            )
            encrypted[name] = envelope.model_dump(mode="json")
        return encrypted

    async def decrypt_record(
        self,
        schema_name: str,
        record: dict[str, Any],
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """Decrypt declared fields; a field that fails stays encrypted."""
        schema = self.schemas.get(schema_name)
        if schema is None:
            return dict(record)

        decrypted = dict(record)
        for name in schema.fields:
            value = record.get(name)
            if not isinstance(value, dict | EncryptedData):
                continue
            try:
                decrypted[name] = await self.decrypt_data(value, user_id)
            except (BusinessLogicError, NotFoundError, ValueError) as e:
                logger.warning(
                    "encryption.field_decrypt_failed",
                    table=schema_name,
                    field=name,
                    user_id=user_id,
                    error=str(e),
                )
        return decrypted

    # ------------------------------------------------------------------
    # Stats & scheduling
    # ------------------------------------------------------------------

    def get_encryption_stats(self) -> dict[str, Any]:
        by_status = {status.value: 0 for status in KeyStatus}
        by_classification: dict[str, int] = {}
        encryptions = decryptions = 0
        next_rotation: datetime | None = None
        last_rotation: datetime | None = None

        for key in self._keys.values():
            by_status[key.status.value] += 1
            by_classification[key.classification.value] = (
                by_classification.get(key.classification.value, 0) + 1
            )
            encryptions += key.usage.encryption_count
            decryptions += key.usage.decryption_count
            if key.status == KeyStatus.ACTIVE and key.next_rotation is not None:
                if next_rotation is None or key.next_rotation < next_rotation:
                    next_rotation = key.next_rotation
            if last_rotation is None or key.created > last_rotation:
                last_rotation = key.created

        return {
            "total_keys": len(self._keys),
            "active_keys": by_status[KeyStatus.ACTIVE.value],
            "deprecated_keys": by_status[KeyStatus.DEPRECATED.value],
            "revoked_keys": by_status[KeyStatus.REVOKED.value],
            "keys_by_classification": by_classification,
            "encryption_operations": encryptions,
            "decryption_operations": decryptions,
            "last_key_rotation": last_rotation,
            "next_key_rotation": next_rotation,
            "schemas": list(self.schemas),
        }

    async def _rotation_loop(self, interval: int) -> None:
        while self._running:
            try:
                await self.rotate_keys()
            except Exception as e:
                logger.error("encryption.rotation_loop_error", error=str(e))
            await asyncio.sleep(interval)

    async def start(self) -> None:
        """Start the periodic key-rotation sweep."""
        if self._running:
            return
        self._running = True
        interval = get_settings().encryption.rotation_check_interval_seconds
        self._tasks.add(asyncio.create_task(self._rotation_loop(interval)))
        logger.info("encryption.rotation_started", interval=interval)

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()

        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("encryption.rotation_stopped")
