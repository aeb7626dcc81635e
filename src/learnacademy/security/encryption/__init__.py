"""
Field-level data encryption at rest.
"""

from .models import (
    DataClassification,
    EncryptedData,
    EncryptionAlgorithm,
    EncryptionKey,
    EncryptionMetadata,
    KeyStatus,
)
from .schemas import DEFAULT_SCHEMAS, EncryptionSchema, FieldEncryptionSpec
from .service import DecryptionError, EncryptionService, KeyRevokedError

_encryption_service: EncryptionService | None = None


def get_encryption_service() -> EncryptionService:
    """Get the process-wide encryption service."""
    global _encryption_service
    if _encryption_service is None:
        _encryption_service = EncryptionService()
    return _encryption_service


def set_encryption_service(service: EncryptionService | None) -> None:
    global _encryption_service
    _encryption_service = service


__all__ = [
    "DEFAULT_SCHEMAS",
    "DataClassification",
    "DecryptionError",
    "EncryptedData",
    "EncryptionAlgorithm",
    "EncryptionKey",
    "EncryptionMetadata",
    "EncryptionSchema",
    "EncryptionService",
    "FieldEncryptionSpec",
    "KeyRevokedError",
    "KeyStatus",
    "get_encryption_service",
    "set_encryption_service",
]
