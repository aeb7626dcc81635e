"""
Encryption key and envelope models.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

ENVELOPE_VERSION = "1.0"


class EncryptionAlgorithm(str, Enum):
    AES_256_GCM = "aes-256-gcm"
    CHACHA20_POLY1305 = "chacha20-poly1305"


class DataClassification(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    RESTRICTED = "restricted"
    TOP_SECRET = "top_secret"


class KeyStatus(str, Enum):
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    REVOKED = "revoked"


@dataclass
class KeyUsage:
    encryption_count: int = 0
    decryption_count: int = 0
    last_used: datetime | None = None


@dataclass
class EncryptionKey:
    """Key material plus lifecycle bookkeeping. Never serialized."""

    id: str
    key: bytes = field(repr=False)
    algorithm: EncryptionAlgorithm
    classification: DataClassification
    tenant: str | None
    rotation_interval: timedelta
    status: KeyStatus = KeyStatus.ACTIVE
    created: datetime = field(default_factory=lambda: datetime.now(UTC))
    next_rotation: datetime | None = None
    usage: KeyUsage = field(default_factory=KeyUsage)

    def __post_init__(self) -> None:
        if self.next_rotation is None:
            self.next_rotation = self.created + self.rotation_interval

    @property
    def scope(self) -> tuple[DataClassification, EncryptionAlgorithm, str | None]:
        return (self.classification, self.algorithm, self.tenant)

    def is_due_for_rotation(self, now: datetime) -> bool:
        return (
            self.status == KeyStatus.ACTIVE
            and self.next_rotation is not None
            and self.next_rotation <= now
        )


class EncryptionMetadata(BaseModel):
    """Non-sensitive context stored alongside the ciphertext."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    classification: DataClassification
    tenant: str | None = None
    user_id: str | None = None


class EncryptedData(BaseModel):
    """Persisted form of an encrypted value. Binary fields are base64."""

    model_config = ConfigDict(frozen=True)

    data: str
    iv: str
    auth_tag: str
    algorithm: EncryptionAlgorithm
    key_id: str
    version: str = ENVELOPE_VERSION
    metadata: EncryptionMetadata
