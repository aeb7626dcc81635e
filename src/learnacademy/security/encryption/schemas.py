"""
Declarative field-level encryption schemas.
"""

from dataclasses import dataclass

from .models import DataClassification, EncryptionAlgorithm

DEFAULT_TENANT = "learn-academy"


@dataclass(frozen=True)
class FieldEncryptionSpec:
    classification: DataClassification
    algorithm: EncryptionAlgorithm = EncryptionAlgorithm.AES_256_GCM
    required: bool = False
    searchable: bool = False
    rotation_days: int = 90


@dataclass(frozen=True)
class EncryptionSchema:
    table: str
    fields: dict[str, FieldEncryptionSpec]
    tenant: str | None = DEFAULT_TENANT


DEFAULT_SCHEMAS: tuple[EncryptionSchema, ...] = (
    EncryptionSchema(
        table="users",
        fields={
            "email": FieldEncryptionSpec(
                DataClassification.CONFIDENTIAL, required=True, searchable=True
            ),
            "phone": FieldEncryptionSpec(DataClassification.CONFIDENTIAL),
            "date_of_birth": FieldEncryptionSpec(DataClassification.RESTRICTED, rotation_days=60),
        },
    ),
    EncryptionSchema(
        table="students",
        fields={
            "medical_info": FieldEncryptionSpec(DataClassification.TOP_SECRET, rotation_days=30),
            "emergency_contact": FieldEncryptionSpec(DataClassification.CONFIDENTIAL, required=True),
        },
    ),
    EncryptionSchema(
        table="payments",
        fields={
            "card_number": FieldEncryptionSpec(
                DataClassification.TOP_SECRET, required=True, rotation_days=30
            ),
            "bank_account": FieldEncryptionSpec(DataClassification.TOP_SECRET, rotation_days=30),
        },
    ),
)
