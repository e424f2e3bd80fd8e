"""Credential model - encrypted marketplace/ERP secrets.

encrypted_value is base64(nonce || ciphertext || tag) produced by
credentials.cipher; it is only ever decrypted by CredentialVault.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Column, Index, String, Text, Uuid

from .base import Base, TenantRecord


class CredentialType(str, Enum):
    MARKETPLACE = "MARKETPLACE"
    ERP = "ERP"
    CARRIER = "CARRIER"


class Credential(TenantRecord, Base):
    __tablename__ = "credential"

    store_id = Column(Uuid, nullable=True)
    credential_type = Column(String(20), nullable=False)
    key_name = Column(String(100), nullable=False)
    encrypted_value = Column(Text, nullable=False)
    description = Column(Text, nullable=True)

    __table_args__ = (
        Index(
            "uq_credential_scope",
            "tenant_id", "store_id", "credential_type", "key_name",
            unique=True,
        ),
    )

    @classmethod
    def create(
        cls,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        credential_type: CredentialType,
        key_name: str,
        encrypted_value: str,
        now: Optional[datetime] = None,
    ) -> "Credential":
        credential = cls(
            tenant_id=tenant_id,
            store_id=store_id,
            credential_type=CredentialType(credential_type).value,
            key_name=key_name,
            encrypted_value=encrypted_value,
        )
        credential._stamp(now)
        return credential

    def __repr__(self):
        # Never include encrypted_value
        return f"<Credential(id={self.id}, type={self.credential_type}, key={self.key_name})>"
