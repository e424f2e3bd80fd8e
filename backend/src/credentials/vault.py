"""CredentialVault - encrypted storage of marketplace and ERP secrets.

Lookups are scoped by (tenant, store?, credential type, key name). A
store-scoped credential takes precedence over the tenant-wide one
(store_id NULL).
"""

import logging
import uuid
from typing import Dict, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from domain.clock import Clock, utc_now
from models.credential import Credential, CredentialType

from .cipher import CredentialCipher

logger = logging.getLogger(__name__)


class CredentialNotFoundError(LookupError):
    """No credential stored for the requested scope."""


class CredentialVault:
    def __init__(self, session: Session, cipher: CredentialCipher, clock: Clock = utc_now):
        self.session = session
        self.cipher = cipher
        self.clock = clock

    def _find(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        credential_type: CredentialType,
        key_name: str,
    ) -> Optional[Credential]:
        stmt = select(Credential).where(
            Credential.tenant_id == tenant_id,
            Credential.credential_type == CredentialType(credential_type).value,
            Credential.key_name == key_name,
        )
        if store_id is None:
            stmt = stmt.where(Credential.store_id.is_(None))
        else:
            stmt = stmt.where(Credential.store_id == store_id)
        return self.session.execute(stmt).scalar_one_or_none()

    def put(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        credential_type: CredentialType,
        key_name: str,
        plaintext: str,
    ) -> Credential:
        """Encrypt and store (or replace) a credential value."""
        encrypted = self.cipher.encrypt(plaintext)
        credential = self._find(tenant_id, store_id, credential_type, key_name)
        now = self.clock()
        if credential is None:
            credential = Credential.create(
                tenant_id=tenant_id,
                store_id=store_id,
                credential_type=credential_type,
                key_name=key_name,
                encrypted_value=encrypted,
                now=now,
            )
            self.session.add(credential)
        else:
            credential.encrypted_value = encrypted
            credential.touch(now)
        self.session.flush()

        logger.info(
            "Credential stored",
            extra={
                "tenant_id": str(tenant_id),
                "store_id": str(store_id) if store_id else None,
                "credential_type": CredentialType(credential_type).value,
                "key_name": key_name,
            },
        )
        return credential

    def get(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        credential_type: CredentialType,
        key_name: str,
    ) -> str:
        """Return the decrypted credential value.

        Falls back to the tenant-wide credential when no store-scoped one
        exists.

        Raises:
            CredentialNotFoundError: If neither scope has the credential
            EncryptionError: If the stored value cannot be decrypted
        """
        credential = None
        if store_id is not None:
            credential = self._find(tenant_id, store_id, credential_type, key_name)
        if credential is None:
            credential = self._find(tenant_id, None, credential_type, key_name)
        if credential is None:
            raise CredentialNotFoundError(
                f"No {CredentialType(credential_type).value} credential '{key_name}' "
                f"for tenant {tenant_id}"
            )
        return self.cipher.decrypt(credential.encrypted_value)

    def get_all(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        credential_type: CredentialType,
    ) -> Dict[str, str]:
        """Return every key of a credential type, store scope overriding tenant scope."""
        rows = self.session.execute(
            select(Credential).where(
                Credential.tenant_id == tenant_id,
                Credential.credential_type == CredentialType(credential_type).value,
            )
        ).scalars().all()

        values: Dict[str, str] = {}
        for row in rows:
            if row.store_id is None:
                values.setdefault(row.key_name, self.cipher.decrypt(row.encrypted_value))
        for row in rows:
            if store_id is not None and row.store_id == store_id:
                values[row.key_name] = self.cipher.decrypt(row.encrypted_value)
        return values

    def delete(
        self,
        tenant_id: uuid.UUID,
        store_id: Optional[uuid.UUID],
        credential_type: CredentialType,
        key_name: str,
    ) -> bool:
        credential = self._find(tenant_id, store_id, credential_type, key_name)
        if credential is None:
            return False
        self.session.delete(credential)
        self.session.flush()
        logger.info(
            "Credential deleted",
            extra={"tenant_id": str(tenant_id), "key_name": key_name},
        )
        return True
