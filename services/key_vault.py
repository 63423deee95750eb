"""
Key Vault
=========

Generates one blockchain key pair per user and keeps the private key
encrypted at rest with AES-256-GCM. Plaintext keys only exist in memory
for the duration of a signing call.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from eth_account import Account
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Config
from models import BurnRecord, BurnStatus, EscrowState, KeyRecord, Order
from utils.exception_handler import ChainUnavailableError, ConflictError, NoKeyError

logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16


@dataclass
class DecryptedKey:
    private_key: str
    address: str

    def __repr__(self):
        return f"DecryptedKey(address='{self.address}')"


class KeyVault:
    """Per-user key generation, encryption and decryption"""

    def __init__(self, secret: Optional[str] = None):
        self._secret = secret

    @property
    def secret(self) -> str:
        return self._secret if self._secret is not None else Config.KEY_ENCRYPTION_SECRET

    def is_configured(self) -> bool:
        return bool(self.secret) and len(self.secret) >= Config.KEY_ENCRYPTION_MIN_LENGTH

    def _aesgcm(self) -> AESGCM:
        secret = self.secret
        if not self.is_configured():
            logger.critical("🚨 KEY_VAULT_DISABLED: KEY_ENCRYPTION_SECRET missing or shorter than 32 characters")
            raise ChainUnavailableError("Key vault is not configured")
        return AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt(self, private_key: str) -> dict:
        iv = os.urandom(IV_LENGTH)
        sealed = self._aesgcm().encrypt(iv, private_key.encode("utf-8"), None)
        return {
            "iv": iv.hex(),
            "tag": sealed[-TAG_LENGTH:].hex(),
            "data": sealed[:-TAG_LENGTH].hex(),
        }

    def _decrypt_record(self, record: KeyRecord) -> str:
        iv = bytes.fromhex(record.encrypted_key_iv)
        sealed = bytes.fromhex(record.encrypted_key_data) + bytes.fromhex(record.encrypted_key_tag)
        try:
            return self._aesgcm().decrypt(iv, sealed, None).decode("utf-8")
        except InvalidTag:
            logger.critical(f"🚨 KEY_DECRYPT_FAILED: authentication tag mismatch for user {record.user_id}")
            raise

    @staticmethod
    def _find(session: Session, user_id: int) -> Optional[KeyRecord]:
        return session.execute(
            select(KeyRecord).where(KeyRecord.user_id == user_id)
        ).scalar_one_or_none()

    def get_address(self, session: Session, user_id: int) -> Optional[str]:
        record = self._find(session, user_id)
        return record.address if record else None

    def get_or_create(self, session: Session, user_id: int) -> str:
        """Idempotently return the user's address, generating a key pair on first call"""
        record = self._find(session, user_id)
        if record:
            return record.address

        account = Account.create()
        sealed = self.encrypt(account.key.hex())
        record = KeyRecord(
            user_id=user_id,
            address=account.address.lower(),
            encrypted_key_iv=sealed["iv"],
            encrypted_key_tag=sealed["tag"],
            encrypted_key_data=sealed["data"],
        )
        try:
            session.add(record)
            session.commit()
        except IntegrityError:
            # Concurrent first call won; read its record
            session.rollback()
            record = self._find(session, user_id)
            if record is None:
                raise
            logger.info(f"🔁 KEY_CREATE_RACE: user {user_id} already has address {record.address}")
            return record.address

        logger.info(f"🔑 KEY_CREATED: user {user_id} address {record.address}")
        return record.address

    def decrypt(self, session: Session, user_id: int) -> DecryptedKey:
        record = self._find(session, user_id)
        if record is None:
            raise NoKeyError(f"No blockchain key found for user {user_id}")
        private_key = self._decrypt_record(record)
        if not private_key.startswith("0x"):
            private_key = "0x" + private_key
        return DecryptedKey(private_key=private_key, address=record.address)

    def delete(self, session: Session, user_id: int) -> None:
        """Delete a key record unless an open escrow or burn still references its address"""
        record = self._find(session, user_id)
        if record is None:
            raise NoKeyError(f"No blockchain key found for user {user_id}")

        open_states = [EscrowState.LOCKED.value, EscrowState.RELEASE_PENDING.value, EscrowState.DISPUTED.value]
        open_escrow = session.execute(
            select(Order.id).where(
                or_(Order.escrow_buyer_address == record.address, Order.escrow_seller_address == record.address),
                or_(Order.escrow_status.in_(open_states), Order.escrow_pending_action.is_not(None)),
            ).limit(1)
        ).scalar_one_or_none()
        open_burn = session.execute(
            select(BurnRecord.id).where(
                BurnRecord.from_address == record.address,
                BurnRecord.status.in_([BurnStatus.PENDING.value, BurnStatus.SUBMITTED.value]),
            ).limit(1)
        ).scalar_one_or_none()

        if open_escrow is not None or open_burn is not None:
            raise ConflictError("Key is referenced by an open escrow or burn and cannot be deleted")

        session.delete(record)
        session.commit()
        logger.warning(f"🗑️ KEY_DELETED: user {user_id} address {record.address}")


key_vault = KeyVault()


def get_key_vault() -> KeyVault:
    return key_vault
