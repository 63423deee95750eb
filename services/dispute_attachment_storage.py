"""
Local storage for dispute image evidence.

Files are written under DISPUTE_UPLOAD_DIR with random names and served until
their attachment row expires.
"""

import logging
import os
import re
import secrets
import time
from datetime import timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from config import Config
from models import DisputeAttachment
from utils.datetime_helpers import get_naive_utc_now
from utils.exception_handler import GoneError, NotFoundError

logger = logging.getLogger(__name__)

STORED_NAME_PATTERN = re.compile(r"^proof_\d+_[0-9a-f]{16}\.(jpg|png|gif|webp)$")


class DisputeAttachmentStorage:

    def __init__(self, upload_dir: Optional[str] = None):
        self._upload_dir = upload_dir

    @property
    def upload_dir(self) -> str:
        return self._upload_dir or Config.DISPUTE_UPLOAD_DIR

    @staticmethod
    def generate_filename(extension: str) -> str:
        return f"proof_{int(time.time() * 1000)}_{secrets.token_hex(8)}{extension}"

    @staticmethod
    def expiry_from_now():
        return get_naive_utc_now() + timedelta(days=Config.DISPUTE_PROOF_TTL_DAYS)

    def path_for(self, filename: str) -> str:
        if not STORED_NAME_PATTERN.match(filename or ""):
            raise NotFoundError("Proof not found")
        return os.path.join(self.upload_dir, filename)

    def save(self, content: bytes, extension: str) -> str:
        """Write bytes under a fresh random name and return that name"""
        os.makedirs(self.upload_dir, exist_ok=True)
        filename = self.generate_filename(extension)
        with open(self.path_for(filename), "wb") as handle:
            handle.write(content)
        logger.info(f"📎 PROOF_STORED: {filename} ({len(content)} bytes)")
        return filename

    def remove(self, filename: str) -> None:
        path = self.path_for(filename)
        if os.path.exists(path):
            os.remove(path)

    def resolve_proof(self, session: Session, filename: str) -> DisputeAttachment:
        """Attachment row for a servable proof; unknown -> 404, expired -> 410"""
        attachment = session.execute(
            select(DisputeAttachment).where(DisputeAttachment.filename == filename)
        ).scalar_one_or_none()
        if attachment is None:
            raise NotFoundError("Proof not found")
        if attachment.expires_at <= get_naive_utc_now():
            raise GoneError("This proof has expired")
        if not os.path.exists(self.path_for(filename)):
            raise NotFoundError("Proof not found")
        return attachment

    def purge_expired(self, session: Session) -> int:
        """Delete files whose attachments expired; rows stay as the evidence record"""
        expired = session.execute(
            select(DisputeAttachment.filename)
            .where(DisputeAttachment.expires_at <= get_naive_utc_now())
        ).scalars().all()
        removed = 0
        for filename in expired:
            path = self.path_for(filename)
            if os.path.exists(path):
                os.remove(path)
                removed += 1
        if removed:
            logger.info(f"🧹 EXPIRED_PROOFS_PURGED: {removed} file(s)")
        return removed


dispute_attachment_storage = DisputeAttachmentStorage()


def get_dispute_attachment_storage() -> DisputeAttachmentStorage:
    return dispute_attachment_storage
