"""
Authorization chokepoint for everything that touches a file's key.

A caller may use a file if they own it, or if an unexpired share names them as
recipient. Downloads by a recipient are counted on the share record; QR issuance
and key retrieval are not. This is the only module that unwraps a wrapped key on
behalf of a caller.
"""

import hmac
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

import crud
import models
from cipher_store import CipherStore
from exceptions import ForbiddenError, KeyMismatchError, NotFoundError, ValidationError
from key_manager import KeyManager
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Grant:
    file: models.FileRecord
    share: Optional[models.ShareRecord] = None

    @property
    def is_owner(self) -> bool:
        return self.share is None


class AccessGate:
    def __init__(self, key_manager: KeyManager, cipher_store: CipherStore):
        self.key_manager = key_manager
        self.cipher_store = cipher_store

    async def authorize(
        self,
        db: AsyncSession,
        file_id: uuid.UUID,
        caller_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> Grant:
        file = await crud.get_file_record(db, file_id, now=now)
        if file is None:
            logger.warning(f"File not found: ID {file_id}")
            raise NotFoundError("File not found")

        if file.owner_id == caller_id:
            return Grant(file=file)

        share = await crud.get_share_for_recipient(db, file_id, caller_id, now=now)
        if share is None:
            logger.warning(f"User {caller_id} denied access to file {file_id}")
            raise ForbiddenError("You do not have permission to access this file")
        return Grant(file=file, share=share)

    def _unlock(self, grant: Grant, presented_key: str) -> bytes:
        if not presented_key or not presented_key.strip():
            raise ValidationError("Decryption key is required")
        key = self.key_manager.unwrap(grant.file.wrapped_key)
        candidate = KeyManager.import_key(presented_key)
        if not hmac.compare_digest(key, candidate):
            logger.warning(f"Presented key does not match file {grant.file.id}")
            raise KeyMismatchError("Invalid decryption key")
        return key

    async def download(
        self,
        db: AsyncSession,
        file_id: uuid.UUID,
        caller_id: uuid.UUID,
        presented_key: str,
        now: Optional[datetime] = None,
    ) -> Tuple[bytes, str, str]:
        """
        Return (plaintext, mime_type, original_name) for an authorized caller
        presenting the right key. A recipient's share is counted only once the
        content has been decrypted.
        """
        grant = await self.authorize(db, file_id, caller_id, now=now)
        key = self._unlock(grant, presented_key)
        file = grant.file
        content = await self.cipher_store.load_and_decrypt(file.storage_path, key)

        if grant.is_owner:
            logger.info(f"Owner {caller_id} downloaded file {file_id}")
        else:
            share = await crud.record_share_access(db, grant.share)
            logger.info(
                f"Recipient {caller_id} downloaded file {file_id} via share {share.id} "
                f"(access_count={share.access_count})"
            )
        return content, file.mime_type, file.original_name

    async def reveal_key(
        self,
        db: AsyncSession,
        file_id: uuid.UUID,
        caller_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> str:
        grant = await self.authorize(db, file_id, caller_id, now=now)
        return self.key_for(grant.file)

    def key_for(self, file: models.FileRecord) -> str:
        """Exported key of a file the caller has already been authorized for."""
        return KeyManager.export_key(self.key_manager.unwrap(file.wrapped_key))
