import asyncio
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

import crud
import models
import qr
import schemas
from access_gate import AccessGate
from cipher_store import CipherStore
from config import Settings
from exceptions import ForbiddenError, NotFoundError, SecureShareError, ValidationError
from key_manager import KeyManager
from logging_config import get_logger

logger = get_logger(__name__)

class FileVault:
    """Upload, share, list and delete operations built on the access gate."""

    def __init__(self, settings: Settings, key_manager: KeyManager, cipher_store: CipherStore):
        self.settings = settings
        self.key_manager = key_manager
        self.cipher_store = cipher_store
        self.gate = AccessGate(key_manager, cipher_store)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FileVault":
        key_manager = KeyManager(settings.MASTER_SECRET.get_secret_value(), settings.MASTER_KEY_CONTEXT)
        return cls(settings, key_manager, CipherStore(settings.STORAGE_BASE_PATH))

    def check_size(self, size: int) -> None:
        if size > self.settings.MAX_FILE_SIZE:
            raise ValidationError(f"File exceeds the maximum size of {self.settings.MAX_FILE_SIZE} bytes")

    def _validate_upload(self, original_name: str, mime_type: str, size: int) -> None:
        if not original_name:
            raise ValidationError("Please upload a file")
        if not mime_type:
            raise ValidationError("File type is required")
        self.check_size(size)
        allowed = self.settings.allowed_file_types
        subtype = mime_type.split('/')[-1].lower()
        extension = Path(original_name).suffix.lstrip('.').lower()
        if subtype not in allowed and extension not in allowed:
            raise ValidationError("File type not allowed")

    async def upload(
        self,
        db: AsyncSession,
        owner_id: uuid.UUID,
        original_name: Optional[str],
        mime_type: Optional[str],
        data: bytes,
    ) -> models.FileRecord:
        original_name = (original_name or "").strip()
        mime_type = (mime_type or "").strip()
        self._validate_upload(original_name, mime_type, len(data))

        file_key = self.key_manager.generate_file_key()
        handle = await self.cipher_store.encrypt_and_store(data, file_key, original_name)
        wrapped_key = self.key_manager.wrap(file_key)

        created_at = models.utcnow()
        try:
            db_file = await crud.create_file_record(
                db,
                owner_id=owner_id,
                original_name=original_name,
                storage_name=handle.rsplit('/', 1)[-1],
                storage_path=handle,
                size=len(data),
                mime_type=mime_type,
                wrapped_key=wrapped_key,
                created_at=created_at,
                expires_at=created_at + timedelta(hours=self.settings.FILE_TTL_HOURS),
            )
        except Exception:
            logger.exception(f"Failed to persist metadata for '{original_name}'; removing blob {handle}")
            await self.cipher_store.delete_if_exists(handle)
            raise
        logger.info(f"Stored '{db_file.original_name}' (ID: {db_file.id}, {db_file.size} bytes) for owner {owner_id}")
        return db_file

    async def list_owned(self, db: AsyncSession, owner_id: uuid.UUID) -> List[models.FileRecord]:
        return await crud.get_files_by_owner(db, owner_id)

    async def share(
        self,
        db: AsyncSession,
        file_id: uuid.UUID,
        owner_id: uuid.UUID,
        recipient_email: str,
    ) -> models.ShareRecord:
        file = await crud.get_file_record(db, file_id)
        if file is None:
            raise NotFoundError("File not found")
        if file.owner_id != owner_id:
            logger.warning(f"User {owner_id} tried to share file {file_id} they do not own")
            raise ForbiddenError("You do not have permission to share this file")

        recipient = await crud.get_user_by_email(db, recipient_email)
        if recipient is None:
            raise NotFoundError("Recipient user not found")
        if recipient.id == owner_id:
            raise ValidationError("You cannot share a file with yourself")

        share = await crud.create_share_record(db, file, owner_id, recipient.id, models.utcnow())
        logger.info(f"File {file_id} shared by {owner_id} with {recipient.id} (share {share.id})")
        return share

    async def list_sent_shares(self, db: AsyncSession, sender_id: uuid.UUID) -> List[models.ShareRecord]:
        return await crud.get_shares_by_sender(db, sender_id)

    async def list_received_shares(self, db: AsyncSession, recipient_id: uuid.UUID) -> List[schemas.ReceivedShare]:
        received = []
        for share in await crud.get_shares_by_recipient(db, recipient_id):
            try:
                decryption_key = self.gate.key_for(share.file)
            except SecureShareError:
                logger.exception(f"Cannot open key of file {share.file_id} for share {share.id}; skipping")
                continue
            png = await asyncio.to_thread(qr.encode, qr.file_url(self.settings.FRONTEND_URL, share.file_id))
            received.append(schemas.ReceivedShare(
                id=share.id,
                file=schemas.FileDescriptor.model_validate(share.file),
                sender=schemas.UserPublic.model_validate(share.sender),
                access_count=share.access_count,
                is_accessed=share.is_accessed,
                expires_at=share.expires_at,
                decryption_key=decryption_key,
                qr_code=qr.to_data_url(png),
            ))
        return received

    async def download(
        self, db: AsyncSession, file_id: uuid.UUID, caller_id: uuid.UUID, presented_key: str
    ) -> Tuple[bytes, str, str]:
        return await self.gate.download(db, file_id, caller_id, presented_key)

    async def reveal_key(self, db: AsyncSession, file_id: uuid.UUID, caller_id: uuid.UUID) -> str:
        return await self.gate.reveal_key(db, file_id, caller_id)

    async def qr_for_file(self, db: AsyncSession, file_id: uuid.UUID, caller_id: uuid.UUID) -> Tuple[str, bytes]:
        grant = await self.gate.authorize(db, file_id, caller_id)
        url = qr.file_url(self.settings.FRONTEND_URL, grant.file.id)
        png = await asyncio.to_thread(qr.encode, url)
        return url, png

    async def delete_file(self, db: AsyncSession, file_id: uuid.UUID, caller_id: uuid.UUID) -> None:
        file = await crud.get_file_record(db, file_id)
        if file is None:
            raise NotFoundError("File not found")
        if file.owner_id != caller_id:
            raise ForbiddenError("You do not have permission to delete this file")

        await crud.delete_file_record(db, file_id)
        # Rows first: no record may point at a missing blob.
        await self.cipher_store.delete_if_exists(file.storage_path)
        logger.info(f"File {file_id} and its shares deleted by owner {caller_id}")

    async def delete_share(self, db: AsyncSession, share_id: uuid.UUID, caller_id: uuid.UUID) -> None:
        share = await crud.get_share_record(db, share_id)
        if share is None:
            raise NotFoundError("Share not found")
        if share.sender_id != caller_id:
            raise ForbiddenError("You do not have permission to delete this share")

        await crud.delete_share_record(db, share_id)
        logger.info(f"Share {share_id} deleted by sender {caller_id}")

    async def public_info(self, db: AsyncSession, file_id: uuid.UUID, now: Optional[datetime] = None) -> models.FileRecord:
        file = await crud.get_file_record(db, file_id, now=now)
        if file is None:
            raise NotFoundError("File not found")
        return file
