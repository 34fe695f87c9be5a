import re
import uuid as py_uuid
from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm import selectinload

import models
from exceptions import NotFoundError, ValidationError
from logging_config import get_logger

logger = get_logger(__name__)

_UNIQUE_COLUMN_PATTERNS = (
    re.compile(r"UNIQUE constraint failed: (?:\w+\.\w+, )*\w+\.(\w+)"),
    re.compile(r"Key \((\w+)(?:, (\w+))?\)=.*already exists"),
    re.compile(r"unique constraint \"(\w+)\""),
)

def _duplicate_field(error: IntegrityError) -> Optional[str]:
    message = str(error.orig)
    for pattern in _UNIQUE_COLUMN_PATTERNS:
        match = pattern.search(message)
        if match:
            return [g for g in match.groups() if g][-1]
    return None

def _is_missing_reference(error: IntegrityError) -> bool:
    return "foreign key" in str(error.orig).lower()

async def _commit_or_translate(db: AsyncSession, missing_reference: Optional[str] = None) -> None:
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        field = _duplicate_field(e)
        if field is not None:
            logger.warning(f"Integrity error on commit, duplicate field: {field}")
            raise ValidationError(f"Duplicate field value entered: {field}. Please use another value.") from e
        if missing_reference and _is_missing_reference(e):
            logger.warning(f"Integrity error on commit, missing reference: {missing_reference}")
            raise NotFoundError(missing_reference) from e
        logger.error(f"Unexpected integrity error on commit: {e.orig}")
        raise

# users

async def create_user(db: AsyncSession, email: str, name: Optional[str] = None) -> models.UserRecord:
    db_user = models.UserRecord(email=email.strip().lower(), name=name)
    db.add(db_user)
    await _commit_or_translate(db)
    await db.refresh(db_user)
    return db_user

async def get_user(db: AsyncSession, user_id: py_uuid.UUID) -> Optional[models.UserRecord]:
    result = await db.execute(select(models.UserRecord).filter(models.UserRecord.id == user_id))
    return result.scalars().first()

async def get_user_by_email(db: AsyncSession, email: str) -> Optional[models.UserRecord]:
    result = await db.execute(
        select(models.UserRecord).filter(models.UserRecord.email == email.strip().lower())
    )
    return result.scalars().first()

# files

async def create_file_record(
    db: AsyncSession,
    *,
    owner_id: py_uuid.UUID,
    original_name: str,
    storage_name: str,
    storage_path: str,
    size: int,
    mime_type: str,
    wrapped_key: str,
    created_at: datetime,
    expires_at: datetime,
) -> models.FileRecord:
    db_file = models.FileRecord(
        owner_id=owner_id,
        original_name=original_name,
        storage_name=storage_name,
        storage_path=storage_path,
        size=size,
        mime_type=mime_type,
        wrapped_key=wrapped_key,
        created_at=created_at,
        expires_at=expires_at,
    )
    db.add(db_file)
    await _commit_or_translate(db, missing_reference="User not found")
    await db.refresh(db_file)
    return db_file

async def get_file_record(
    db: AsyncSession, file_id: py_uuid.UUID, now: Optional[datetime] = None
) -> Optional[models.FileRecord]:
    now = now or models.utcnow()
    result = await db.execute(
        select(models.FileRecord).filter(
            models.FileRecord.id == file_id,
            models.FileRecord.expires_at > now,
        )
    )
    return result.scalars().first()

async def get_files_by_owner(
    db: AsyncSession, owner_id: py_uuid.UUID, now: Optional[datetime] = None
) -> List[models.FileRecord]:
    now = now or models.utcnow()
    result = await db.execute(
        select(models.FileRecord)
        .filter(models.FileRecord.owner_id == owner_id, models.FileRecord.expires_at > now)
        .order_by(models.FileRecord.created_at.desc())
    )
    return list(result.scalars().all())

async def delete_file_record(db: AsyncSession, file_id: py_uuid.UUID) -> None:
    await db.execute(delete(models.ShareRecord).where(models.ShareRecord.file_id == file_id))
    await db.execute(delete(models.FileRecord).where(models.FileRecord.id == file_id))
    await db.commit()

# shares

async def create_share_record(
    db: AsyncSession,
    file: models.FileRecord,
    sender_id: py_uuid.UUID,
    recipient_id: py_uuid.UUID,
    created_at: datetime,
) -> models.ShareRecord:
    db_share = models.ShareRecord(
        file_id=file.id,
        sender_id=sender_id,
        recipient_id=recipient_id,
        access_count=0,
        is_accessed=False,
        created_at=created_at,
        expires_at=file.expires_at,
    )
    db.add(db_share)
    await _commit_or_translate(db, missing_reference="File not found")
    return await get_share_record(db, db_share.id, now=created_at)

def _share_query():
    return (
        select(models.ShareRecord)
        .options(
            selectinload(models.ShareRecord.file),
            selectinload(models.ShareRecord.sender),
            selectinload(models.ShareRecord.recipient),
        )
        .execution_options(populate_existing=True)
    )

async def get_share_record(
    db: AsyncSession, share_id: py_uuid.UUID, now: Optional[datetime] = None
) -> Optional[models.ShareRecord]:
    now = now or models.utcnow()
    result = await db.execute(
        _share_query().filter(
            models.ShareRecord.id == share_id,
            models.ShareRecord.expires_at > now,
        )
    )
    return result.scalars().first()

async def get_share_for_recipient(
    db: AsyncSession,
    file_id: py_uuid.UUID,
    recipient_id: py_uuid.UUID,
    now: Optional[datetime] = None,
) -> Optional[models.ShareRecord]:
    now = now or models.utcnow()
    result = await db.execute(
        select(models.ShareRecord).filter(
            models.ShareRecord.file_id == file_id,
            models.ShareRecord.recipient_id == recipient_id,
            models.ShareRecord.expires_at > now,
        )
    )
    return result.scalars().first()

async def get_shares_by_sender(
    db: AsyncSession, sender_id: py_uuid.UUID, now: Optional[datetime] = None
) -> List[models.ShareRecord]:
    now = now or models.utcnow()
    result = await db.execute(
        _share_query()
        .filter(models.ShareRecord.sender_id == sender_id, models.ShareRecord.expires_at > now)
        .order_by(models.ShareRecord.created_at.desc())
    )
    return list(result.scalars().all())

async def get_shares_by_recipient(
    db: AsyncSession, recipient_id: py_uuid.UUID, now: Optional[datetime] = None
) -> List[models.ShareRecord]:
    now = now or models.utcnow()
    result = await db.execute(
        _share_query()
        .join(models.FileRecord, models.ShareRecord.file_id == models.FileRecord.id)
        .filter(
            models.ShareRecord.recipient_id == recipient_id,
            models.ShareRecord.expires_at > now,
            models.FileRecord.expires_at > now,
        )
        .order_by(models.ShareRecord.created_at.desc())
    )
    return list(result.scalars().all())

async def get_shares_for_file(db: AsyncSession, file_id: py_uuid.UUID) -> List[models.ShareRecord]:
    result = await db.execute(select(models.ShareRecord).filter(models.ShareRecord.file_id == file_id))
    return list(result.scalars().all())

async def record_share_access(db: AsyncSession, share: models.ShareRecord) -> models.ShareRecord:
    result = await db.execute(
        update(models.ShareRecord)
        .where(models.ShareRecord.id == share.id)
        .values(access_count=models.ShareRecord.access_count + 1, is_accessed=True)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if not result.rowcount:
        logger.warning(f"Share {share.id} was removed before its access could be recorded")
        return share
    await db.refresh(share, attribute_names=["access_count", "is_accessed"])
    return share

async def delete_share_record(db: AsyncSession, share_id: py_uuid.UUID) -> None:
    await db.execute(delete(models.ShareRecord).where(models.ShareRecord.id == share_id))
    await db.commit()

# expiry sweep

async def get_expired_files(db: AsyncSession, now: datetime) -> List[models.FileRecord]:
    result = await db.execute(select(models.FileRecord).filter(models.FileRecord.expires_at <= now))
    return list(result.scalars().all())

async def purge_expired_shares(
    db: AsyncSession, now: datetime, expired_file_ids: Sequence[py_uuid.UUID] = ()
) -> int:
    condition = models.ShareRecord.expires_at <= now
    if expired_file_ids:
        condition = condition | models.ShareRecord.file_id.in_(list(expired_file_ids))
    result = await db.execute(
        delete(models.ShareRecord).where(condition).execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0

async def purge_file_records(db: AsyncSession, file_ids: Sequence[py_uuid.UUID]) -> int:
    if not file_ids:
        return 0
    result = await db.execute(
        delete(models.FileRecord)
        .where(models.FileRecord.id.in_(list(file_ids)))
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return result.rowcount or 0
