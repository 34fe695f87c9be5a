import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

def utcnow() -> datetime:
    # Naive UTC, matching what the async drivers hand back for DateTime columns.
    return datetime.now(timezone.utc).replace(tzinfo=None)

class UserRecord(Base):
    __tablename__ = "users"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    email = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self):
        return f"<UserRecord(id={self.id}, email='{self.email}')>"

class FileRecord(Base):
    __tablename__ = "files"
    __table_args__ = (
        CheckConstraint("expires_at > created_at", name="ck_files_expires_after_created"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    original_name = Column(String, nullable=False)
    storage_name = Column(String, nullable=False, unique=True)
    size = Column(Integer, nullable=False)
    mime_type = Column(String, nullable=False)
    wrapped_key = Column(String, nullable=False)
    owner_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    storage_path = Column(String, nullable=False, unique=True)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    owner = relationship("UserRecord", lazy="raise")
    shares = relationship("ShareRecord", back_populates="file", lazy="raise", passive_deletes=True)

    def __repr__(self):
        return f"<FileRecord(id={self.id}, name='{self.original_name}', owner={self.owner_id})>"

class ShareRecord(Base):
    __tablename__ = "shares"
    __table_args__ = (
        UniqueConstraint("file_id", "recipient_id", name="uq_shares_file_id_recipient_id"),
        CheckConstraint("access_count >= 0", name="ck_shares_access_count_non_negative"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    file_id = Column(UUID(as_uuid=True), ForeignKey("files.id", ondelete="CASCADE"), nullable=False, index=True)
    sender_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    recipient_id = Column(UUID(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    access_count = Column(Integer, nullable=False, default=0)
    is_accessed = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)

    file = relationship("FileRecord", back_populates="shares", lazy="raise")
    sender = relationship("UserRecord", foreign_keys=[sender_id], lazy="raise")
    recipient = relationship("UserRecord", foreign_keys=[recipient_id], lazy="raise")

    def __repr__(self):
        return (
            f"<ShareRecord(id={self.id}, file={self.file_id}, recipient={self.recipient_id}, "
            f"access_count={self.access_count})>"
        )
