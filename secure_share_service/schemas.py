import uuid
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr

class UserCreate(BaseModel):
    email: EmailStr
    name: Optional[str] = None

class UserPublic(BaseModel):
    id: uuid.UUID
    email: str
    name: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

class FileSummary(BaseModel):
    id: uuid.UUID
    original_name: str

    model_config = ConfigDict(from_attributes=True)

class FileDescriptor(FileSummary):
    size: int
    mime_type: str
    created_at: datetime
    expires_at: datetime

class ShareCreate(BaseModel):
    file_id: uuid.UUID
    recipient_email: EmailStr

class ShareDescriptor(BaseModel):
    id: uuid.UUID
    file: FileSummary
    recipient: UserPublic
    access_count: int
    is_accessed: bool
    created_at: datetime
    expires_at: datetime

    model_config = ConfigDict(from_attributes=True)

class SentShare(ShareDescriptor):
    file: FileDescriptor

class ReceivedShare(BaseModel):
    id: uuid.UUID
    file: FileDescriptor
    sender: UserPublic
    access_count: int
    is_accessed: bool
    expires_at: datetime
    decryption_key: str
    qr_code: str

class ShareList(BaseModel):
    count: int
    shares: List[SentShare]

class ReceivedShareList(BaseModel):
    count: int
    shares: List[ReceivedShare]

class QRCodeResponse(BaseModel):
    url: str
    qr_code: str

class KeyResponse(BaseModel):
    file_id: uuid.UUID
    decryption_key: str
