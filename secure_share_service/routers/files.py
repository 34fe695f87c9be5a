import uuid
from typing import List
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Query, Response, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

import qr
import schemas
from config import settings as global_app_settings
from database import get_db
from dependencies import get_caller_id, get_vault
from logging_config import get_logger
from vault import FileVault

logger = get_logger(__name__)

router = APIRouter(
    prefix="/files",
    tags=["files"],
)

UPLOAD_CHUNK_SIZE = 1024 * 1024

if not global_app_settings.STORAGE_BASE_PATH.exists():
    logger.info(f"Creating file storage directory at {global_app_settings.STORAGE_BASE_PATH}")
    global_app_settings.STORAGE_BASE_PATH.mkdir(parents=True, exist_ok=True)

async def read_upload(file: UploadFile, vault: FileVault) -> bytes:
    """Read an upload, stopping as soon as it exceeds MAX_FILE_SIZE."""
    if file.size is not None:
        vault.check_size(file.size)
    chunks = []
    received = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        received += len(chunk)
        vault.check_size(received)
        chunks.append(chunk)
    return b"".join(chunks)

@router.post("/upload", response_model=schemas.FileDescriptor, status_code=201)
async def upload_file(
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_db),
    caller_id: uuid.UUID = Depends(get_caller_id),
    vault: FileVault = Depends(get_vault),
):
    logger.info(f"Upload request for filename: '{file.filename}', content_type: '{file.content_type}'")
    try:
        content = await read_upload(file, vault)
    finally:
        await file.close()
    return await vault.upload(db, caller_id, file.filename, file.content_type, content)

@router.get("", response_model=List[schemas.FileDescriptor])
async def list_my_files(
    db: AsyncSession = Depends(get_db),
    caller_id: uuid.UUID = Depends(get_caller_id),
    vault: FileVault = Depends(get_vault),
):
    return await vault.list_owned(db, caller_id)

@router.post("/share", response_model=schemas.ShareDescriptor, status_code=201)
async def share_file(
    share_request: schemas.ShareCreate,
    db: AsyncSession = Depends(get_db),
    caller_id: uuid.UUID = Depends(get_caller_id),
    vault: FileVault = Depends(get_vault),
):
    logger.info(f"Share request for file {share_request.file_id} from {caller_id}")
    return await vault.share(db, share_request.file_id, caller_id, share_request.recipient_email)

@router.get("/shared", response_model=schemas.ShareList)
async def list_sent_shares(
    db: AsyncSession = Depends(get_db),
    caller_id: uuid.UUID = Depends(get_caller_id),
    vault: FileVault = Depends(get_vault),
):
    shares = await vault.list_sent_shares(db, caller_id)
    return {"count": len(shares), "shares": shares}

@router.get("/received", response_model=schemas.ReceivedShareList)
async def list_received_shares(
    db: AsyncSession = Depends(get_db),
    caller_id: uuid.UUID = Depends(get_caller_id),
    vault: FileVault = Depends(get_vault),
):
    shares = await vault.list_received_shares(db, caller_id)
    return {"count": len(shares), "shares": shares}

@router.get("/download/{file_id}")
async def download_file(
    file_id: uuid.UUID,
    key: str = Query(""),
    db: AsyncSession = Depends(get_db),
    caller_id: uuid.UUID = Depends(get_caller_id),
    vault: FileVault = Depends(get_vault),
):
    logger.info(f"Download request for file_id: {file_id} by {caller_id}")
    content, mime_type, original_name = await vault.download(db, file_id, caller_id, key)
    return Response(
        content=content,
        media_type=mime_type,
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(original_name)}"},
    )

@router.get("/qr/{file_id}", response_model=schemas.QRCodeResponse)
async def get_qr_code(
    file_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller_id: uuid.UUID = Depends(get_caller_id),
    vault: FileVault = Depends(get_vault),
):
    url, png = await vault.qr_for_file(db, file_id, caller_id)
    return schemas.QRCodeResponse(url=url, qr_code=qr.to_data_url(png))

@router.get("/key/{file_id}", response_model=schemas.KeyResponse)
async def get_decryption_key(
    file_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller_id: uuid.UUID = Depends(get_caller_id),
    vault: FileVault = Depends(get_vault),
):
    decryption_key = await vault.reveal_key(db, file_id, caller_id)
    return schemas.KeyResponse(file_id=file_id, decryption_key=decryption_key)

@router.delete("/shares/{share_id}", status_code=204)
async def delete_share(
    share_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller_id: uuid.UUID = Depends(get_caller_id),
    vault: FileVault = Depends(get_vault),
):
    await vault.delete_share(db, share_id, caller_id)
    return Response(status_code=204)

@router.delete("/{file_id}", status_code=204)
async def delete_file(
    file_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    caller_id: uuid.UUID = Depends(get_caller_id),
    vault: FileVault = Depends(get_vault),
):
    await vault.delete_file(db, file_id, caller_id)
    return Response(status_code=204)

@router.get("/{file_id}", response_model=schemas.FileSummary)
async def get_public_file_info(
    file_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    vault: FileVault = Depends(get_vault),
):
    return await vault.public_info(db, file_id)
