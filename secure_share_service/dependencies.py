import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException

from config import settings as global_app_settings, Settings
from vault import FileVault

def get_settings() -> Settings:
    return global_app_settings

def get_vault(current_settings: Settings = Depends(get_settings)) -> FileVault:
    return FileVault.from_settings(current_settings)

async def get_caller_id(x_user_id: Optional[str] = Header(None)) -> uuid.UUID:
    # Identity is established upstream by the authentication layer.
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        return uuid.UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=401, detail="Not authenticated")
