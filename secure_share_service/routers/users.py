import uuid

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

import crud, schemas
from database import get_db
from exceptions import NotFoundError
from logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(
    prefix="/users",
    tags=["users"],
)

@router.post("", response_model=schemas.UserPublic, status_code=201)
async def register_user(
    user: schemas.UserCreate,
    db: AsyncSession = Depends(get_db),
):
    db_user = await crud.create_user(db, email=user.email, name=user.name)
    logger.info(f"Registered user {db_user.id}")
    return db_user

@router.get("/{user_id}", response_model=schemas.UserPublic)
async def get_user(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    db_user = await crud.get_user(db, user_id)
    if db_user is None:
        raise NotFoundError("User not found")
    return db_user
