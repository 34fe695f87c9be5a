from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from config import settings
from database import engine, AsyncSessionLocal, create_db_and_tables
from exceptions import (
    ForbiddenError,
    KeyMismatchError,
    KeyUnwrapError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from cipher_store import CipherStore
from reaper import Reaper
from routers import files as files_router
from routers import users as users_router
from logging_config import get_logger

logger = get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Secure Share Service starting up...")
    await create_db_and_tables()
    logger.info(f"File storage path configured at: {settings.STORAGE_BASE_PATH}")
    reaper = Reaper(AsyncSessionLocal, CipherStore(settings.STORAGE_BASE_PATH), settings.REAPER_INTERVAL_SECONDS)
    reaper.start()
    yield
    await reaper.stop()
    await engine.dispose()
    logger.info("Secure Share Service shutting down...")

app = FastAPI(
    title="Secure Share Service",
    version="0.1.0",
    lifespan=lifespan
)

def _error_response(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})

@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    logger.info(f"Validation error on {request.url.path}: {exc}")
    return _error_response(400, str(exc))

@app.exception_handler(KeyMismatchError)
async def key_mismatch_handler(request: Request, exc: KeyMismatchError):
    logger.info(f"Key mismatch on {request.url.path}")
    return _error_response(400, "Invalid decryption key")

@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return _error_response(404, str(exc))

@app.exception_handler(ForbiddenError)
async def forbidden_handler(request: Request, exc: ForbiddenError):
    return _error_response(403, str(exc))

@app.exception_handler(KeyUnwrapError)
@app.exception_handler(StorageError)
async def server_error_handler(request: Request, exc: Exception):
    logger.error(f"{type(exc).__name__} on {request.url.path}: {exc}")
    detail = f"{type(exc).__name__}: {exc}" if settings.DEBUG else "Server Error"
    return _error_response(500, detail)

app.include_router(files_router.router)
app.include_router(users_router.router)

@app.get("/ping")
async def ping():
    return {"ping": "pong! from SSS"}

@app.get("/")
async def read_root():
    return {"message": "Welcome to the Secure Share Service API"}

if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting SSS on {settings.SSS_HOST}:{settings.SSS_PORT}")
    uvicorn.run("main:app", host=settings.SSS_HOST, port=settings.SSS_PORT, reload=True)
