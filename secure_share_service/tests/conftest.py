import os
import sys
import tempfile
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

os.environ.setdefault("MASTER_SECRET", "test-master-secret-do-not-use-in-production")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("STORAGE_BASE_PATH", str(Path(tempfile.gettempdir()) / "filestorage_sss_pytest"))

from typing import AsyncGenerator

import pytest
import pytest_asyncio
import httpx
from httpx import AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
from models import Base
from database import get_db
from config import settings
from cipher_store import CipherStore
from key_manager import KeyManager
from vault import FileVault
import crud

TEST_MASTER_SECRET = "test-master-secret-do-not-use-in-production"

@pytest_asyncio.fixture(scope="function")
async def test_engine():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()

@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(
        autocommit=False, autoflush=False, bind=test_engine, class_=AsyncSession, expire_on_commit=False
    )

@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()

@pytest.fixture(scope="function")
def mock_sss_settings(tmp_path, monkeypatch):
    mock_storage_path = tmp_path / "filestorage_sss_test"
    mock_storage_path.mkdir()
    monkeypatch.setattr(settings, 'STORAGE_BASE_PATH', mock_storage_path)
    monkeypatch.setattr(settings, 'FRONTEND_URL', 'http://frontend.test')
    return settings

@pytest_asyncio.fixture(scope="function")
async def async_client(db_session: AsyncSession, mock_sss_settings) -> AsyncGenerator[AsyncClient, None]:
    def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = httpx.ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testsss") as client:
        yield client

    app.dependency_overrides.clear()

@pytest.fixture
def key_manager() -> KeyManager:
    return KeyManager(TEST_MASTER_SECRET)

@pytest.fixture
def cipher_store(tmp_path) -> CipherStore:
    return CipherStore(tmp_path / "blobs")

@pytest.fixture
def vault(mock_sss_settings, key_manager, cipher_store) -> FileVault:
    return FileVault(mock_sss_settings, key_manager, cipher_store)

@pytest_asyncio.fixture
async def users(db_session: AsyncSession):
    alice = await crud.create_user(db_session, "alice@example.com", "Alice")
    bob = await crud.create_user(db_session, "bob@example.com", "Bob")
    carol = await crud.create_user(db_session, "carol@example.com", "Carol")
    return {"alice": alice, "bob": bob, "carol": carol}

