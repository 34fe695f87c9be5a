"""
Expiry sweep for file and share records.

Reads already hide anything past its expires_at (see crud). The reaper is what
physically removes those rows, together with the ciphertext blobs of expired
files, so that storage does not fill up with orphans. It keeps no state of its
own: each sweep starts from what is in the database, so a restarted process
simply picks up where the last one stopped.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

import crud
import models
from cipher_store import CipherStore
from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class SweepReport:
    files: int = 0
    shares: int = 0
    blobs: int = 0


class Reaper:
    def __init__(self, session_factory: sessionmaker, cipher_store: CipherStore, interval_seconds: float = 60.0):
        self.session_factory = session_factory
        self.cipher_store = cipher_store
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or models.utcnow()
        report = SweepReport()
        async with self.session_factory() as db:
            expired = await crud.get_expired_files(db, now)
            # Blobs before rows; an interrupted sweep resumes from the rows.
            for file in expired:
                if await self.cipher_store.delete_if_exists(file.storage_path):
                    report.blobs += 1
            expired_ids = [file.id for file in expired]
            report.shares = await crud.purge_expired_shares(db, now, expired_ids)
            report.files = await crud.purge_file_records(db, expired_ids)

        if report.files or report.shares:
            logger.info(
                f"Expiry sweep removed {report.files} file(s), {report.shares} share(s), "
                f"{report.blobs} blob(s)"
            )
        return report

    async def run(self) -> None:
        logger.info(f"Reaper started, sweeping every {self.interval_seconds}s")
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("Expiry sweep failed; will retry on next tick")
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Reaper stopped")
