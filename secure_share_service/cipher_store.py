import asyncio
import os
import re
import secrets
import time
from pathlib import Path

import aiofiles
import aiofiles.os
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from exceptions import KeyMismatchError, StorageError
from key_manager import FILE_KEY_SIZE, NONCE_SIZE
from logging_config import get_logger

logger = get_logger(__name__)

TAG_SIZE = 16
WRITE_CHUNK_SIZE = 1024 * 1024
_SAFE_EXTENSION = re.compile(r"^\.[A-Za-z0-9]{1,16}$")

def encrypt_bytes_aes_gcm(plaintext: bytes, key: bytes) -> bytes:
    """Return nonce || ciphertext || tag."""
    if len(key) != FILE_KEY_SIZE:
        raise ValueError("AES-GCM file key must be 256 bits")
    nonce = os.urandom(NONCE_SIZE)
    return nonce + AESGCM(key).encrypt(nonce, plaintext, None)

def decrypt_bytes_aes_gcm(blob: bytes, key: bytes) -> bytes:
    if len(blob) < NONCE_SIZE + TAG_SIZE:
        raise StorageError("Stored blob is truncated")
    try:
        return AESGCM(key).decrypt(blob[:NONCE_SIZE], blob[NONCE_SIZE:], None)
    except InvalidTag as e:
        raise KeyMismatchError("Invalid decryption key") from e

class CipherStore:
    """
    Encrypt-before-write and decrypt-after-read over a directory of blobs.

    Handles returned by encrypt_and_store are paths relative to base_path; they
    are opaque to callers and never derived from a user-supplied filename.
    """

    def __init__(self, base_path: Path):
        self.base_path = Path(base_path)

    @staticmethod
    def generate_storage_name(original_name: str = "") -> str:
        extension = Path(original_name or "").suffix
        if not _SAFE_EXTENSION.match(extension):
            extension = ""
        return f"{int(time.time() * 1000)}-{secrets.token_hex(5)}{extension.lower()}"

    def _resolve(self, handle: str) -> Path:
        base = self.base_path.resolve()
        path = (base / handle).resolve()
        if base not in path.parents:
            raise StorageError(f"Handle escapes storage root: {handle}")
        return path

    async def encrypt_and_store(self, plain: bytes, key: bytes, original_name: str = "") -> str:
        storage_name = self.generate_storage_name(original_name)
        shard = storage_name.split("-")[1][:2]
        handle = f"{shard}/{storage_name}"
        path = self._resolve(handle)

        blob = await asyncio.to_thread(encrypt_bytes_aes_gcm, plain, key)

        logger.debug(f"Writing {len(blob)} encrypted bytes to {path}")
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(path, 'xb') as out_file:
                for offset in range(0, len(blob), WRITE_CHUNK_SIZE):
                    await out_file.write(blob[offset:offset + WRITE_CHUNK_SIZE])
        except OSError as e:
            logger.exception(f"Error writing encrypted blob to {path}")
            raise StorageError(f"Failed to save file: {e}") from e
        return handle

    async def load_and_decrypt(self, handle: str, key: bytes) -> bytes:
        path = self._resolve(handle)
        try:
            async with aiofiles.open(path, 'rb') as in_file:
                blob = await in_file.read()
        except FileNotFoundError as e:
            logger.error(f"Encrypted blob missing from storage at {path}")
            raise StorageError("File found in DB but not in storage. Inconsistency.") from e
        except OSError as e:
            logger.exception(f"Error reading encrypted blob at {path}")
            raise StorageError(f"Failed to read file: {e}") from e
        return await asyncio.to_thread(decrypt_bytes_aes_gcm, blob, key)

    async def delete(self, handle: str) -> None:
        path = self._resolve(handle)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError as e:
            raise StorageError(f"Stored blob already absent: {handle}") from e
        except OSError as e:
            logger.exception(f"Error deleting encrypted blob at {path}")
            raise StorageError(f"Failed to delete file: {e}") from e
        logger.info(f"Deleted encrypted blob {handle}")

    async def delete_if_exists(self, handle: str) -> bool:
        try:
            await self.delete(handle)
        except StorageError:
            if await aiofiles.os.path.exists(self._resolve(handle)):
                raise
            logger.warning(f"Blob {handle} was already absent; treating delete as done")
            return False
        return True
