"""
Per-file key generation and envelope wrapping.

Every uploaded file gets its own random AES-256 key. That key is never stored as
is: it is sealed with AES-GCM under a master key derived from the service's
MASTER_SECRET, and only the sealed form (the "wrapped key") is persisted next to
the file metadata. Losing or rotating the master secret strands every wrapped
key; there is no recovery path.
"""

import base64
import binascii
import os
from typing import Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from exceptions import KeyMismatchError, KeyUnwrapError

FILE_KEY_SIZE = 32
NONCE_SIZE = 12
_WRAP_AAD = b"secure-share:file-key"


class KeyManager:
    def __init__(self, master_secret: Union[str, bytes], context: str = "secure-share-service/file-key-wrap/v1"):
        if isinstance(master_secret, str):
            master_secret = master_secret.encode("utf-8")
        if not master_secret:
            raise ValueError("master secret must not be empty")
        hkdf = HKDF(
            algorithm=hashes.SHA256(),
            length=32,
            salt=None,
            info=context.encode("utf-8"),
        )
        self._master = AESGCM(hkdf.derive(master_secret))

    @staticmethod
    def generate_file_key() -> bytes:
        """Return a fresh 256-bit key from the OS CSPRNG."""
        return os.urandom(FILE_KEY_SIZE)

    def wrap(self, key: bytes) -> str:
        """
        Seal a file key under the master key.

        Output is base64(nonce || ciphertext || tag). A fresh nonce is used on
        every call, so wrapping the same key twice gives different strings.
        """
        if len(key) != FILE_KEY_SIZE:
            raise ValueError(f"file key must be {FILE_KEY_SIZE} bytes")
        nonce = os.urandom(NONCE_SIZE)
        sealed = self._master.encrypt(nonce, key, _WRAP_AAD)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def unwrap(self, wrapped_key: str) -> bytes:
        """
        Open a wrapped key. Raises KeyUnwrapError when the blob is malformed or
        was sealed under a different master secret.
        """
        try:
            raw = base64.b64decode(wrapped_key, validate=True)
        except (binascii.Error, ValueError, TypeError) as e:
            raise KeyUnwrapError("wrapped key is not valid base64") from e
        if len(raw) <= NONCE_SIZE:
            raise KeyUnwrapError("wrapped key is truncated")
        nonce, sealed = raw[:NONCE_SIZE], raw[NONCE_SIZE:]
        try:
            key = self._master.decrypt(nonce, sealed, _WRAP_AAD)
        except InvalidTag as e:
            raise KeyUnwrapError("wrapped key does not open under the current master secret") from e
        if len(key) != FILE_KEY_SIZE:
            raise KeyUnwrapError("unwrapped key has the wrong length")
        return key

    @staticmethod
    def export_key(key: bytes) -> str:
        return key.hex()

    @staticmethod
    def import_key(text: str) -> bytes:
        try:
            key = bytes.fromhex(text.strip())
        except ValueError as e:
            raise KeyMismatchError("Invalid decryption key") from e
        if len(key) != FILE_KEY_SIZE:
            raise KeyMismatchError("Invalid decryption key")
        return key
