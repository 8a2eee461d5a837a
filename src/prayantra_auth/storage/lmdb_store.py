"""
LMDB-backed key-value stores for the two persistence tiers.

``LMDBKeyValueStore`` is the plaintext cache. ``EncryptedLMDBKeyValueStore``
is the secure vault: the same layout, with every value sealed by a Fernet key
held outside the database.
"""

import base64
import hashlib
import logging
import os
from pathlib import Path
from typing import Iterable, Optional

import lmdb
from cryptography.fernet import Fernet, InvalidToken

from ..errors import StorageError
from .base import KeyValueStore

VAULT_KEY_FILE = 'vault.key'


class LMDBKeyValueStore(KeyValueStore):
    """
    Durable string store in a single LMDB environment.

    Keys and values are UTF-8 encoded. Writes run in one transaction each and
    are synced to disk before returning when ``sync`` is enabled.
    """

    env: lmdb.Environment

    def __init__(self, data_dir: Path, map_size: int = 16 * 1024 * 1024, sync: bool = True):
        """
        Open (or create) the LMDB environment.

        Args:
            data_dir: Directory for the LMDB files
            map_size: Maximum database size in bytes (default: 16MB)
            sync: Whether to sync writes to disk
        """
        self.data_dir = Path(data_dir)
        self.logger = logging.getLogger(__name__)

        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            self.env = lmdb.open(str(self.data_dir), map_size=map_size, sync=sync, max_dbs=1)
        except (OSError, lmdb.Error) as e:
            raise StorageError(f'Failed to open store at {self.data_dir}: {e}') from e

        self.logger.debug(f'Opened LMDB store at {self.data_dir}')

    def _encode(self, value: str) -> bytes:
        return value.encode('utf-8')

    def _decode(self, raw: bytes) -> str:
        return raw.decode('utf-8')

    async def get(self, key: str) -> Optional[str]:
        try:
            with self.env.begin() as txn:
                raw = txn.get(key.encode('utf-8'))
        except lmdb.Error as e:
            raise StorageError(f'Failed to read {key!r}: {e}') from e
        return None if raw is None else self._decode(raw)

    async def set(self, key: str, value: str) -> None:
        try:
            with self.env.begin(write=True) as txn:
                txn.put(key.encode('utf-8'), self._encode(value))
        except lmdb.Error as e:
            raise StorageError(f'Failed to write {key!r}: {e}') from e

    async def delete(self, key: str) -> None:
        try:
            with self.env.begin(write=True) as txn:
                txn.delete(key.encode('utf-8'))
        except lmdb.Error as e:
            raise StorageError(f'Failed to delete {key!r}: {e}') from e

    async def delete_many(self, keys: Iterable[str]) -> None:
        try:
            with self.env.begin(write=True) as txn:
                for key in keys:
                    txn.delete(key.encode('utf-8'))
        except lmdb.Error as e:
            raise StorageError(f'Failed to delete keys: {e}') from e

    async def clear(self) -> None:
        try:
            with self.env.begin(write=True) as txn:
                txn.drop(self.env.open_db(txn=txn), delete=False)
        except lmdb.Error as e:
            raise StorageError(f'Failed to clear store: {e}') from e

    def close(self) -> None:
        self.env.close()


def derive_vault_key(secret: str) -> bytes:
    """Derive a Fernet key from configured key material."""
    digest = hashlib.sha256(secret.encode('utf-8')).digest()
    return base64.urlsafe_b64encode(digest)


def load_or_create_vault_key(data_dir: Path) -> bytes:
    """Read the vault key file, creating it with owner-only permissions on first use."""
    key_path = Path(data_dir) / VAULT_KEY_FILE
    if key_path.exists():
        return key_path.read_bytes().strip()

    key_path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, 'wb') as f:
        f.write(key)
    return key


class EncryptedLMDBKeyValueStore(LMDBKeyValueStore):
    """
    Secure vault tier: LMDB store whose values are Fernet-encrypted at rest.

    A value that fails authentication (wrong key, tampered record) reads as
    absent so callers treat it like a missing record.
    """

    def __init__(self, data_dir: Path, key: Optional[bytes] = None, **kwargs):
        super().__init__(data_dir, **kwargs)
        try:
            self._fernet = Fernet(key or load_or_create_vault_key(self.data_dir.parent))
        except (OSError, ValueError) as e:
            raise StorageError(f'Vault key unavailable: {e}') from e

    def _encode(self, value: str) -> bytes:
        return self._fernet.encrypt(value.encode('utf-8'))

    def _decode(self, raw: bytes) -> Optional[str]:
        try:
            return self._fernet.decrypt(raw).decode('utf-8')
        except InvalidToken:
            self.logger.warning('Discarding vault record that failed decryption')
            return None
