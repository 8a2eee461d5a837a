"""Device identity derivation and persistence.

The device id and the fingerprint seed live in the secure vault so they
survive reinstalls; a plaintext mirror in the cache serves the per-request
fast path. The fingerprint itself is not secret, only its seed is.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import platform
import re
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from pydantic import BaseModel, Field

from .config import AuthConfig
from .errors import IdentityUnavailable, StorageError
from .retry import RetryConfig, retry_async
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

# Vault keys
VAULT_DEVICE_ID = 'device_id'
VAULT_SEED = 'device_fingerprint'
VAULT_FIRST_SEEN = 'device_first_seen'

# Cache mirror keys
CACHE_DEVICE_ID = 'device_id'
CACHE_FINGERPRINT = 'device_fingerprint'
CACHE_SIGNATURE = 'fingerprint_signature'
CACHE_USER_AGENT = 'user_agent'

VAULT_KEYS = [VAULT_DEVICE_ID, VAULT_SEED, VAULT_FIRST_SEEN]
CACHE_KEYS = [CACHE_DEVICE_ID, CACHE_FINGERPRINT, CACHE_SIGNATURE, CACHE_USER_AGENT]

_SEED_PATTERN = re.compile(r'^[0-9a-f]{64}$')


@dataclass(frozen=True)
class DeviceMetadata:
    """Descriptive device attributes mixed into the identity and fingerprint."""

    model: str
    brand: str
    platform: str
    os_version: str

    @classmethod
    def from_host(cls) -> 'DeviceMetadata':
        system = platform.system() or 'Unknown'
        return cls(
            model=platform.machine() or 'Unknown',
            brand=system,
            platform=system.lower(),
            os_version=platform.release() or 'Unknown',
        )


class DeviceIdentity(BaseModel):
    """Stable identity attached to every request."""

    device_id: str = Field(..., description='Stable per-installation identifier')
    fingerprint: str = Field(..., description='URL-safe base64 JSON blob describing the device')
    signature: str = Field(..., description='HMAC-SHA256 of the fingerprint keyed by the vault seed')
    user_agent: str = Field(..., description='Client user agent string')

    @property
    def short_id(self) -> str:
        """Truncated device id for log lines."""
        return self.device_id[:20] + '...'

    def headers(self) -> Dict[str, str]:
        return {
            'X-Device-ID': self.device_id,
            'X-Device-Fingerprint': self.fingerprint,
            'X-Fingerprint-Signature': self.signature,
            'User-Agent': self.user_agent,
        }

    def request_fields(self) -> Dict[str, str]:
        """Device fields included in login request bodies."""
        return {
            'device_id': self.device_id,
            'device_fingerprint': self.fingerprint,
            'user_agent': self.user_agent,
        }


def _base36(number: int) -> str:
    digits = '0123456789abcdefghijklmnopqrstuvwxyz'
    if number == 0:
        return '0'
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return ''.join(reversed(out))


class DeviceIdentityManager:
    """
    Derives and persists the device identity.

    Example:
        >>> manager = DeviceIdentityManager(vault, cache, AuthConfig())
        >>> identity = await manager.ensure_identity()
        >>> identity.device_id
        'prayantra-linux-3f9a0c...'
    """

    def __init__(
        self,
        vault: KeyValueStore,
        cache: KeyValueStore,
        config: AuthConfig,
        metadata: Optional[DeviceMetadata] = None,
        retry_config: Optional[RetryConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.vault = vault
        self.cache = cache
        self.config = config
        self.metadata = metadata or DeviceMetadata.from_host()
        self.retry_config = retry_config or RetryConfig()
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def user_agent(self) -> str:
        return f'{self.config.app_name}/{self.config.app_version} ({self.metadata.brand})'

    async def ensure_identity(self) -> DeviceIdentity:
        """
        Return the device identity, creating and persisting it on first use.

        Idempotent: an existing vault record always yields the same id and
        fingerprint.

        Raises:
            IdentityUnavailable: If the secure vault stays inaccessible after retry
        """
        async with self._lock:
            try:
                record = await self._vault_call(self._read_vault_record, 'vault read')
                if record is None:
                    record = await self._create_record()
                    await self._vault_call(lambda: self._write_vault_record(*record), 'vault write')
                    logger.info(f'Generated new device identity {record[0][:20]}...')
            except StorageError as e:
                raise IdentityUnavailable(f'Secure vault unavailable: {e}') from e

            identity = self._build_identity(*record)
            await self._mirror_to_cache(identity)
            return identity

    async def get_cached_identity(self) -> DeviceIdentity:
        """
        Fast path: read the identity mirror from the cache.

        Falls back to ``ensure_identity`` when the mirror is incomplete.
        """
        try:
            values = [await self.cache.get(key) for key in CACHE_KEYS]
        except StorageError as e:
            logger.warning(f'Identity cache unreadable, using vault: {e}')
            values = [None]

        if all(values):
            device_id, fingerprint, signature, user_agent = values
            return DeviceIdentity(device_id=device_id, fingerprint=fingerprint, signature=signature, user_agent=user_agent)

        return await self.ensure_identity()

    async def remove_identity(self) -> None:
        """Best-effort removal of the identity from both tiers (account removal)."""
        for store, keys, name in ((self.vault, VAULT_KEYS, 'vault'), (self.cache, CACHE_KEYS, 'cache')):
            try:
                await store.delete_many(keys)
            except StorageError as e:
                logger.warning(f'Failed to remove device identity from {name}: {e}')
        logger.info('Device identity removed')

    async def _vault_call(self, operation, description: str):
        return await retry_async(operation, self.retry_config, (StorageError,), description)

    async def _read_vault_record(self) -> Optional[tuple]:
        device_id = await self.vault.get(VAULT_DEVICE_ID)
        seed = await self.vault.get(VAULT_SEED)

        if not device_id:
            return None
        if not seed or not _SEED_PATTERN.match(seed):
            logger.warning('Vault device record is corrupt, regenerating identity')
            return None

        first_seen = await self.vault.get(VAULT_FIRST_SEEN) or 'unknown'
        return device_id, seed, first_seen

    async def _write_vault_record(self, device_id: str, seed: str, first_seen: str) -> None:
        await self.vault.set(VAULT_DEVICE_ID, device_id)
        await self.vault.set(VAULT_SEED, seed)
        await self.vault.set(VAULT_FIRST_SEEN, first_seen)

    async def _create_record(self) -> tuple:
        now = self._clock()
        random_bytes = secrets.token_bytes(32)
        timestamp = _base36(int(now * 1000))
        material = '-'.join(
            [self.metadata.model, self.metadata.brand, self.metadata.platform, timestamp, random_bytes.hex()]
        )
        digest = hashlib.sha256(material.encode('utf-8')).hexdigest()

        # Adopt an id left in the cache by an older install so the backend still recognizes it
        try:
            legacy_id = await self.cache.get(CACHE_DEVICE_ID)
        except StorageError:
            legacy_id = None
        if legacy_id:
            logger.info('Migrating cached device id into the secure vault')
            device_id = legacy_id
        else:
            device_id = f'prayantra-{self.metadata.platform}-{digest[:16]}'

        first_seen = datetime.fromtimestamp(now, tz=timezone.utc).date().isoformat()
        return device_id, digest, first_seen

    def _build_identity(self, device_id: str, seed: str, first_seen: str) -> DeviceIdentity:
        fingerprint_data = {
            'device_id': device_id,
            'persistent_hash': seed[16:32],
            'device_model': self.metadata.model,
            'device_brand': self.metadata.brand,
            'platform': self.metadata.platform,
            'os_version': self.metadata.os_version,
            'app_name': self.config.app_name,
            'app_version': self.config.app_version,
            'first_seen': first_seen,
        }
        encoded = json.dumps(fingerprint_data, sort_keys=True, separators=(',', ':')).encode('utf-8')
        fingerprint = base64.urlsafe_b64encode(encoded).decode('ascii').rstrip('=')
        signature = hmac.new(seed.encode('utf-8'), fingerprint.encode('ascii'), hashlib.sha256).hexdigest()

        return DeviceIdentity(device_id=device_id, fingerprint=fingerprint, signature=signature, user_agent=self.user_agent)

    async def _mirror_to_cache(self, identity: DeviceIdentity) -> None:
        try:
            await self.cache.set(CACHE_DEVICE_ID, identity.device_id)
            await self.cache.set(CACHE_FINGERPRINT, identity.fingerprint)
            await self.cache.set(CACHE_SIGNATURE, identity.signature)
            await self.cache.set(CACHE_USER_AGENT, identity.user_agent)
        except StorageError as e:
            logger.warning(f'Failed to mirror device identity into cache: {e}')
