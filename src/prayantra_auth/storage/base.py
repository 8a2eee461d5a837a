"""
Key-value store capability used for both persistence tiers.

The plaintext cache and the secure vault expose the same async interface so
the device identity manager and session store can compose them explicitly.
"""

from abc import ABC, abstractmethod
from typing import Dict, Iterable, Optional


class KeyValueStore(ABC):
    """
    Abstract async string key-value store.

    Implementations raise ``StorageError`` when the backend is unavailable.
    A missing key is not an error: ``get`` returns None and ``delete`` is a no-op.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when the key is absent."""
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any existing value."""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        pass

    async def delete_many(self, keys: Iterable[str]) -> None:
        """Remove several keys."""
        for key in keys:
            await self.delete(key)

    @abstractmethod
    async def clear(self) -> None:
        """Remove every key."""
        pass

    def close(self) -> None:
        """Release backend resources."""
        pass


class InMemoryKeyValueStore(KeyValueStore):
    """
    In-memory store for tests and ephemeral sessions.

    Fast but not durable: contents are lost on process exit.
    """

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def clear(self) -> None:
        self._data.clear()

    def snapshot(self) -> Dict[str, str]:
        """Copy of the current contents."""
        return dict(self._data)
