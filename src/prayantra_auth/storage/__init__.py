"""Persistence tiers: plaintext cache and secure vault."""

from .base import InMemoryKeyValueStore, KeyValueStore
from .lmdb_store import EncryptedLMDBKeyValueStore, LMDBKeyValueStore

__all__ = ['EncryptedLMDBKeyValueStore', 'InMemoryKeyValueStore', 'KeyValueStore', 'LMDBKeyValueStore']
