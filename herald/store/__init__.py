"""Document store implementations."""

from herald.store.base import DocumentStore, Transaction
from herald.store.memory import MemoryStore
from herald.store.redis_store import RedisStore

__all__ = ["DocumentStore", "MemoryStore", "RedisStore", "Transaction"]
