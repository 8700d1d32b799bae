"""Redis document store.

Features:
- Documents stored as JSON strings at ``{prefix}:{collection}:{id}``
- Optimistic transactions with WATCH/MULTI/EXEC
- Sorted-set indexes per ``(field, value)`` scored by ``created_at``
- Lazy connection pooling
- Health checks
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar
from urllib.parse import urlparse, urlunparse

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, WatchError

from herald.core.errors import StoreError, StoreUnavailableError, TransactionConflictError
from herald.store.base import DEFAULT_TRANSACTION_ATTEMPTS, merge_document, order_value

logger = logging.getLogger("herald.store.redis")

T = TypeVar("T")

DEFAULT_INDEXED_FIELDS = ("status", "kind", "suppressed", "read")
INDEX_SCORE_FIELD = "created_at"


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username or ''}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except ValueError:
        return "<url>"


def _index_token(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


@dataclass
class StoreHealth:
    """Health check result."""

    healthy: bool
    latency_ms: float
    details: dict[str, Any]


class RedisTransaction:
    """Transaction bound to a WATCHing pipeline."""

    def __init__(self, store: "RedisStore", pipe: Any) -> None:
        self._store = store
        self._pipe = pipe
        self.reads: dict[str, dict[str, Any] | None] = {}
        self.writes: list[tuple[str, str, dict[str, Any], bool]] = []

    async def _watch_and_read(self, key: str) -> dict[str, Any] | None:
        if key not in self.reads:
            await self._pipe.watch(key)
            raw = await self._pipe.get(key)
            self.reads[key] = json.loads(raw) if raw is not None else None
        return self.reads[key]

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = await self._watch_and_read(self._store.doc_key(collection, doc_id))
        return json.loads(json.dumps(doc)) if doc is not None else None

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        self.writes.append((collection, doc_id, data, merge))

    async def commit(self) -> None:
        # Old versions are needed for index maintenance, so unread targets are watched too
        for collection, doc_id, _, _ in self.writes:
            await self._watch_and_read(self._store.doc_key(collection, doc_id))

        staged: dict[str, tuple[str, str, dict[str, Any] | None, dict[str, Any]]] = {}
        for collection, doc_id, data, merge in self.writes:
            key = self._store.doc_key(collection, doc_id)
            old = staged[key][3] if key in staged else self.reads[key]
            staged[key] = (collection, doc_id, self.reads[key], merge_document(old, data, merge))

        self._pipe.multi()
        for key, (collection, doc_id, old, new) in staged.items():
            self._pipe.set(key, json.dumps(new))
            self._store.stage_index_updates(self._pipe, collection, doc_id, old, new)
        await self._pipe.execute()


class RedisStore:
    """Document store on Redis with optimistic WATCH/MULTI transactions."""

    def __init__(
        self,
        redis_url: str,
        prefix: str = "herald",
        indexed_fields: tuple[str, ...] = DEFAULT_INDEXED_FIELDS,
        pool_size: int = 10,
    ) -> None:
        """Initialize Redis store.

        Args:
            redis_url: Redis connection URL.
            prefix: Key prefix for every document and index.
            indexed_fields: Fields ``query`` may filter on.
            pool_size: Connection pool size.
        """
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self.prefix = prefix
        self.indexed_fields = indexed_fields
        self._pool_size = pool_size

        self._redis: Redis | None = None
        self._conn_lock = asyncio.Lock()

    def doc_key(self, collection: str, doc_id: str) -> str:
        return f"{self.prefix}:{collection}:{doc_id}"

    def index_key(self, collection: str, field: str, value: Any) -> str:
        return f"{self.prefix}:{collection}:idx:{field}:{_index_token(value)}"

    async def _get_client(self) -> Redis:
        """Get Redis client, connecting lazily under a lock."""
        if self._redis is not None:
            return self._redis

        async with self._conn_lock:
            if self._redis is not None:
                return self._redis

            pool = ConnectionPool.from_url(
                self._url, max_connections=self._pool_size, decode_responses=True
            )
            client = Redis(connection_pool=pool)
            try:
                await client.ping()
            except RedisError as e:
                await client.aclose()
                raise StoreUnavailableError(f"Redis at {self._url_safe} unreachable: {e}") from e

            self._redis = client
            logger.info(f"Connected to Redis at {self._url_safe}")
            return client

    def stage_index_updates(
        self,
        pipe: Any,
        collection: str,
        doc_id: str,
        old: dict[str, Any] | None,
        new: dict[str, Any],
    ) -> None:
        score = order_value(new.get(INDEX_SCORE_FIELD))
        if score == float("-inf"):
            score = 0.0
        for field in self.indexed_fields:
            old_present = old is not None and field in old
            if old_present and (field not in new or old[field] != new[field]):
                pipe.zrem(self.index_key(collection, field, old[field]), doc_id)
            if field in new:
                pipe.zadd(self.index_key(collection, field, new[field]), {doc_id: score})

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        client = await self._get_client()
        try:
            raw = await client.get(self.doc_key(collection, doc_id))
        except RedisConnectionError as e:
            raise StoreUnavailableError(str(e)) from e
        return json.loads(raw) if raw is not None else None

    async def create_if_absent(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> bool:
        async def create(tx: RedisTransaction) -> bool:
            if await tx.get(collection, doc_id) is not None:
                return False
            tx.set(collection, doc_id, data)
            return True

        return await self.run_transaction(create)

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        async def write(tx: RedisTransaction) -> None:
            tx.set(collection, doc_id, data, merge=merge)

        await self.run_transaction(write)

    async def run_transaction(
        self,
        fn: Callable[[RedisTransaction], Awaitable[T]],
        max_attempts: int = DEFAULT_TRANSACTION_ATTEMPTS,
    ) -> T:
        client = await self._get_client()
        for attempt in range(1, max_attempts + 1):
            try:
                async with client.pipeline(transaction=True) as pipe:
                    tx = RedisTransaction(self, pipe)
                    result = await fn(tx)
                    await tx.commit()
                    return result
            except WatchError:
                logger.debug(f"Transaction conflict, attempt {attempt}/{max_attempts}")
                continue
            except RedisConnectionError as e:
                raise StoreUnavailableError(str(e)) from e
        raise TransactionConflictError(
            f"transaction did not commit after {max_attempts} attempts", attempts=max_attempts
        )

    async def query(
        self,
        collection: str,
        field: str,
        value: Any,
        order_by: str = INDEX_SCORE_FIELD,
        limit: int = 50,
        descending: bool = False,
    ) -> list[tuple[str, dict[str, Any]]]:
        if field not in self.indexed_fields:
            raise StoreError(f"field {field!r} is not indexed in {collection!r}")
        if order_by != INDEX_SCORE_FIELD:
            raise StoreError(f"only {INDEX_SCORE_FIELD!r} ordering is supported, got {order_by!r}")
        if limit <= 0:
            return []

        client = await self._get_client()
        try:
            ids = await client.zrange(
                self.index_key(collection, field, value), 0, limit - 1, desc=descending
            )
            if not ids:
                return []
            raws = await client.mget([self.doc_key(collection, doc_id) for doc_id in ids])
        except RedisConnectionError as e:
            raise StoreUnavailableError(str(e)) from e

        results = []
        for doc_id, raw in zip(ids, raws, strict=True):
            if raw is None:
                continue
            doc = json.loads(raw)
            # The document may have moved on between ZRANGE and MGET
            if doc.get(field) == value:
                results.append((doc_id, doc))
        return results

    async def health(self) -> StoreHealth:
        """Check store health."""
        start = time.monotonic()
        try:
            client = await self._get_client()
            await client.ping()
            return StoreHealth(
                healthy=True,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"url": self._url_safe, "prefix": self.prefix},
            )
        except (RedisError, StoreError) as e:
            return StoreHealth(
                healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"error": str(e)},
            )

    async def flush(self) -> None:
        """Delete every key under the prefix (for testing)."""
        client = await self._get_client()
        keys = [key async for key in client.scan_iter(match=f"{self.prefix}:*")]
        if keys:
            await client.delete(*keys)

    async def close(self) -> None:
        """Close Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")
