"""In-memory document store with optimistic transactions.

Suitable for development and testing. Documents live only in this process;
they are lost when it terminates.
"""

import asyncio
import copy
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from herald.core.errors import TransactionConflictError
from herald.store.base import (
    DEFAULT_TRANSACTION_ATTEMPTS,
    merge_document,
    order_value,
)

T = TypeVar("T")

_Key = tuple[str, str]


class MemoryTransaction:
    """Buffers writes and remembers the version of every document it read."""

    def __init__(self, store: "MemoryStore") -> None:
        self._store = store
        self.reads: dict[_Key, int] = {}
        self.writes: list[tuple[_Key, dict[str, Any], bool]] = []

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        # Yield like a network round trip so concurrent transactions interleave
        await asyncio.sleep(0)
        version, doc = self._store._read(collection, doc_id)
        self.reads.setdefault((collection, doc_id), version)
        return copy.deepcopy(doc)

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        self.writes.append(((collection, doc_id), copy.deepcopy(data), merge))


class MemoryStore:
    """Document store backed by dicts, guarded by an ``asyncio.Lock``.

    Every document carries a version counter. A transaction commits only if
    the versions of all documents it read are unchanged; otherwise the
    transaction function is run again.
    """

    def __init__(self) -> None:
        self._docs: dict[str, dict[str, tuple[int, dict[str, Any]]]] = {}
        self._version = 0
        self._lock = asyncio.Lock()
        self.commits = 0
        self.conflicts = 0

    def _read(self, collection: str, doc_id: str) -> tuple[int, dict[str, Any] | None]:
        entry = self._docs.get(collection, {}).get(doc_id)
        if entry is None:
            return 0, None
        return entry

    def _write(self, collection: str, doc_id: str, doc: dict[str, Any]) -> None:
        self._version += 1
        self._docs.setdefault(collection, {})[doc_id] = (self._version, doc)

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        _, doc = self._read(collection, doc_id)
        return copy.deepcopy(doc)

    async def create_if_absent(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> bool:
        async with self._lock:
            _, existing = self._read(collection, doc_id)
            if existing is not None:
                return False
            self._write(collection, doc_id, copy.deepcopy(data))
            return True

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        async with self._lock:
            _, current = self._read(collection, doc_id)
            self._write(collection, doc_id, merge_document(current, copy.deepcopy(data), merge))

    async def run_transaction(
        self,
        fn: Callable[[MemoryTransaction], Awaitable[T]],
        max_attempts: int = DEFAULT_TRANSACTION_ATTEMPTS,
    ) -> T:
        for _ in range(max_attempts):
            tx = MemoryTransaction(self)
            result = await fn(tx)
            async with self._lock:
                if any(self._read(c, d)[0] != v for (c, d), v in tx.reads.items()):
                    self.conflicts += 1
                    continue
                for (collection, doc_id), data, merge in tx.writes:
                    _, current = self._read(collection, doc_id)
                    self._write(collection, doc_id, merge_document(current, data, merge))
                self.commits += 1
                return result
        raise TransactionConflictError(
            f"transaction did not commit after {max_attempts} attempts", attempts=max_attempts
        )

    async def query(
        self,
        collection: str,
        field: str,
        value: Any,
        order_by: str = "created_at",
        limit: int = 50,
        descending: bool = False,
    ) -> list[tuple[str, dict[str, Any]]]:
        matches = [
            (doc_id, doc)
            for doc_id, (_, doc) in self._docs.get(collection, {}).items()
            if doc.get(field) == value
        ]
        matches.sort(key=lambda item: (order_value(item[1].get(order_by)), item[0]), reverse=descending)
        return [(doc_id, copy.deepcopy(doc)) for doc_id, doc in matches[: max(limit, 0)]]

    def documents(self, collection: str) -> dict[str, dict[str, Any]]:
        """Snapshot of a whole collection, keyed by document id."""
        return {doc_id: copy.deepcopy(doc) for doc_id, (_, doc) in self._docs.get(collection, {}).items()}

    async def close(self) -> None:
        pass
