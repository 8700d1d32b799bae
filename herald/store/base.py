"""Document store protocol.

ALL coordination between workers happens through the store. Every status
transition runs inside ``run_transaction``: the transaction function re-reads
the documents it touches, re-checks its precondition and buffers its writes;
the store commits them only if none of the documents read have changed since,
and otherwise re-runs the function.
"""

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, Protocol, TypeVar

T = TypeVar("T")

DEFAULT_TRANSACTION_ATTEMPTS = 5


class Transaction(Protocol):
    """Read-modify-write scope handed to a transaction function."""

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Read a document and register it for the commit-time version check."""
        ...

    def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        """Buffer a write applied atomically at commit.

        With ``merge=True`` top-level keys of ``data`` are merged into the
        current document (which must have been read in this transaction).
        """
        ...


class DocumentStore(Protocol):
    """Collection-oriented store with per-document optimistic transactions."""

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    async def create_if_absent(
        self, collection: str, doc_id: str, data: dict[str, Any]
    ) -> bool:
        """Create the document unless it exists. Returns True if created."""
        ...

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None: ...

    async def run_transaction(
        self,
        fn: Callable[[Transaction], Awaitable[T]],
        max_attempts: int = DEFAULT_TRANSACTION_ATTEMPTS,
    ) -> T:
        """Run ``fn`` until it commits without conflict.

        Raises:
            TransactionConflictError: If ``max_attempts`` runs all conflicted.
        """
        ...

    async def query(
        self,
        collection: str,
        field: str,
        value: Any,
        order_by: str = "created_at",
        limit: int = 50,
        descending: bool = False,
    ) -> list[tuple[str, dict[str, Any]]]:
        """Equality filter + order-by + limit. Returns ``(doc_id, data)`` pairs."""
        ...

    async def close(self) -> None: ...


def merge_document(
    current: dict[str, Any] | None, data: dict[str, Any], merge: bool
) -> dict[str, Any]:
    """Apply a buffered write to the current document state."""
    if merge and current is not None:
        return {**current, **data}
    return dict(data)


def order_value(value: Any) -> float:
    """Numeric sort key for an order-by field (timestamps or numbers).

    Missing or unparseable values sort first.
    """
    if value is None:
        return float("-inf")
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value).timestamp()
        except ValueError:
            return float("-inf")
    return float("-inf")
