"""Dead-letter recording and operator tooling.

A dead letter is written when an event or job exhausts its retry budget. It
is keyed by the originating id, merged on re-recording (``created_at`` and
the manual-retry bookkeeping survive), and never deleted automatically.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from herald.core.clock import Clock, SystemClock, clamp_int
from herald.core.errors import NotFoundError, RetryRefusedError
from herald.core.models import DeadLetter, DeadLetterError, DeadLetterKind
from herald.store.base import DocumentStore, Transaction

logger = logging.getLogger("herald.deadletter")

MAX_USER_IDS = 50
MAX_SNAPSHOT_RECIPIENTS = 25
MAX_ERROR_LENGTH = 2000
MAX_LIST_LIMIT = 200

_EVENT_SNAPSHOT_KEYS = (
    "id", "type", "actor_id", "entity_type", "entity_id", "event_key",
    "status", "processing", "created_at", "test",
)
_JOB_SNAPSHOT_KEYS = (
    "id", "kind", "event_id", "user_id", "template", "status", "attempts",
    "last_attempt_at", "deliver_after_at", "error", "created_at", "test",
)

_COMPLETED = {DeadLetterKind.EVENT: "processed", DeadLetterKind.EMAIL: "sent", DeadLetterKind.SMS: "sent"}


def mask_address(address: str | None) -> str | None:
    """Mask an email address or phone number, keeping enough to recognise it."""
    if not address:
        return address
    if "@" in address:
        local, _, domain = address.partition("@")
        return f"{local[:1]}***@{domain}"
    return f"***{address[-4:]}" if len(address) > 4 else "***"


def redact_snapshot(kind: DeadLetterKind, snapshot: dict[str, Any]) -> dict[str, Any]:
    """Keep the fields operators need; drop bodies, payloads and raw addresses."""
    keys = _EVENT_SNAPSHOT_KEYS if kind is DeadLetterKind.EVENT else _JOB_SNAPSHOT_KEYS
    redacted = {key: snapshot[key] for key in keys if key in snapshot}
    if kind is DeadLetterKind.EVENT:
        recipients = list(snapshot.get("target_user_ids") or [])
        redacted["target_user_ids"] = recipients[:MAX_SNAPSHOT_RECIPIENTS]
        redacted["target_user_count"] = len(recipients)
        payload = snapshot.get("payload")
        if isinstance(payload, dict):
            redacted["payload_keys"] = sorted(payload)
    else:
        redacted["to_address"] = mask_address(snapshot.get("to_address"))
    return redacted


def _attempts_of(snapshot: dict[str, Any]) -> int:
    processing = snapshot.get("processing")
    if isinstance(processing, dict):
        return clamp_int(processing.get("attempts"))
    return clamp_int(snapshot.get("attempts"))


def _user_ids_of(snapshot: dict[str, Any]) -> list[str]:
    if snapshot.get("target_user_ids"):
        return list(snapshot["target_user_ids"])[:MAX_USER_IDS]
    return [snapshot["user_id"]] if snapshot.get("user_id") else []


@dataclass
class RetryResult:
    kind: DeadLetterKind
    id: str
    manual_retry_count: int


class DeadLetterRecorder:
    """Writes dead letters and serves the operator list/suppress/retry actions."""

    def __init__(self, store: DocumentStore, clock: Clock | None = None) -> None:
        self._store = store
        self._clock = clock or SystemClock()

    def build(
        self,
        kind: DeadLetterKind,
        record_id: str,
        snapshot: dict[str, Any],
        error: DeadLetterError,
        existing: dict[str, Any] | None,
        now: datetime,
    ) -> DeadLetter:
        message = error.message[:MAX_ERROR_LENGTH]
        letter = DeadLetter(
            id=record_id,
            kind=kind,
            record_type=snapshot.get("type") or snapshot.get("template"),
            entity_type=snapshot.get("entity_type") or ("event" if snapshot.get("event_id") else None),
            entity_id=snapshot.get("entity_id") or snapshot.get("event_id"),
            user_ids=_user_ids_of(snapshot),
            attempts=_attempts_of(snapshot),
            error=DeadLetterError(code=error.code, message=message),
            snapshot=redact_snapshot(kind, snapshot),
            created_at=now,
            updated_at=now,
        )
        if existing:
            prior = DeadLetter.from_document(existing)
            letter = letter.model_copy(
                update={
                    "created_at": prior.created_at,
                    "manual_retry_count": prior.manual_retry_count,
                    "last_manual_retry_at": prior.last_manual_retry_at,
                    "last_manual_retry_by": prior.last_manual_retry_by,
                    "suppressed": prior.suppressed,
                    "suppressed_reason": prior.suppressed_reason,
                }
            )
        return letter

    async def record(
        self,
        kind: DeadLetterKind,
        record_id: str,
        snapshot: dict[str, Any],
        error: DeadLetterError | str,
        tx: Transaction | None = None,
    ) -> None:
        """Upsert the dead letter of ``record_id``.

        Pass ``tx`` to write it atomically with the caller's terminal status
        transition; otherwise it runs in its own transaction.
        """
        if isinstance(error, str):
            error = DeadLetterError(message=error)
        kind = DeadLetterKind(kind)

        async def write(t: Transaction) -> None:
            existing = await t.get(kind.collection, record_id)
            letter = self.build(kind, record_id, snapshot, error, existing, self._clock.now())
            t.set(kind.collection, record_id, letter.to_document(), merge=True)

        if tx is not None:
            await write(tx)
        else:
            await self._store.run_transaction(write)
        id_field = "event_id" if kind is DeadLetterKind.EVENT else "job_id"
        logger.warning(
            f"Dead-lettered {kind.value} {record_id}: {error.message[:200]}",
            extra={"kind": kind.value, id_field: record_id},
        )

    async def get(self, kind: DeadLetterKind, record_id: str) -> DeadLetter | None:
        kind = DeadLetterKind(kind)
        data = await self._store.get(kind.collection, record_id)
        return DeadLetter.from_document(data) if data else None

    async def list(
        self, kind: DeadLetterKind, limit: int = 100, include_suppressed: bool = False
    ) -> list[DeadLetter]:
        """Newest dead letters of ``kind`` first; ``limit`` is clamped to 1..200."""
        kind = DeadLetterKind(kind)
        limit = max(1, min(MAX_LIST_LIMIT, clamp_int(limit, default=100)))
        rows = await self._store.query(
            kind.collection, "kind", kind.value, order_by="created_at", limit=limit, descending=True
        )
        letters = [DeadLetter.from_document(data) for _, data in rows]
        if not include_suppressed:
            letters = [letter for letter in letters if not letter.suppressed]
        return letters

    async def suppress(
        self, kind: DeadLetterKind, record_id: str, actor: str, reason: str | None = None
    ) -> DeadLetter:
        """Hide a dead letter from the default listing.

        Raises:
            NotFoundError: If no dead letter exists for ``record_id``.
        """
        kind = DeadLetterKind(kind)

        async def update(tx: Transaction) -> DeadLetter:
            data = await tx.get(kind.collection, record_id)
            if data is None:
                raise NotFoundError(f"no {kind.value} dead letter {record_id!r}")
            letter = DeadLetter.from_document(data).model_copy(
                update={
                    "suppressed": True,
                    "suppressed_reason": (reason or "")[:500] or None,
                    "updated_at": self._clock.now(),
                }
            )
            tx.set(kind.collection, record_id, letter.to_document())
            return letter

        letter = await self._store.run_transaction(update)
        logger.info(f"Suppressed {kind.value} dead letter {record_id} by {actor}")
        return letter

    async def retry(self, kind: DeadLetterKind, record_id: str, actor: str) -> RetryResult:
        """Return the primary record to its queue and bump ``manual_retry_count``.

        The primary's attempt budget is renewed. The dead letter is kept.

        Raises:
            NotFoundError: If the dead letter or its primary record is missing.
            RetryRefusedError: If the primary record already completed.
        """
        kind = DeadLetterKind(kind)

        async def update(tx: Transaction) -> RetryResult:
            data = await tx.get(kind.collection, record_id)
            if data is None:
                raise NotFoundError(f"no {kind.value} dead letter {record_id!r}")
            primary = await tx.get(kind.primary_collection, record_id)
            if primary is None:
                raise NotFoundError(f"no {kind.primary_collection} document {record_id!r}")
            if primary.get("status") == _COMPLETED[kind]:
                raise RetryRefusedError(
                    f"{kind.primary_collection} {record_id!r} is already {_COMPLETED[kind]}"
                )

            now = self._clock.now()
            if kind is DeadLetterKind.EVENT:
                reset = {
                    "status": "pending",
                    "processing": {"attempts": 0, "last_attempt_at": None, "error": None},
                }
            else:
                reset = {
                    "status": "queued",
                    "attempts": 0,
                    "last_attempt_at": None,
                    "deliver_after_at": None,
                    "error": None,
                }
            tx.set(kind.primary_collection, record_id, reset, merge=True)

            letter = DeadLetter.from_document(data)
            letter = letter.model_copy(
                update={
                    "suppressed": False,
                    "manual_retry_count": letter.manual_retry_count + 1,
                    "last_manual_retry_at": now,
                    "last_manual_retry_by": actor,
                    "updated_at": now,
                }
            )
            tx.set(kind.collection, record_id, letter.to_document())
            return RetryResult(kind, record_id, letter.manual_retry_count)

        result = await self._store.run_transaction(update)
        logger.info(
            f"Manual retry #{result.manual_retry_count} of {kind.value} {record_id} by {actor}"
        )
        return result
