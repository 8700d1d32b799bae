"""Deterministic idempotency keys for events and derived jobs."""

import hashlib

DEFAULT_HASH = "default"

EVENT_ID_PREFIX = "evt_"


def stable_hash(value: str) -> str:
    """Return the hex sha256 of ``value`` (UTF-8)."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def build_event_key(event_type: str, entity_id: str, optional_hash: str | None = None) -> str:
    """Derive the idempotency key of one logical occurrence.

    The same ``(event_type, entity_id, optional_hash)`` triple always yields
    the same key; only ``None`` falls back to ``"default"``, an empty hash is
    kept as given.
    """
    discriminator = DEFAULT_HASH if optional_hash is None else optional_hash
    return stable_hash(f"{event_type}:{entity_id}:{discriminator}")


def event_id_for_key(event_key: str) -> str:
    """Return the deterministic document id for an event key."""
    return f"{EVENT_ID_PREFIX}{event_key[:40]}"


def fanout_job_id(event_id: str, discriminator: str) -> str:
    """Job id for an additional recipient of a fan-out event."""
    return f"{event_id}_{stable_hash(discriminator)[:10]}"
