"""Recipient lookup: contact details and notification preferences."""

import logging
from dataclasses import dataclass
from typing import Any, Protocol

from cachetools import TTLCache
from pydantic import ValidationError as PydanticValidationError

from herald.core.preferences import NotificationPreferences
from herald.store.base import DocumentStore

logger = logging.getLogger("herald.directory")

DEFAULT_NAME = "there"


@dataclass(frozen=True)
class Contact:
    user_id: str
    email: str | None = None
    phone: str | None = None
    name: str = DEFAULT_NAME


class RecipientDirectory(Protocol):
    async def get_contact(self, user_id: str) -> Contact | None: ...
    async def get_preferences(self, user_id: str) -> NotificationPreferences: ...


class InMemoryDirectory:
    """Directory backed by dicts, for tests and scripts."""

    def __init__(self) -> None:
        self.contacts: dict[str, Contact] = {}
        self.preferences: dict[str, NotificationPreferences] = {}
        self.lookups = 0

    def add_user(
        self,
        user_id: str,
        email: str | None = None,
        phone: str | None = None,
        name: str = DEFAULT_NAME,
        preferences: NotificationPreferences | None = None,
    ) -> Contact:
        contact = Contact(user_id, email, phone, name)
        self.contacts[user_id] = contact
        if preferences is not None:
            self.preferences[user_id] = preferences
        return contact

    async def get_contact(self, user_id: str) -> Contact | None:
        self.lookups += 1
        return self.contacts.get(user_id)

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        return self.preferences.get(user_id) or NotificationPreferences()


class StoreDirectory:
    """Directory reading user profiles and preferences from the document store.

    Profiles live in ``users/{user_id}`` (``email``, ``phone``,
    ``display_name``); preferences in ``notificationPreferences/{user_id}``.
    A missing or malformed preferences document yields the defaults.
    """

    def __init__(
        self,
        store: DocumentStore,
        users_collection: str = "users",
        preferences_collection: str = "notificationPreferences",
    ) -> None:
        self._store = store
        self.users_collection = users_collection
        self.preferences_collection = preferences_collection

    async def get_contact(self, user_id: str) -> Contact | None:
        data: dict[str, Any] | None = await self._store.get(self.users_collection, user_id)
        if data is None:
            return None
        email = data.get("email")
        phone = data.get("phone")
        return Contact(
            user_id=user_id,
            email=email if isinstance(email, str) and "@" in email else None,
            phone=phone if isinstance(phone, str) and phone else None,
            name=str(data.get("display_name") or DEFAULT_NAME),
        )

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        data = await self._store.get(self.preferences_collection, user_id)
        if not data:
            return NotificationPreferences()
        try:
            return NotificationPreferences.model_validate(data)
        except PydanticValidationError as e:
            logger.warning(f"Invalid preferences for {user_id}, using defaults: {e.error_count()} errors")
            return NotificationPreferences()


class CachedRecipientDirectory:
    """TTL cache in front of another directory.

    A sweep usually touches the same few recipients many times; lookups are
    cached for ``ttl`` seconds. Unknown users are not cached.
    """

    def __init__(self, inner: RecipientDirectory, ttl: float = 60.0, maxsize: int = 4096) -> None:
        self._inner = inner
        self._contacts: TTLCache[str, Contact] = TTLCache(maxsize=maxsize, ttl=ttl)
        self._preferences: TTLCache[str, NotificationPreferences] = TTLCache(maxsize=maxsize, ttl=ttl)

    async def get_contact(self, user_id: str) -> Contact | None:
        contact = self._contacts.get(user_id)
        if contact is None:
            contact = await self._inner.get_contact(user_id)
            if contact is not None:
                self._contacts[user_id] = contact
        return contact

    async def get_preferences(self, user_id: str) -> NotificationPreferences:
        prefs = self._preferences.get(user_id)
        if prefs is None:
            prefs = await self._inner.get_preferences(user_id)
            self._preferences[user_id] = prefs
        return prefs

    def clear(self) -> None:
        self._contacts.clear()
        self._preferences.clear()
