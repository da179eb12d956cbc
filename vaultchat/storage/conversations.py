"""Conversation store -- bounded set of named conversation snapshots.

All conversations are kept as one JSON list under a single namespaced
blob. The store reads the blob once at startup (load_all) and rewrites
it after every mutation. At most max_conversations are retained; the
least-recently-updated one is evicted when the bound is exceeded.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol

from sqlalchemy import select

from vaultchat.api.models import Conversation, ConversationMeta
from vaultchat.config import Settings
from vaultchat.storage.database import Database
from vaultchat.storage.models import SettingsBlob

logger = logging.getLogger(__name__)

Namer = Callable[[Conversation], Awaitable[str]]

_FALLBACK_NAME_CHARS = 50


def fallback_name(conversation: Conversation) -> str:
    """First user message, truncated."""
    text = " ".join(conversation.first_user_text().split())
    if not text:
        return "New conversation"
    if len(text) > _FALLBACK_NAME_CHARS:
        return text[:_FALLBACK_NAME_CHARS] + "..."
    return text


def _copy(conversation: Conversation) -> Conversation:
    return Conversation.from_dict(conversation.to_dict())


# ---------------------------------------------------------------------------
# Blob backends
# ---------------------------------------------------------------------------


class BlobBackend(Protocol):
    async def read(self, namespace: str) -> str | None: ...

    async def write(self, namespace: str, data: str) -> None: ...


class DatabaseBlobBackend:
    """Stores namespaced blobs in the settings_blobs table."""

    def __init__(self, database: Database) -> None:
        self._database = database

    async def read(self, namespace: str) -> str | None:
        async with self._database.session() as session:
            result = await session.execute(
                select(SettingsBlob.data).where(SettingsBlob.namespace == namespace)
            )
            return result.scalar_one_or_none()

    async def write(self, namespace: str, data: str) -> None:
        async with self._database.session() as session:
            blob = await session.get(SettingsBlob, namespace)
            if blob is None:
                session.add(SettingsBlob(namespace=namespace, data=data))
            else:
                blob.data = data
            await session.commit()


class MemoryBlobBackend:
    """Dict-backed blobs, for tests and ephemeral runs."""

    def __init__(self) -> None:
        self.blobs: dict[str, str] = {}

    async def read(self, namespace: str) -> str | None:
        return self.blobs.get(namespace)

    async def write(self, namespace: str, data: str) -> None:
        self.blobs[namespace] = data


# ---------------------------------------------------------------------------
# ConversationStore
# ---------------------------------------------------------------------------


class ConversationStore:
    """Bounded, persisted collection of conversations.

    load() and save() exchange copies, so callers never hold a reference
    to the stored snapshot.
    """

    def __init__(
        self,
        backend: BlobBackend,
        settings: Settings,
        namer: Namer | None = None,
    ) -> None:
        self._backend = backend
        self._settings = settings
        self._namer = namer
        self._namespace = settings.store_namespace
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()

    def set_namer(self, namer: Namer | None) -> None:
        self._namer = namer

    async def load_all(self) -> int:
        """Read the persisted blob. Returns the number of conversations loaded."""
        raw = await self._backend.read(self._namespace)
        loaded: dict[str, Conversation] = {}
        if raw:
            try:
                records = json.loads(raw)
            except json.JSONDecodeError:
                logger.error("Stored conversations are not valid JSON; starting empty")
                records = []
            for record in records:
                try:
                    conversation = Conversation.from_dict(record)
                except (KeyError, TypeError, ValueError) as e:
                    logger.warning("Skipping unreadable conversation record: %s", e)
                    continue
                loaded[conversation.id] = conversation

        async with self._lock:
            self._conversations = loaded
            evicted = self._evict()
            if evicted:
                await self._flush()
        logger.info("Loaded %d conversations", len(self._conversations))
        return len(self._conversations)

    async def save(self, conversation: Conversation) -> None:
        """Store a snapshot, naming it first if it has no name."""
        if not conversation.name and self._settings.auto_name:
            conversation.name = await self._derive_name(conversation)

        snapshot = _copy(conversation)
        async with self._lock:
            self._conversations[snapshot.id] = snapshot
            self._evict()
            await self._flush()

    async def load(self, conversation_id: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        return _copy(conversation) if conversation is not None else None

    async def delete(self, conversation_id: str) -> bool:
        async with self._lock:
            if self._conversations.pop(conversation_id, None) is None:
                return False
            await self._flush()
        logger.info("Deleted conversation %s", conversation_id)
        return True

    async def clear(self) -> int:
        async with self._lock:
            count = len(self._conversations)
            self._conversations = {}
            await self._flush()
        return count

    async def list(self) -> list[ConversationMeta]:
        """Metadata, most recently updated first."""
        return [
            ConversationMeta(
                id=c.id,
                name=c.name,
                created_at=c.created_at,
                updated_at=c.updated_at,
                message_count=len(c.messages),
            )
            for c in sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)
        ]

    async def flush(self) -> None:
        """Rewrite the persisted blob from the in-memory records."""
        async with self._lock:
            await self._flush()

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _evict(self) -> list[str]:
        """Drop least-recently-updated conversations beyond the bound."""
        evicted: list[str] = []
        while len(self._conversations) > self._settings.max_conversations:
            oldest = min(self._conversations.values(), key=lambda c: c.updated_at)
            del self._conversations[oldest.id]
            evicted.append(oldest.id)
            logger.info("Evicted conversation %s (%s)", oldest.id, oldest.name or "unnamed")
        return evicted

    async def _flush(self) -> None:
        data = json.dumps(
            [c.to_dict() for c in self._conversations.values()], ensure_ascii=False
        )
        await self._backend.write(self._namespace, data)

    async def _derive_name(self, conversation: Conversation) -> str:
        """Best-effort model naming; falls back to the first user message."""
        if self._namer is not None:
            try:
                name = await self._namer(conversation)
                if name:
                    return name
            except Exception as e:
                logger.warning("Conversation naming failed: %s", e)
        return fallback_name(conversation)
