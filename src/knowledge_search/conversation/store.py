"""Append-only conversation log with single-writer-per-conversation appends."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
import weakref
from abc import ABC, abstractmethod
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path

from knowledge_search.config import ConversationConfig
from knowledge_search.errors import ConversationNotFound, ConversationWriteConflict
from knowledge_search.types import (
    Citation,
    Conversation,
    ConversationTurn,
    EntityType,
    OwnerScope,
    Role,
    TurnDraft,
)

logger = logging.getLogger(__name__)

_MAX_TITLE_CHARS = 200


def _now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationStore(ABC):
    """Holds ordered turns per conversation id.

    Appends to one conversation are serialized through a lock keyed by that
    conversation id; different conversations never wait on each other.
    A lock lives only while some append holds a reference to it.
    Turns are never edited or removed.
    """

    def __init__(self, config: ConversationConfig | None = None) -> None:
        self.config = config or ConversationConfig()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def create_conversation(
        self,
        owner_scope: OwnerScope,
        seed_title: str,
        drafts: Sequence[TurnDraft] = (),
    ) -> Conversation:
        """Create a conversation, optionally with its first turns.

        The conversation and ``drafts`` are written together: if the write
        fails, neither is visible afterwards.
        """
        title = (seed_title.strip() or "New conversation")[:_MAX_TITLE_CHARS]
        now = _now()
        conversation = Conversation(
            id=uuid.uuid4().hex,
            owner_user_id=owner_scope.user_id,
            title=title,
            created_at=now,
            updated_at=now,
        )
        turns = _materialize(conversation.id, 0, list(drafts))
        if turns:
            conversation.updated_at = turns[-1].created_at
        await self._insert_conversation(conversation, turns)
        logger.info("Created conversation %s for user %s", conversation.id, owner_scope.user_id)
        return conversation

    async def append_turn(
        self,
        conversation_id: str,
        role: Role,
        content: str,
        cited_sources: Sequence[Citation] = (),
    ) -> ConversationTurn:
        turns = await self.append_turns(
            conversation_id, [TurnDraft(role, content, tuple(cited_sources))]
        )
        return turns[0]

    async def append_turns(
        self, conversation_id: str, drafts: Sequence[TurnDraft]
    ) -> list[ConversationTurn]:
        """Append ``drafts`` as consecutive turns, atomically."""
        if not drafts:
            return []
        lock = self._lock(conversation_id)
        async with lock:
            return await self._append(conversation_id, list(drafts))

    async def get_turns(
        self, conversation_id: str, limit: int | None = None
    ) -> list[ConversationTurn]:
        """Most recent ``limit`` turns, oldest first."""
        turns = await self._turns(conversation_id)
        if limit is not None:
            turns = turns[-limit:] if limit > 0 else []
        return turns

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation:
        """Conversation header without turns; raises ``ConversationNotFound``."""

    @abstractmethod
    async def list_conversations(
        self, owner_scope: OwnerScope, limit: int = 20
    ) -> list[Conversation]:
        """Caller's conversations, most recently updated first."""

    @abstractmethod
    async def _insert_conversation(
        self, conversation: Conversation, turns: list[ConversationTurn]
    ) -> None: ...

    @abstractmethod
    async def _append(
        self, conversation_id: str, drafts: list[TurnDraft]
    ) -> list[ConversationTurn]: ...

    @abstractmethod
    async def _turns(self, conversation_id: str) -> list[ConversationTurn]: ...


def _materialize(
    conversation_id: str, last_sequence: int, drafts: list[TurnDraft]
) -> list[ConversationTurn]:
    created_at = _now()
    return [
        ConversationTurn(
            conversation_id=conversation_id,
            sequence=last_sequence + offset,
            role=draft.role,
            content=draft.content,
            cited_sources=draft.cited_sources,
            created_at=created_at,
        )
        for offset, draft in enumerate(drafts, start=1)
    ]


class InMemoryConversationStore(ConversationStore):
    """Process-local store for tests and single-worker deployments."""

    def __init__(self, config: ConversationConfig | None = None) -> None:
        super().__init__(config)
        self._conversations: dict[str, Conversation] = {}

    async def get_conversation(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return Conversation(
            id=conversation.id,
            owner_user_id=conversation.owner_user_id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
        )

    async def list_conversations(
        self, owner_scope: OwnerScope, limit: int = 20
    ) -> list[Conversation]:
        owned = [
            conversation
            for conversation in self._conversations.values()
            if conversation.owner_user_id == owner_scope.user_id
        ]
        owned.sort(key=lambda conversation: conversation.updated_at, reverse=True)
        return [await self.get_conversation(conversation.id) for conversation in owned[:limit]]

    async def _insert_conversation(
        self, conversation: Conversation, turns: list[ConversationTurn]
    ) -> None:
        conversation.turns.extend(turns)
        self._conversations[conversation.id] = conversation

    async def _append(
        self, conversation_id: str, drafts: list[TurnDraft]
    ) -> list[ConversationTurn]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        last_sequence = conversation.turns[-1].sequence if conversation.turns else 0
        turns = _materialize(conversation_id, last_sequence, drafts)
        conversation.turns.extend(turns)
        conversation.updated_at = turns[-1].created_at
        return turns

    async def _turns(self, conversation_id: str) -> list[ConversationTurn]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFound(conversation_id)
        return list(conversation.turns)


_DDL_STATEMENTS: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        owner_user_id TEXT NOT NULL,
        title TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_conversations_owner ON conversations(owner_user_id, updated_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS conversation_turns (
        conversation_id TEXT NOT NULL REFERENCES conversations(id),
        sequence INTEGER NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        cited_sources TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL,
        PRIMARY KEY (conversation_id, sequence)
    )
    """,
)


class SqliteConversationStore(ConversationStore):
    """Durable store; the primary key on ``(conversation_id, sequence)``
    catches writers in other processes that raced past the in-process lock.
    """

    def __init__(self, path: str | Path, config: ConversationConfig | None = None) -> None:
        super().__init__(config)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._session() as conn:
            for statement in _DDL_STATEMENTS:
                conn.execute(statement)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    async def get_conversation(self, conversation_id: str) -> Conversation:
        return await asyncio.to_thread(self._get_conversation_sync, conversation_id)

    async def list_conversations(
        self, owner_scope: OwnerScope, limit: int = 20
    ) -> list[Conversation]:
        return await asyncio.to_thread(self._list_sync, owner_scope.user_id, limit)

    async def _insert_conversation(
        self, conversation: Conversation, turns: list[ConversationTurn]
    ) -> None:
        await asyncio.to_thread(self._insert_sync, conversation, turns)

    async def _append(
        self, conversation_id: str, drafts: list[TurnDraft]
    ) -> list[ConversationTurn]:
        return await asyncio.to_thread(self._append_sync, conversation_id, drafts)

    async def _turns(self, conversation_id: str) -> list[ConversationTurn]:
        return await asyncio.to_thread(self._turns_sync, conversation_id)

    def _get_conversation_sync(self, conversation_id: str) -> Conversation:
        with self._session() as conn:
            row = conn.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        if row is None:
            raise ConversationNotFound(conversation_id)
        return _conversation_from_row(row)

    def _list_sync(self, owner_user_id: str, limit: int) -> list[Conversation]:
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversations
                WHERE owner_user_id = ?
                ORDER BY updated_at DESC
                LIMIT ?
                """,
                (owner_user_id, limit),
            ).fetchall()
        return [_conversation_from_row(row) for row in rows]

    def _insert_sync(self, conversation: Conversation, turns: list[ConversationTurn]) -> None:
        try:
            with self._session() as conn:
                conn.execute(
                    """
                    INSERT INTO conversations (id, owner_user_id, title, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        conversation.id,
                        conversation.owner_user_id,
                        conversation.title,
                        conversation.created_at.isoformat(),
                        conversation.updated_at.isoformat(),
                    ),
                )
                _insert_turns(conn, turns)
        except sqlite3.IntegrityError as exc:
            logger.warning("Conflict creating conversation %s: %s", conversation.id, exc)
            raise ConversationWriteConflict(conversation.id, 1) from exc

    def _append_sync(
        self, conversation_id: str, drafts: list[TurnDraft]
    ) -> list[ConversationTurn]:
        attempts = self.config.append_retries
        for attempt in range(1, attempts + 1):
            conn = self._connect()
            try:
                exists = conn.execute(
                    "SELECT 1 FROM conversations WHERE id = ?", (conversation_id,)
                ).fetchone()
                if exists is None:
                    raise ConversationNotFound(conversation_id)
                last_sequence = conn.execute(
                    "SELECT COALESCE(MAX(sequence), 0) FROM conversation_turns WHERE conversation_id = ?",
                    (conversation_id,),
                ).fetchone()[0]
                turns = _materialize(conversation_id, last_sequence, drafts)
                _insert_turns(conn, turns)
                conn.execute(
                    "UPDATE conversations SET updated_at = ? WHERE id = ?",
                    (turns[-1].created_at.isoformat(), conversation_id),
                )
                conn.commit()
                return turns
            except sqlite3.IntegrityError:
                conn.rollback()
                logger.warning(
                    "Sequence conflict appending to %s (attempt %d/%d)",
                    conversation_id,
                    attempt,
                    attempts,
                )
            finally:
                conn.close()
        raise ConversationWriteConflict(conversation_id, attempts)

    def _turns_sync(self, conversation_id: str) -> list[ConversationTurn]:
        self._get_conversation_sync(conversation_id)
        with self._session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM conversation_turns
                WHERE conversation_id = ?
                ORDER BY sequence ASC
                """,
                (conversation_id,),
            ).fetchall()
        return [_turn_from_row(row) for row in rows]


def _insert_turns(conn: sqlite3.Connection, turns: list[ConversationTurn]) -> None:
    conn.executemany(
        """
        INSERT INTO conversation_turns
        (conversation_id, sequence, role, content, cited_sources, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        [
            (
                turn.conversation_id,
                turn.sequence,
                turn.role.value,
                turn.content,
                json.dumps([_citation_to_dict(c) for c in turn.cited_sources]),
                turn.created_at.isoformat(),
            )
            for turn in turns
        ],
    )


def _citation_to_dict(citation: Citation) -> dict[str, str]:
    return {
        "entity_type": citation.entity_type.value,
        "id": citation.id,
        "title": citation.title,
        "excerpt": citation.excerpt,
    }


def _conversation_from_row(row: sqlite3.Row) -> Conversation:
    return Conversation(
        id=row["id"],
        owner_user_id=row["owner_user_id"],
        title=row["title"],
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
    )


def _turn_from_row(row: sqlite3.Row) -> ConversationTurn:
    return ConversationTurn(
        conversation_id=row["conversation_id"],
        sequence=row["sequence"],
        role=Role(row["role"]),
        content=row["content"],
        cited_sources=tuple(
            Citation(
                entity_type=EntityType(item["entity_type"]),
                id=item["id"],
                title=item["title"],
                excerpt=item.get("excerpt", ""),
            )
            for item in json.loads(row["cited_sources"])
        ),
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def create_conversation_store(config: ConversationConfig | None = None) -> ConversationStore:
    """Sqlite-backed when a path is configured, in-memory otherwise."""
    config = config or ConversationConfig()
    if config.sqlite_path is not None:
        return SqliteConversationStore(config.sqlite_path, config)
    return InMemoryConversationStore(config)
