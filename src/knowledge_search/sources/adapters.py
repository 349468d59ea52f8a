"""Per-entity adapters projecting stored records into ``SearchableRecord``."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from typing import Any

from knowledge_search.sources.extraction import TextExtractor
from knowledge_search.sources.store import RecordStore, parse_timestamp, record_owner
from knowledge_search.types import (
    EntityType,
    OwnerScope,
    RecordField,
    SearchableRecord,
)

logger = logging.getLogger(__name__)

TITLE_WEIGHT = 3.0
TAG_WEIGHT = 2.0
PARTICIPANT_WEIGHT = 2.0
BODY_WEIGHT = 1.0


class RecordSourceAdapter(ABC):
    """Uniform ``find`` capability over one entity type's backing store."""

    entity_type: EntityType
    collection: str

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def find(
        self, owner_scope: OwnerScope, query: str, *, limit: int = 200
    ) -> list[SearchableRecord]:
        raws = await self.store.find(self.collection, owner_scope, query=query, limit=limit)
        records: list[SearchableRecord] = []
        for raw in raws:
            if raw.get("is_archived"):
                continue
            fields = tuple(item for item in await self.load_fields(raw) if item.text)
            if not any(item.text.strip() for item in fields):
                logger.debug("Skipping %s:%s with no searchable text", self.entity_type.value, raw.get("id"))
                continue
            records.append(
                SearchableRecord(
                    id=str(raw["id"]),
                    entity_type=self.entity_type,
                    owner=record_owner(raw),
                    fields=fields,
                    updated_at=parse_timestamp(raw.get("updated_at") or raw.get("created_at")),
                )
            )
        return records

    async def load_fields(self, raw: Mapping[str, Any]) -> list[RecordField]:
        return self.fields(raw)

    @abstractmethod
    def fields(self, raw: Mapping[str, Any]) -> list[RecordField]:
        """Weighted searchable fields, title first."""


def _text(value: Any) -> str:
    return str(value).strip() if value is not None else ""


def _joined(values: Iterable[Any] | None) -> str:
    return " ".join(_text(value) for value in values or () if _text(value))


class NoteAdapter(RecordSourceAdapter):
    entity_type = EntityType.NOTE
    collection = "notes"

    def fields(self, raw: Mapping[str, Any]) -> list[RecordField]:
        return [
            RecordField("title", TITLE_WEIGHT, _text(raw.get("title"))),
            RecordField("tags", TAG_WEIGHT, _joined(raw.get("tags"))),
            RecordField("content", BODY_WEIGHT, _text(raw.get("content"))),
        ]


class DocumentAdapter(RecordSourceAdapter):
    """Documents match on title and file name even without extracted text."""

    entity_type = EntityType.DOCUMENT
    collection = "documents"

    def __init__(self, store: RecordStore, text_extractor: TextExtractor | None = None) -> None:
        super().__init__(store)
        self.text_extractor = text_extractor

    async def load_fields(self, raw: Mapping[str, Any]) -> list[RecordField]:
        if not _text(raw.get("extracted_text")) and self.text_extractor is not None:
            # File parsing blocks, so it runs in a worker thread.
            text = await asyncio.to_thread(self.text_extractor.extract, raw)
            raw = {**raw, "extracted_text": text}
        return self.fields(raw)

    def fields(self, raw: Mapping[str, Any]) -> list[RecordField]:
        content = _text(raw.get("extracted_text"))
        return [
            RecordField("title", TITLE_WEIGHT, _text(raw.get("title"))),
            RecordField("file_name", TAG_WEIGHT, _text(raw.get("file_name"))),
            RecordField("tags", TAG_WEIGHT, _joined(raw.get("tags"))),
            RecordField("content", BODY_WEIGHT, content),
        ]


class WorkspaceAdapter(RecordSourceAdapter):
    entity_type = EntityType.WORKSPACE
    collection = "workspaces"

    def fields(self, raw: Mapping[str, Any]) -> list[RecordField]:
        return [
            RecordField("title", TITLE_WEIGHT, _text(raw.get("name"))),
            RecordField("description", BODY_WEIGHT, _text(raw.get("description"))),
        ]


class MemberAdapter(RecordSourceAdapter):
    """One record per membership; the aggregator collapses repeats by id."""

    entity_type = EntityType.MEMBER
    collection = "members"

    def fields(self, raw: Mapping[str, Any]) -> list[RecordField]:
        return [
            RecordField("title", TITLE_WEIGHT, _text(raw.get("name"))),
            RecordField("email", PARTICIPANT_WEIGHT, _text(raw.get("email"))),
            RecordField("role", BODY_WEIGHT, _text(raw.get("role"))),
        ]


class ChatAdapter(RecordSourceAdapter):
    entity_type = EntityType.CHAT
    collection = "chats"

    def __init__(self, store: RecordStore, *, message_window: int = 20) -> None:
        super().__init__(store)
        self.message_window = message_window

    def fields(self, raw: Mapping[str, Any]) -> list[RecordField]:
        participants = raw.get("participants") or []
        names = [
            " ".join(filter(None, (_text(p.get("name")), _text(p.get("email")))))
            if isinstance(p, Mapping)
            else _text(p)
            for p in participants
        ]
        messages = list(raw.get("messages") or [])[-self.message_window :]
        bodies = [m.get("content") if isinstance(m, Mapping) else m for m in messages]
        return [
            RecordField("title", TITLE_WEIGHT, _text(raw.get("title"))),
            RecordField("participants", PARTICIPANT_WEIGHT, _joined(names)),
            RecordField("messages", BODY_WEIGHT, "\n".join(_text(b) for b in bodies if _text(b))),
        ]


def default_adapters(
    store: RecordStore, *, text_extractor: TextExtractor | None = None
) -> dict[EntityType, RecordSourceAdapter]:
    """One adapter per entity type over a shared store."""
    adapters: list[RecordSourceAdapter] = [
        NoteAdapter(store),
        DocumentAdapter(store, text_extractor),
        WorkspaceAdapter(store),
        MemberAdapter(store),
        ChatAdapter(store),
    ]
    return {adapter.entity_type: adapter for adapter in adapters}
