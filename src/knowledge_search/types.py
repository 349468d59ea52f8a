"""Shared domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class EntityType(str, Enum):
    """Record families searchable from the workspace."""

    NOTE = "note"
    DOCUMENT = "document"
    WORKSPACE = "workspace"
    MEMBER = "member"
    CHAT = "chat"


ALL_ENTITY_TYPES: tuple[EntityType, ...] = tuple(EntityType)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True, slots=True)
class RecordOwner:
    """Visibility stamp carried by a single record."""

    user_id: str | None = None
    workspace_id: str | None = None


@dataclass(frozen=True, slots=True)
class OwnerScope:
    """What a caller may see: their own records plus their workspaces."""

    user_id: str
    workspace_ids: frozenset[str] = frozenset()

    def can_see(self, owner: RecordOwner) -> bool:
        if owner.user_id is not None and owner.user_id == self.user_id:
            return True
        return owner.workspace_id is not None and owner.workspace_id in self.workspace_ids


@dataclass(frozen=True, slots=True)
class RecordField:
    name: str
    weight: float
    text: str


@dataclass(slots=True)
class SearchableRecord:
    """Fixed-shape projection of any workspace entity."""

    id: str
    entity_type: EntityType
    owner: RecordOwner
    fields: tuple[RecordField, ...]
    updated_at: datetime

    def __post_init__(self) -> None:
        if not self.fields:
            raise ValueError(f"{self.entity_type.value}:{self.id} has no fields")
        if not any(f.text.strip() for f in self.fields):
            raise ValueError(f"{self.entity_type.value}:{self.id} has only empty fields")

    @property
    def key(self) -> tuple[EntityType, str]:
        return (self.entity_type, self.id)

    @property
    def title(self) -> str:
        for item in self.fields:
            if item.name == "title" and item.text.strip():
                return item.text.strip()
        for item in self.fields:
            if item.text.strip():
                return item.text.strip()
        return self.id

    def field(self, name: str) -> RecordField | None:
        for item in self.fields:
            if item.name == name:
                return item
        return None


@dataclass(frozen=True, slots=True)
class MatchedSpan:
    """Highlightable offsets of one scoring match."""

    field: str
    start: int
    end: int
    score: float = 0.0


@dataclass(slots=True)
class RankedHit:
    record: SearchableRecord
    score: float
    matched_spans: list[MatchedSpan] = field(default_factory=list)

    def strongest_span(self, *, exclude: tuple[str, ...] = ()) -> MatchedSpan | None:
        candidates = [span for span in self.matched_spans if span.field not in exclude]
        if not candidates:
            return None
        return max(candidates, key=lambda span: (span.score, -span.start))


def hit_sort_key(hit: RankedHit) -> tuple[float, float, str, str]:
    """Score descending, then most recently updated, then a stable identity."""
    return (
        -hit.score,
        -hit.record.updated_at.timestamp(),
        hit.record.entity_type.value,
        hit.record.id,
    )


@dataclass(frozen=True, slots=True)
class SourceMarker:
    entity_type: EntityType
    id: str
    title: str

    @property
    def tag(self) -> str:
        return f"[{self.entity_type.value}:{self.id}]"


@dataclass(frozen=True, slots=True)
class Citation:
    entity_type: EntityType
    id: str
    title: str
    excerpt: str


@dataclass(frozen=True, slots=True)
class ConversationTurn:
    """One immutable entry in a conversation's append-only log."""

    conversation_id: str
    sequence: int
    role: Role
    content: str
    cited_sources: tuple[Citation, ...]
    created_at: datetime


@dataclass(frozen=True, slots=True)
class TurnDraft:
    """A turn waiting for its sequence number."""

    role: Role
    content: str
    cited_sources: tuple[Citation, ...] = ()


@dataclass(slots=True)
class Conversation:
    id: str
    owner_user_id: str
    title: str
    created_at: datetime
    updated_at: datetime
    turns: list[ConversationTurn] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ContextEntry:
    marker: SourceMarker
    excerpt: str
    score: float


@dataclass(slots=True)
class ContextWindow:
    """Per-request grounding material; never persisted."""

    question: str
    conversation_id: str | None
    entries: list[ContextEntry] = field(default_factory=list)
    history: list[ConversationTurn] = field(default_factory=list)
    partial: bool = False

    @property
    def is_empty(self) -> bool:
        return not self.entries and not self.history

    def resolve(self, entity_type: EntityType, record_id: str) -> ContextEntry | None:
        for entry in self.entries:
            if entry.marker.entity_type == entity_type and entry.marker.id == record_id:
                return entry
        return None


@dataclass(slots=True)
class AggregateResult:
    records_by_type: dict[EntityType, list[SearchableRecord]]
    failed_sources: list[EntityType] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.failed_sources)

    def candidates(self) -> list[SearchableRecord]:
        return [record for records in self.records_by_type.values() for record in records]


@dataclass(slots=True)
class SearchResponse:
    query: str
    groups: dict[EntityType, list[RankedHit]]
    partial: bool = False
    failed_sources: list[EntityType] = field(default_factory=list)


@dataclass(slots=True)
class SynthesisResult:
    answer: str
    citations: list[Citation]
    conversation_id: str


@dataclass(slots=True)
class AskResult:
    answer: str
    citations: list[Citation]
    conversation_id: str
    degraded: bool
    partial: bool
    trace_id: str | None = None
