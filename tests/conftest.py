from __future__ import annotations

import asyncio
from typing import Any

import pytest

from knowledge_search.assistant.completion import ExtractiveCompletionService
from knowledge_search.config import AppConfig, SynthesisConfig
from knowledge_search.conversation.store import InMemoryConversationStore
from knowledge_search.service import KnowledgeSearchService
from knowledge_search.sources.adapters import default_adapters
from knowledge_search.sources.store import InMemoryRecordStore
from knowledge_search.types import OwnerScope

ALICE = OwnerScope(user_id="alice", workspace_ids=frozenset({"ws-product"}))
BOB = OwnerScope(user_id="bob", workspace_ids=frozenset({"ws-sales"}))

SEED: dict[str, list[dict[str, Any]]] = {
    "notes": [
        {
            "id": "n-revenue",
            "owner_id": "alice",
            "title": "Q3 board update",
            "content": "Quarterly revenue increased 12% while churn stayed flat.",
            "tags": ["board", "metrics"],
            "updated_at": "2024-05-02T10:00:00Z",
        },
        {
            "id": "n-plan",
            "owner_id": "alice",
            "title": "Project Plan",
            "content": "Milestones for the mobile launch.",
            "tags": ["roadmap"],
            "updated_at": "2024-05-01T09:00:00Z",
        },
        {
            "id": "n-ai",
            "workspace_id": "ws-product",
            "title": "AI roadmap",
            "content": "Summaries and search for every workspace.",
            "updated_at": "2024-04-20T09:00:00Z",
        },
        {
            "id": "n-archived",
            "owner_id": "alice",
            "title": "Old revenue forecast",
            "content": "Superseded.",
            "is_archived": True,
            "updated_at": "2024-01-01T09:00:00Z",
        },
        {
            "id": "n-bob",
            "owner_id": "bob",
            "title": "Bob revenue notes",
            "content": "Private revenue targets for the sales team.",
            "updated_at": "2024-05-03T09:00:00Z",
        },
    ],
    "documents": [
        {
            "id": "d-ai",
            "workspace_id": "ws-product",
            "title": "AI vendor review",
            "file_name": "vendors.pdf",
            "extracted_text": "Comparison of hosted models.",
            "updated_at": "2024-04-18T09:00:00Z",
        },
    ],
    "workspaces": [
        {
            "id": "ws-product",
            "workspace_id": "ws-product",
            "name": "Product AI",
            "description": "Everything about the product team.",
            "updated_at": "2024-03-01T09:00:00Z",
        },
        {
            "id": "ws-sales",
            "workspace_id": "ws-sales",
            "name": "Sales",
            "description": "Pipeline and revenue tracking.",
            "updated_at": "2024-03-01T09:00:00Z",
        },
    ],
    "members": [
        {
            "id": "m-carol",
            "workspace_id": "ws-product",
            "name": "Carol Ainsley",
            "email": "carol@example.com",
            "role": "editor",
            "updated_at": "2024-02-01T09:00:00Z",
        },
    ],
    "chats": [
        {
            "id": "c-design",
            "workspace_id": "ws-product",
            "title": "Design sync",
            "participants": [{"name": "Carol Ainsley"}, {"name": "Alice"}],
            "messages": [{"content": "Can the AI panel ship next sprint?"}],
            "updated_at": "2024-05-01T12:00:00Z",
        },
    ],
}


class SlowAdapter:
    """Wraps an adapter and sleeps before answering."""

    def __init__(self, inner: Any, delay: float) -> None:
        self.inner = inner
        self.entity_type = inner.entity_type
        self.delay = delay
        self.cancelled = False

    async def find(self, owner_scope: OwnerScope, query: str, *, limit: int = 200) -> list[Any]:
        try:
            await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        return await self.inner.find(owner_scope, query, limit=limit)


class BrokenAdapter:
    def __init__(self, entity_type: Any) -> None:
        self.entity_type = entity_type

    async def find(self, owner_scope: OwnerScope, query: str, *, limit: int = 200) -> list[Any]:
        raise ConnectionError("record store unreachable")


class ScriptedCompletion:
    """Returns queued answers (or raises queued exceptions) and keeps prompts."""

    mode = "scripted"

    def __init__(self, *responses: Any) -> None:
        self.responses = list(responses)
        self.prompts: list[str] = []

    async def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def record_store() -> InMemoryRecordStore:
    return InMemoryRecordStore(SEED)


@pytest.fixture
def adapters(record_store: InMemoryRecordStore) -> dict[Any, Any]:
    return default_adapters(record_store)


@pytest.fixture
def conversation_store() -> InMemoryConversationStore:
    return InMemoryConversationStore()


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(synthesis=SynthesisConfig(retry_backoff_seconds=0.0))


@pytest.fixture
def service(
    adapters: dict[Any, Any],
    conversation_store: InMemoryConversationStore,
    app_config: AppConfig,
) -> KnowledgeSearchService:
    return KnowledgeSearchService(
        adapters=adapters,
        store=conversation_store,
        completion=ExtractiveCompletionService(),
        config=app_config,
    )
