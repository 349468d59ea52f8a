"""FastAPI entrypoint for search, ask, records, conversation and trace endpoints."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query
from pydantic import BaseModel, Field

from knowledge_search.api.errors import register_error_handlers
from knowledge_search.assistant.completion import create_completion_service
from knowledge_search.config import get_config
from knowledge_search.conversation.store import create_conversation_store
from knowledge_search.service import KnowledgeSearchService
from knowledge_search.sources.adapters import default_adapters
from knowledge_search.sources.extraction import FileTextExtractor
from knowledge_search.sources.store import InMemoryRecordStore, record_owner
from knowledge_search.types import (
    Citation,
    Conversation,
    ConversationTurn,
    EntityType,
    OwnerScope,
    RankedHit,
)

logger = logging.getLogger(__name__)


class AskRequest(BaseModel):
    question: str = Field(min_length=1)
    conversation_id: str | None = None


class RecordsRequest(BaseModel):
    records: list[dict[str, Any]] = Field(min_length=1)


def _create_record_store() -> InMemoryRecordStore:
    config = get_config()
    if config.records_seed_path is None:
        return InMemoryRecordStore()
    return InMemoryRecordStore.from_json_file(config.records_seed_path)


def _create_service() -> KnowledgeSearchService:
    config = get_config()
    completion = create_completion_service(config.openai_model)
    logger.info("Completion mode: %s", completion.mode)
    return KnowledgeSearchService(
        adapters=default_adapters(record_store, text_extractor=FileTextExtractor()),
        store=create_conversation_store(config.conversation),
        completion=completion,
        config=config,
    )


logging.basicConfig(level=get_config().log_level)

app = FastAPI(title="Knowledge Search", version="0.1.0")
register_error_handlers(app)

record_store = _create_record_store()
_service = _create_service()


def get_service() -> KnowledgeSearchService:
    return _service


def get_record_store() -> InMemoryRecordStore:
    return record_store


def get_owner_scope(
    x_user_id: str | None = Header(default=None),
    x_workspace_ids: str | None = Header(default=None),
) -> OwnerScope:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header is required")
    workspace_ids = frozenset(
        item.strip() for item in (x_workspace_ids or "").split(",") if item.strip()
    )
    return OwnerScope(user_id=x_user_id.strip(), workspace_ids=workspace_ids)


def _parse_types(raw: str | None) -> list[EntityType] | None:
    if not raw:
        return None
    parsed: list[EntityType] = []
    for item in raw.split(","):
        value = item.strip().lower()
        if not value:
            continue
        try:
            parsed.append(EntityType(value))
        except ValueError as exc:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "invalid_entity_type",
                    "message": f"Unknown entity type: {value}",
                    "detail": {"allowed": [entity_type.value for entity_type in EntityType]},
                },
            ) from exc
    return parsed or None


def _hit_payload(hit: RankedHit) -> dict[str, Any]:
    record = hit.record
    return {
        "id": record.id,
        "entity_type": record.entity_type.value,
        "title": record.title,
        "score": hit.score,
        "updated_at": record.updated_at.isoformat(),
        "matched_spans": [asdict(span) for span in hit.matched_spans],
    }


def _citation_payload(citation: Citation) -> dict[str, Any]:
    return {
        "entity_type": citation.entity_type.value,
        "id": citation.id,
        "title": citation.title,
        "excerpt": citation.excerpt,
    }


def _turn_payload(turn: ConversationTurn) -> dict[str, Any]:
    return {
        "sequence": turn.sequence,
        "role": turn.role.value,
        "content": turn.content,
        "cited_sources": [_citation_payload(citation) for citation in turn.cited_sources],
        "created_at": turn.created_at.isoformat(),
    }


def _conversation_payload(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "created_at": conversation.created_at.isoformat(),
        "updated_at": conversation.updated_at.isoformat(),
    }


@app.get("/health")
def health(service: KnowledgeSearchService = Depends(get_service)) -> dict[str, Any]:
    return {
        "status": "ok",
        "completion_mode": getattr(service.completion, "mode", "custom"),
        "sources": sorted(entity_type.value for entity_type in service.aggregator.adapters),
        "trace_count": len(service.trace_store),
    }


@app.get("/search")
async def search(
    q: str = "",
    types: str | None = None,
    owner_scope: OwnerScope = Depends(get_owner_scope),
    service: KnowledgeSearchService = Depends(get_service),
) -> dict[str, Any]:
    response = await service.search(owner_scope, q, _parse_types(types))
    return {
        "query": response.query,
        "groups": {
            entity_type.value: [_hit_payload(hit) for hit in hits]
            for entity_type, hits in response.groups.items()
        },
        "partial": response.partial,
        "failed_sources": [entity_type.value for entity_type in response.failed_sources],
    }


@app.post("/ask")
async def ask(
    request: AskRequest,
    owner_scope: OwnerScope = Depends(get_owner_scope),
    service: KnowledgeSearchService = Depends(get_service),
) -> dict[str, Any]:
    result = await service.ask(owner_scope, request.question, request.conversation_id)
    return {
        "answer": result.answer,
        "citations": [_citation_payload(citation) for citation in result.citations],
        "conversation_id": result.conversation_id,
        "degraded": result.degraded,
        "partial": result.partial,
        "trace_id": result.trace_id,
    }


@app.get("/conversations")
async def conversations(
    limit: int = Query(default=20, ge=1, le=100),
    owner_scope: OwnerScope = Depends(get_owner_scope),
    service: KnowledgeSearchService = Depends(get_service),
) -> dict[str, Any]:
    items = await service.list_conversations(owner_scope, limit)
    return {"items": [_conversation_payload(conversation) for conversation in items]}


@app.get("/conversations/{conversation_id}/turns")
async def conversation_turns(
    conversation_id: str,
    limit: int | None = Query(default=None, ge=1),
    owner_scope: OwnerScope = Depends(get_owner_scope),
    service: KnowledgeSearchService = Depends(get_service),
) -> dict[str, Any]:
    turns = await service.list_conversation_turns(owner_scope, conversation_id, limit)
    return {"conversation_id": conversation_id, "items": [_turn_payload(turn) for turn in turns]}


@app.post("/records/{collection}")
def add_records(
    collection: str,
    request: RecordsRequest,
    owner_scope: OwnerScope = Depends(get_owner_scope),
    service: KnowledgeSearchService = Depends(get_service),
    store: InMemoryRecordStore = Depends(get_record_store),
) -> dict[str, Any]:
    adapters = service.aggregator.adapters.values()
    collections = sorted({getattr(adapter, "collection", "") for adapter in adapters} - {""})
    if collection not in collections:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_collection",
                "message": f"Unknown collection: {collection}",
                "detail": {"allowed": collections},
            },
        )

    records: list[dict[str, Any]] = []
    for raw in request.records:
        record = dict(raw)
        if "id" not in record:
            raise HTTPException(status_code=400, detail="Every record needs an id")
        if record.get("owner_id") is None and record.get("workspace_id") is None:
            record["owner_id"] = owner_scope.user_id
        if not owner_scope.can_see(record_owner(record)):
            raise HTTPException(
                status_code=403,
                detail=f"Record {record['id']} is outside the caller's scope",
            )
        records.append(record)

    store.extend(collection, records)
    logger.info("Added %d %s records for %s", len(records), collection, owner_scope.user_id)
    return {"collection": collection, "records_added": len(records)}


@app.get("/traces")
def traces(
    limit: int = 20,
    owner_scope: OwnerScope = Depends(get_owner_scope),
    service: KnowledgeSearchService = Depends(get_service),
) -> dict[str, Any]:
    items = service.trace_store.list_recent(limit=limit, owner_user_id=owner_scope.user_id)
    return {"items": [asdict(record) for record in items]}


@app.get("/traces/{trace_id}")
def trace_detail(
    trace_id: str,
    owner_scope: OwnerScope = Depends(get_owner_scope),
    service: KnowledgeSearchService = Depends(get_service),
) -> dict[str, Any]:
    try:
        record = service.trace_store.get(trace_id, owner_scope.user_id)
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=f"Trace not found: {trace_id}") from exc
    return asdict(record)


@app.get("/metrics")
def metrics(
    owner_scope: OwnerScope = Depends(get_owner_scope),
    service: KnowledgeSearchService = Depends(get_service),
) -> dict[str, Any]:
    return service.trace_store.summary(owner_scope.user_id)
