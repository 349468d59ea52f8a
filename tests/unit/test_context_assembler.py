from datetime import datetime, timezone

import pytest

from conftest import ALICE
from knowledge_search.assistant.context import ContextAssembler, build_excerpt
from knowledge_search.config import ContextConfig
from knowledge_search.errors import EmptyQuery, NoContext
from knowledge_search.search.aggregator import FanOutAggregator
from knowledge_search.search.normalizer import QueryNormalizer
from knowledge_search.search.ranker import RelevanceRanker
from knowledge_search.types import (
    Citation,
    EntityType,
    MatchedSpan,
    RankedHit,
    RecordField,
    RecordOwner,
    Role,
    SearchableRecord,
)


def _assembler(adapters, conversation_store, **config) -> ContextAssembler:
    normalizer = QueryNormalizer()
    return ContextAssembler(
        normalizer=normalizer,
        aggregator=FanOutAggregator(adapters),
        ranker=RelevanceRanker(normalizer=normalizer),
        store=conversation_store,
        config=ContextConfig(**config),
    )


@pytest.mark.asyncio
async def test_window_holds_top_ranked_excerpts(adapters, conversation_store) -> None:
    assembler = _assembler(adapters, conversation_store, top_n=2)

    window = await assembler.build_context("what happened to revenue?", None, ALICE)

    assert window.entries[0].marker.tag == "[note:n-revenue]"
    assert "Quarterly revenue increased 12%" in window.entries[0].excerpt
    assert len(window.entries) <= 2
    assert window.history == []
    assert not window.partial


@pytest.mark.asyncio
async def test_empty_question_is_rejected(adapters, conversation_store) -> None:
    with pytest.raises(EmptyQuery):
        await _assembler(adapters, conversation_store).build_context("  ", None, ALICE)


@pytest.mark.asyncio
async def test_no_hits_and_no_history_raises_with_window(adapters, conversation_store) -> None:
    with pytest.raises(NoContext) as excinfo:
        await _assembler(adapters, conversation_store).build_context(
            "what is the capital of France?", None, ALICE
        )

    assert excinfo.value.window.is_empty
    assert excinfo.value.window.question == "what is the capital of France?"


@pytest.mark.asyncio
async def test_history_alone_is_enough_context(adapters, conversation_store) -> None:
    conversation = await conversation_store.create_conversation(ALICE, "Trivia")
    for i in range(4):
        await conversation_store.append_turn(conversation.id, Role.USER, f"turn {i}")

    window = await _assembler(adapters, conversation_store, history_turns=3).build_context(
        "what is the capital of France?", conversation.id, ALICE
    )

    assert window.entries == []
    assert [turn.content for turn in window.history] == ["turn 1", "turn 2", "turn 3"]


@pytest.mark.asyncio
async def test_previously_cited_records_are_boosted(adapters, conversation_store) -> None:
    assembler = _assembler(adapters, conversation_store, history_boost=10.0)
    baseline = await assembler.build_context("ai", None, ALICE)
    cited_key = baseline.entries[-1].marker

    conversation = await conversation_store.create_conversation(ALICE, "AI")
    await conversation_store.append_turn(
        conversation.id,
        Role.ASSISTANT,
        "see source",
        [Citation(cited_key.entity_type, cited_key.id, cited_key.title, "")],
    )
    window = await assembler.build_context("ai", conversation.id, ALICE)

    assert window.entries[0].marker == cited_key


def _hit(body: str, span: MatchedSpan | None) -> RankedHit:
    record = SearchableRecord(
        id="n-1",
        entity_type=EntityType.NOTE,
        owner=RecordOwner(user_id="alice"),
        fields=(RecordField("title", 3.0, "Launch"), RecordField("content", 1.0, body)),
        updated_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
    )
    return RankedHit(record, 1.0, [span] if span else [])


def test_excerpt_centers_on_strongest_body_match() -> None:
    body = "x" * 200 + " target phrase " + "y" * 200
    excerpt = build_excerpt(_hit(body, MatchedSpan("content", 201, 207, 2.0)), 60)

    assert excerpt.startswith("Launch: ...")
    assert "target" in excerpt
    assert excerpt.endswith("...")


def test_excerpt_falls_back_to_body_head() -> None:
    excerpt = build_excerpt(_hit("Short   body\ntext", None), 300)

    assert excerpt == "Launch: Short body text"
