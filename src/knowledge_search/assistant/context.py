"""Builds the bounded, cited context window for one question."""

from __future__ import annotations

import asyncio
import logging

from knowledge_search.config import ContextConfig
from knowledge_search.conversation.store import ConversationStore
from knowledge_search.errors import NoContext
from knowledge_search.search.aggregator import FanOutAggregator
from knowledge_search.search.normalizer import QueryNormalizer
from knowledge_search.search.ranker import RelevanceRanker
from knowledge_search.types import (
    ContextEntry,
    ContextWindow,
    ConversationTurn,
    EntityType,
    OwnerScope,
    RankedHit,
    SourceMarker,
    hit_sort_key,
)

logger = logging.getLogger(__name__)


class ContextAssembler:
    """Selects grounding excerpts and recent dialogue for the completion step.

    Retrieval and history loading run concurrently. Records cited earlier in
    the loaded history get a score boost so follow-up questions stay anchored
    to the sources the conversation is already about.
    """

    def __init__(
        self,
        *,
        normalizer: QueryNormalizer,
        aggregator: FanOutAggregator,
        ranker: RelevanceRanker,
        store: ConversationStore,
        config: ContextConfig | None = None,
    ) -> None:
        self.normalizer = normalizer
        self.aggregator = aggregator
        self.ranker = ranker
        self.store = store
        self.config = config or ContextConfig()

    async def build_context(
        self,
        question: str,
        conversation_id: str | None,
        owner_scope: OwnerScope,
    ) -> ContextWindow:
        """Return the window, or raise ``NoContext`` carrying an empty one."""

        query = self.normalizer.normalize(question, required=True)
        aggregate, history = await asyncio.gather(
            self.aggregator.aggregate(owner_scope, query),
            self._history(conversation_id),
        )

        hits = self.ranker.rank_flat(query, aggregate.candidates())
        hits = _boost_cited(hits, history, self.config.history_boost)
        selected = hits[: self.config.top_n]

        window = ContextWindow(
            question=self.normalizer.sanitize(question),
            conversation_id=conversation_id,
            entries=[
                ContextEntry(
                    marker=SourceMarker(hit.record.entity_type, hit.record.id, hit.record.title),
                    excerpt=build_excerpt(hit, self.config.excerpt_chars),
                    score=hit.score,
                )
                for hit in selected
            ],
            history=history,
            partial=aggregate.partial,
        )
        logger.info(
            "Context for %r: %d of %d hits, %d history turns, partial=%s",
            query,
            len(window.entries),
            len(hits),
            len(history),
            window.partial,
        )
        if window.is_empty:
            raise NoContext(window)
        return window

    async def _history(self, conversation_id: str | None) -> list[ConversationTurn]:
        if conversation_id is None or self.config.history_turns == 0:
            return []
        return await self.store.get_turns(conversation_id, self.config.history_turns)


def _boost_cited(
    hits: list[RankedHit], history: list[ConversationTurn], boost: float
) -> list[RankedHit]:
    cited: set[tuple[EntityType, str]] = {
        (citation.entity_type, citation.id) for turn in history for citation in turn.cited_sources
    }
    if not cited or boost == 1.0:
        return hits
    boosted = [
        RankedHit(hit.record, hit.score * boost, hit.matched_spans)
        if hit.record.key in cited
        else hit
        for hit in hits
    ]
    return sorted(boosted, key=hit_sort_key)


def build_excerpt(hit: RankedHit, max_chars: int) -> str:
    """Title plus a window of body text around the strongest body match.

    Falls back to the head of the longest body field when only the title
    matched.
    """

    record = hit.record
    span = hit.strongest_span(exclude=("title",))
    body = ""
    if span is not None:
        matched = record.field(span.field)
        if matched is not None:
            body = _window(matched.text, span.start, span.end, max_chars)
    if not body:
        others = [item for item in record.fields if item.name != "title" and item.text]
        if others:
            longest = max(others, key=lambda item: len(item.text))
            body = _window(longest.text, 0, 0, max_chars)

    title = record.title
    if not body or body == title:
        return title
    return f"{title}: {body}"


def _window(text: str, start: int, end: int, max_chars: int) -> str:
    if len(text) <= max_chars:
        return _flatten(text)
    center = (start + end) // 2
    left = max(0, center - max_chars // 2)
    right = min(len(text), left + max_chars)
    left = max(0, right - max_chars)
    snippet = _flatten(text[left:right])
    if left > 0:
        snippet = "..." + snippet
    if right < len(text):
        snippet = snippet + "..."
    return snippet


def _flatten(text: str) -> str:
    return " ".join(text.split())
