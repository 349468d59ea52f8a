"""Wires normalizer, aggregator, ranker, context assembly and synthesis."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

from knowledge_search.assistant.completion import CompletionService
from knowledge_search.assistant.context import ContextAssembler
from knowledge_search.assistant.synthesizer import AnswerSynthesizer
from knowledge_search.config import AppConfig
from knowledge_search.conversation.store import ConversationStore
from knowledge_search.errors import ConversationNotFound, NoContext
from knowledge_search.obs.tracing import Timer, TraceStore, estimate_token_count
from knowledge_search.search.aggregator import FanOutAggregator
from knowledge_search.search.normalizer import QueryNormalizer
from knowledge_search.search.ranker import RelevanceRanker
from knowledge_search.sources.adapters import RecordSourceAdapter
from knowledge_search.types import (
    ALL_ENTITY_TYPES,
    AskResult,
    Conversation,
    ConversationTurn,
    EntityType,
    OwnerScope,
    SearchResponse,
)

logger = logging.getLogger(__name__)


class KnowledgeSearchService:
    """Entry point for cross-entity search and grounded answers."""

    def __init__(
        self,
        adapters: Mapping[EntityType, RecordSourceAdapter],
        store: ConversationStore,
        completion: CompletionService,
        config: AppConfig | None = None,
        trace_store: TraceStore | None = None,
    ) -> None:
        self.config = config or AppConfig()
        self.store = store
        self.completion = completion
        self.trace_store = trace_store or TraceStore()
        self.normalizer = QueryNormalizer(self.config.normalizer)
        self.aggregator = FanOutAggregator(adapters, self.config.aggregator)
        self.ranker = RelevanceRanker(self.config.ranking, self.normalizer)
        self.assembler = ContextAssembler(
            normalizer=self.normalizer,
            aggregator=self.aggregator,
            ranker=self.ranker,
            store=store,
            config=self.config.context,
        )
        self.synthesizer = AnswerSynthesizer(completion, store, self.config.synthesis)

    async def search(
        self,
        owner_scope: OwnerScope,
        query: str | None,
        entity_types: Sequence[EntityType] | None = None,
    ) -> SearchResponse:
        requested = list(dict.fromkeys(entity_types or ALL_ENTITY_TYPES))
        clean = self.normalizer.normalize(query)
        if not clean:
            return SearchResponse(query="", groups={entity_type: [] for entity_type in requested})

        aggregate = await self.aggregator.aggregate(owner_scope, clean, requested)
        ranked = self.ranker.rank(clean, aggregate.candidates())
        limit = self.config.ranking.max_hits_per_group
        groups = {entity_type: ranked.get(entity_type, [])[:limit] for entity_type in requested}
        logger.info(
            "Search %r for %s: %d hits, failed sources %s",
            clean,
            owner_scope.user_id,
            sum(len(hits) for hits in groups.values()),
            [entity_type.value for entity_type in aggregate.failed_sources],
        )
        return SearchResponse(
            query=clean,
            groups=groups,
            partial=aggregate.partial,
            failed_sources=list(aggregate.failed_sources),
        )

    async def ask(
        self,
        owner_scope: OwnerScope,
        question: str,
        conversation_id: str | None = None,
    ) -> AskResult:
        """Answer ``question`` from the caller's records.

        No matching records and no history is not an error: the answer is
        produced without citations and flagged ``degraded``.
        """

        with Timer() as timer:
            if conversation_id is not None:
                await self._owned_conversation(owner_scope, conversation_id)

            degraded = False
            try:
                context = await self.assembler.build_context(question, conversation_id, owner_scope)
            except NoContext as exc:
                logger.info("No grounding material for %r; answering ungrounded", question)
                context = exc.window
                degraded = True

            result = await self.synthesizer.synthesize(context.question, context, owner_scope)

        prompt = self.synthesizer.build_prompt(context.question, context)
        trace = self.trace_store.create_record(
            owner_user_id=owner_scope.user_id,
            question=context.question,
            answer=result.answer,
            conversation_id=result.conversation_id,
            citations=[f"[{c.entity_type.value}:{c.id}]" for c in result.citations],
            source_snippets=[entry.excerpt for entry in context.entries],
            degraded=degraded,
            partial=context.partial,
            prompt_tokens=estimate_token_count(prompt),
            answer_tokens=estimate_token_count(result.answer),
            latency_ms=timer.elapsed_ms,
        )
        return AskResult(
            answer=result.answer,
            citations=result.citations,
            conversation_id=result.conversation_id,
            degraded=degraded,
            partial=context.partial,
            trace_id=trace.trace_id,
        )

    async def list_conversation_turns(
        self,
        owner_scope: OwnerScope,
        conversation_id: str,
        limit: int | None = None,
    ) -> list[ConversationTurn]:
        await self._owned_conversation(owner_scope, conversation_id)
        return await self.store.get_turns(conversation_id, limit)

    async def list_conversations(self, owner_scope: OwnerScope, limit: int = 20) -> list[Conversation]:
        return await self.store.list_conversations(owner_scope, limit)

    async def _owned_conversation(self, owner_scope: OwnerScope, conversation_id: str) -> Conversation:
        conversation = await self.store.get_conversation(conversation_id)
        if conversation.owner_user_id != owner_scope.user_id:
            # Indistinguishable from a missing id.
            raise ConversationNotFound(conversation_id)
        return conversation
