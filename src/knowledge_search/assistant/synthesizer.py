"""Prompt construction, completion, citation resolution and turn recording."""

from __future__ import annotations

import asyncio
import logging
import re

from langchain_core.prompts import PromptTemplate

from knowledge_search.assistant.completion import CompletionService
from knowledge_search.config import SynthesisConfig
from knowledge_search.conversation.store import ConversationStore
from knowledge_search.errors import SynthesisUnavailable
from knowledge_search.types import (
    Citation,
    ContextWindow,
    EntityType,
    OwnerScope,
    Role,
    SynthesisResult,
    TurnDraft,
)

logger = logging.getLogger(__name__)

_MARKER_PATTERN = re.compile(
    r"\[(?P<entity_type>" + "|".join(e.value for e in EntityType) + r"):(?P<id>[^\]\s]+)\]"
)

_PROMPT = PromptTemplate.from_template(
    """
You are the assistant of a personal knowledge workspace.

Rules:
1) Ground every factual statement in the sources below and cite each one with its marker, written exactly as it appears in the list.
2) Never cite a marker that is not in the list.
3) If the sources do not answer the question, say so plainly and answer from general knowledge without any citation.
4) Reply in the language of the question and keep the answer concise.

Sources:
{sources}

Conversation so far:
{history}

Question: {question}
Answer:
""".strip()
)


class AnswerSynthesizer:
    """Turns a context window into a cited answer and records the exchange.

    The conversation is only touched after the completion succeeds, so a
    failed call never leaves a half-written exchange behind.
    """

    def __init__(
        self,
        completion: CompletionService,
        store: ConversationStore,
        config: SynthesisConfig | None = None,
    ) -> None:
        self.completion = completion
        self.store = store
        self.config = config or SynthesisConfig()

    def build_prompt(self, question: str, context: ContextWindow) -> str:
        sources = "\n".join(f"{entry.marker.tag} {entry.excerpt}" for entry in context.entries)
        history = "\n".join(
            f"{turn.role.value}: {' '.join(turn.content.split())}" for turn in context.history
        )
        return _PROMPT.format(
            sources=sources or "(none)",
            history=history or "(none)",
            question=question,
        )

    async def synthesize(
        self, question: str, context: ContextWindow, owner_scope: OwnerScope
    ) -> SynthesisResult:
        prompt = self.build_prompt(question, context)
        answer = await self._complete(prompt)
        citations = extract_citations(answer, context)

        drafts = [
            TurnDraft(Role.USER, question),
            TurnDraft(Role.ASSISTANT, answer, tuple(citations)),
        ]
        conversation_id = context.conversation_id
        if conversation_id is None:
            conversation = await self.store.create_conversation(
                owner_scope, derive_title(question, self.config.title_chars), drafts
            )
            conversation_id = conversation.id
        else:
            await self.store.append_turns(conversation_id, drafts)
        return SynthesisResult(answer=answer, citations=citations, conversation_id=conversation_id)

    async def _complete(self, prompt: str) -> str:
        attempts = self.config.completion_attempts
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                answer = await self.completion.complete(prompt)
            except Exception as exc:
                last_error = exc
                logger.warning("Completion attempt %d/%d failed: %s", attempt, attempts, exc)
            else:
                if answer.strip():
                    return answer.strip()
                last_error = ValueError("completion service returned an empty answer")
                logger.warning("Completion attempt %d/%d returned nothing", attempt, attempts)
            if attempt < attempts:
                await asyncio.sleep(self.config.retry_backoff_seconds * attempt)
        raise SynthesisUnavailable(f"Completion service unavailable: {last_error}") from last_error


def extract_citations(answer: str, context: ContextWindow) -> list[Citation]:
    """Resolve markers in ``answer`` against the window; unknown ones are dropped."""
    citations: list[Citation] = []
    seen: set[tuple[EntityType, str]] = set()
    for match in _MARKER_PATTERN.finditer(answer):
        entity_type = EntityType(match.group("entity_type"))
        record_id = match.group("id")
        if (entity_type, record_id) in seen:
            continue
        entry = context.resolve(entity_type, record_id)
        if entry is None:
            logger.debug("Dropping unresolved marker %s", match.group(0))
            continue
        seen.add((entity_type, record_id))
        citations.append(
            Citation(
                entity_type=entity_type,
                id=record_id,
                title=entry.marker.title,
                excerpt=entry.excerpt,
            )
        )
    return citations


def derive_title(question: str, max_chars: int = 50) -> str:
    title = question.strip()
    if len(title) > max_chars:
        return title[:max_chars] + "..."
    return title
