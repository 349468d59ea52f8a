"""Error taxonomy for search and grounding."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from knowledge_search.types import ContextWindow, EntityType


class KnowledgeSearchError(Exception):
    """Base class; ``error_code`` and ``retryable`` drive the HTTP mapping."""

    error_code = "internal_error"
    retryable = False


class EmptyQuery(KnowledgeSearchError):
    error_code = "empty_query"

    def __init__(self, message: str = "Query text is required") -> None:
        super().__init__(message)


class AdapterUnavailable(KnowledgeSearchError):
    """A record source failed or timed out; absorbed by the aggregator."""

    error_code = "adapter_unavailable"
    retryable = True

    def __init__(self, entity_type: EntityType, reason: str) -> None:
        super().__init__(f"{entity_type.value} source unavailable: {reason}")
        self.entity_type = entity_type
        self.reason = reason


class NoContext(KnowledgeSearchError):
    """Neither ranked hits nor conversation history were available."""

    error_code = "no_context"

    def __init__(self, window: ContextWindow) -> None:
        super().__init__("No grounding material found for question")
        self.window = window


class SynthesisUnavailable(KnowledgeSearchError):
    error_code = "synthesis_unavailable"
    retryable = True


class ConversationWriteConflict(KnowledgeSearchError):
    error_code = "conversation_write_conflict"
    retryable = True

    def __init__(self, conversation_id: str, attempts: int) -> None:
        super().__init__(
            f"Could not append to conversation {conversation_id} after {attempts} attempts"
        )
        self.conversation_id = conversation_id
        self.attempts = attempts


class ConversationNotFound(KnowledgeSearchError):
    error_code = "conversation_not_found"

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id
