"""Configuration models for the search and grounding core."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NormalizerConfig(BaseModel):
    """Bounds applied to raw query text."""

    max_length: int = Field(default=60, ge=1)


class AggregatorConfig(BaseModel):
    """Configures the concurrent fan-out over record sources."""

    adapter_timeout_seconds: float = Field(default=0.3, gt=0.0)
    candidate_limit: int = Field(default=200, ge=1)


class RankingConfig(BaseModel):
    """Scoring knobs for substring, fuzzy and term matching."""

    whole_field_bonus: float = Field(default=3.0, gt=2.0)
    fuzzy_fraction: float = Field(default=0.5, gt=0.0, le=1.0)
    fuzzy_min_length: int = Field(default=4, ge=1)
    fuzzy_scan_chars: int = Field(default=4000, ge=1)
    term_fraction: float = Field(default=0.5, gt=0.0, le=1.0)
    max_hits_per_group: int = Field(default=5, ge=1)


class ContextConfig(BaseModel):
    """Bounds for the context window handed to the completion step."""

    top_n: int = Field(default=5, ge=1)
    history_turns: int = Field(default=6, ge=0)
    excerpt_chars: int = Field(default=300, ge=40)
    history_boost: float = Field(default=1.25, ge=1.0)


class SynthesisConfig(BaseModel):
    """Completion call behavior."""

    completion_attempts: int = Field(default=2, ge=1)
    retry_backoff_seconds: float = Field(default=0.2, ge=0.0)
    title_chars: int = Field(default=50, ge=1)


class ConversationConfig(BaseModel):
    """Conversation log persistence."""

    sqlite_path: Path | None = None
    append_retries: int = Field(default=3, ge=1)

    @field_validator("sqlite_path", mode="before")
    @classmethod
    def _normalize_path(cls, value: str | Path | None) -> Path | None:
        if value is None or value == "":
            return None
        return Path(value).expanduser()


class AppConfig(BaseModel):
    """All runtime sections, loaded once from the environment."""

    model_config = ConfigDict(frozen=True)

    normalizer: NormalizerConfig = Field(default_factory=NormalizerConfig)
    aggregator: AggregatorConfig = Field(default_factory=AggregatorConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    records_seed_path: Path | None = None
    openai_model: str = "gpt-4o-mini"
    log_level: str = "INFO"


def _read_env(key: str, default: str | None = None) -> str | None:
    return os.getenv(key, default)


@lru_cache(maxsize=1)
def get_config() -> AppConfig:
    """Load and cache configuration from ``KNOWLEDGE_SEARCH_*`` variables."""
    timeout = _read_env("KNOWLEDGE_SEARCH_ADAPTER_TIMEOUT")
    top_n = _read_env("KNOWLEDGE_SEARCH_CONTEXT_TOP_N")
    history = _read_env("KNOWLEDGE_SEARCH_HISTORY_TURNS")

    aggregator = AggregatorConfig()
    if timeout:
        aggregator = AggregatorConfig(adapter_timeout_seconds=float(timeout))

    context = ContextConfig()
    if top_n or history:
        context = ContextConfig(
            top_n=int(top_n) if top_n else context.top_n,
            history_turns=int(history) if history else context.history_turns,
        )

    return AppConfig(
        aggregator=aggregator,
        context=context,
        conversation=ConversationConfig(
            sqlite_path=_read_env("KNOWLEDGE_SEARCH_CONVERSATION_DB"),
        ),
        records_seed_path=_read_env("KNOWLEDGE_SEARCH_RECORDS_SEED") or None,
        openai_model=_read_env("OPENAI_MODEL", "gpt-4o-mini") or "gpt-4o-mini",
        log_level=(_read_env("KNOWLEDGE_SEARCH_LOG_LEVEL", "INFO") or "INFO").upper(),
    )


def reload_config() -> AppConfig:
    """Clear the cached config (useful for tests) and reload."""
    get_config.cache_clear()
    return get_config()
