"""Completion services the synthesizer can delegate to."""

from __future__ import annotations

import os
import re
from typing import Any, Protocol

_SOURCE_LINE = re.compile(r"^(?P<marker>\[[a-z]+:[^\]\s]+\])\s+(?P<body>.+)$")


class CompletionService(Protocol):
    """Single-shot natural-language completion."""

    async def complete(self, prompt: str) -> str:
        """Return the model's answer to ``prompt``."""


class LangChainCompletionService:
    """Adapts any LangChain chat model (``ainvoke``) to ``CompletionService``."""

    mode = "langchain"

    def __init__(self, llm: Any) -> None:
        self.llm = llm

    async def complete(self, prompt: str) -> str:
        response = await self.llm.ainvoke(prompt)
        content = getattr(response, "content", response)
        if isinstance(content, list):
            parts: list[str] = []
            for item in content:
                if isinstance(item, dict) and "text" in item:
                    parts.append(str(item["text"]))
                else:
                    parts.append(str(item))
            return " ".join(parts).strip()
        return str(content).strip()


class ExtractiveCompletionService:
    """Answers from the prompt's source lines without an external model.

    Keeps the same contract as the LangChain service and is used when no
    ``OPENAI_API_KEY`` is configured. Every sentence it emits carries the
    marker of the source it was lifted from.
    """

    mode = "extractive"

    def __init__(self, max_sources: int = 3) -> None:
        self.max_sources = max_sources

    async def complete(self, prompt: str) -> str:
        sources = _parse_sources(prompt)
        if not sources:
            return "I could not find anything in your workspace that answers this question."

        return "\n".join(f"- {body} {marker}" for marker, body in sources[: self.max_sources])


def _parse_sources(prompt: str) -> list[tuple[str, str]]:
    sources: list[tuple[str, str]] = []
    for line in prompt.splitlines():
        match = _SOURCE_LINE.match(line.strip())
        if match:
            sources.append((match.group("marker"), match.group("body").strip()))
    return sources


def create_completion_service(model: str = "gpt-4o-mini") -> LangChainCompletionService | ExtractiveCompletionService:
    """OpenAI through LangChain when a key is configured, extractive otherwise."""
    if not os.getenv("OPENAI_API_KEY"):
        return ExtractiveCompletionService()

    from langchain_openai import ChatOpenAI

    return LangChainCompletionService(ChatOpenAI(model=model, temperature=0))
