"""Ask tracing and groundedness evaluation."""

from __future__ import annotations

import re
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime, timezone

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)
_MARKER_PATTERN = re.compile(r"\[[a-z]+:[^\]\s]+\]")


@dataclass(slots=True)
class TraceRecord:
    trace_id: str
    timestamp_utc: str
    owner_user_id: str
    question: str
    answer: str
    conversation_id: str | None
    citations: list[str]
    source_snippets: list[str]
    degraded: bool
    partial: bool
    prompt_tokens: int
    answer_tokens: int
    latency_ms: float
    groundedness: float


class GroundednessEvaluator:
    """Computes attribution correctness from answer-source overlap.

    Metric definition used here:
    - Split answer into sentences.
    - Remove source markers like `[note:n-1]`.
    - A sentence is considered grounded if at least one source snippet has token
      overlap ratio >= `min_overlap`.

    Deterministic, so it can back contract tests.
    """

    def __init__(self, min_overlap: float = 0.35) -> None:
        self.min_overlap = min_overlap

    def score(self, answer: str, source_snippets: list[str]) -> float:
        sentences = [
            sentence.strip()
            for sentence in re.split(r"(?<=[.!?])\s+|\n+", answer)
            if sentence.strip()
        ]
        if not sentences:
            return 1.0
        if not source_snippets:
            return 0.0

        source_token_sets = [set(self._normalize(source)) for source in source_snippets]
        grounded = 0

        for sentence in sentences:
            clean_sentence = _MARKER_PATTERN.sub("", sentence).strip()
            sentence_tokens = set(self._normalize(clean_sentence))
            if not sentence_tokens:
                grounded += 1
                continue

            if any(
                self._overlap(sentence_tokens, source_tokens) >= self.min_overlap
                for source_tokens in source_token_sets
            ):
                grounded += 1

        return grounded / len(sentences)

    @staticmethod
    def _normalize(text: str) -> list[str]:
        return [token.lower() for token in _TOKEN_PATTERN.findall(text)]

    @staticmethod
    def _overlap(a: set[str], b: set[str]) -> float:
        if not a or not b:
            return 0.0
        return len(a & b) / len(a)


class TraceStore:
    """Bounded in-memory trace storage for API-level observability."""

    def __init__(
        self,
        *,
        groundedness_evaluator: GroundednessEvaluator | None = None,
        max_records: int = 1000,
    ) -> None:
        self._records: OrderedDict[str, TraceRecord] = OrderedDict()
        self._groundedness = groundedness_evaluator or GroundednessEvaluator()
        self.max_records = max_records

    def create_record(
        self,
        *,
        owner_user_id: str,
        question: str,
        answer: str,
        conversation_id: str | None,
        citations: list[str],
        source_snippets: list[str],
        degraded: bool,
        partial: bool,
        prompt_tokens: int,
        answer_tokens: int,
        latency_ms: float,
    ) -> TraceRecord:
        trace_id = str(uuid.uuid4())
        record = TraceRecord(
            trace_id=trace_id,
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            owner_user_id=owner_user_id,
            question=question,
            answer=answer,
            conversation_id=conversation_id,
            citations=citations,
            source_snippets=source_snippets,
            degraded=degraded,
            partial=partial,
            prompt_tokens=prompt_tokens,
            answer_tokens=answer_tokens,
            latency_ms=latency_ms,
            groundedness=self._groundedness.score(answer, source_snippets),
        )
        self._records[trace_id] = record
        while len(self._records) > self.max_records:
            self._records.popitem(last=False)
        return record

    def get(self, trace_id: str, owner_user_id: str | None = None) -> TraceRecord:
        """Raises ``KeyError`` for unknown ids and for other owners' traces."""
        record = self._records.get(trace_id)
        if record is None or (owner_user_id is not None and record.owner_user_id != owner_user_id):
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20, owner_user_id: str | None = None) -> list[TraceRecord]:
        if limit <= 0:
            return []
        return self._visible(owner_user_id)[-limit:]

    def _visible(self, owner_user_id: str | None) -> list[TraceRecord]:
        if owner_user_id is None:
            return list(self._records.values())
        return [record for record in self._records.values() if record.owner_user_id == owner_user_id]

    def __len__(self) -> int:
        return len(self._records)

    def summary(self, owner_user_id: str | None = None) -> dict[str, float | int]:
        """Aggregate core observability metrics, optionally for one owner."""
        records = self._visible(owner_user_id)
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_groundedness": 0.0,
                "degraded_rate": 0.0,
                "partial_rate": 0.0,
                "total_prompt_tokens": 0,
                "total_answer_tokens": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))

        return {
            "total_requests": total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_groundedness": sum(record.groundedness for record in records) / total,
            "degraded_rate": sum(1 for record in records if record.degraded) / total,
            "partial_rate": sum(1 for record in records if record.partial) / total,
            "total_prompt_tokens": sum(record.prompt_tokens for record in records),
            "total_answer_tokens": sum(record.answer_tokens for record in records),
        }


class Timer:
    """Simple context timer used around each ask."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0


def estimate_token_count(text: str) -> int:
    return len(_TOKEN_PATTERN.findall(text))
