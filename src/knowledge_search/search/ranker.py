"""Weighted substring + typo-tolerant relevance ranking."""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable

from knowledge_search.config import RankingConfig
from knowledge_search.search.normalizer import QueryNormalizer
from knowledge_search.types import (
    EntityType,
    MatchedSpan,
    RankedHit,
    RecordField,
    SearchableRecord,
    hit_sort_key,
)


class RelevanceRanker:
    """Scores candidates against a query and groups them by entity type.

    Scoring model:
    1. Phrase match. The whole (case-folded) query found inside a field
       contributes ``weight * position_bonus``. The bonus depends only on the
       start offset, ``1 + 1 / (1 + start)``, so earlier matches never score
       below later ones; a field equal to the query gets ``whole_field_bonus``.
    2. Typo tolerance. When the phrase is absent from a field, the best
       approximate occurrence is located with a bounded edit distance. It is
       accepted at ``<= max(1, len(query) // 4)`` edits and scored at
       ``fuzzy_fraction`` of the equivalent substring score.
    3. Term matches. Multi-word queries also score each content term the
       same way, scaled by ``term_fraction / number_of_terms``.

    A record's score is the sum over its fields; zero-score records are
    dropped. The ranker holds no state between calls.
    """

    def __init__(
        self,
        config: RankingConfig | None = None,
        normalizer: QueryNormalizer | None = None,
    ) -> None:
        self.config = config or RankingConfig()
        self.normalizer = normalizer or QueryNormalizer()

    def rank(
        self, query: str, candidates: Iterable[SearchableRecord]
    ) -> dict[EntityType, list[RankedHit]]:
        groups: dict[EntityType, list[RankedHit]] = defaultdict(list)
        for hit in self.rank_flat(query, candidates):
            groups[hit.record.entity_type].append(hit)
        return dict(groups)

    def rank_flat(self, query: str, candidates: Iterable[SearchableRecord]) -> list[RankedHit]:
        phrase = _fold(query.strip())
        if not phrase:
            return []
        terms = [term for term in self.normalizer.terms(phrase) if term != phrase]

        hits = [
            hit
            for hit in (self.score_record(phrase, terms, record) for record in candidates)
            if hit is not None
        ]
        return sorted(hits, key=hit_sort_key)

    def score_record(
        self, phrase: str, terms: list[str], record: SearchableRecord
    ) -> RankedHit | None:
        total = 0.0
        spans: list[MatchedSpan] = []
        term_scale = self.config.term_fraction / len(terms) if terms else 0.0

        for item in record.fields:
            if not item.text:
                continue
            folded = _fold(item.text)
            score, found = self._match(phrase, item, folded, item.weight)
            total += score
            spans.extend(found)
            for term in terms:
                score, found = self._match(term, item, folded, item.weight * term_scale)
                total += score
                spans.extend(found)

        if total <= 0.0:
            return None
        spans.sort(key=lambda span: (span.field, span.start, span.end))
        return RankedHit(record=record, score=total, matched_spans=_dedupe(spans))

    def position_bonus(self, start: int, end: int, folded: str) -> float:
        stripped = folded.strip()
        leading = len(folded) - len(folded.lstrip())
        if start <= leading and end - start >= len(stripped):
            return self.config.whole_field_bonus
        return 1.0 + 1.0 / (1.0 + start)

    def _match(
        self, needle: str, item: RecordField, folded: str, weight: float
    ) -> tuple[float, list[MatchedSpan]]:
        if weight <= 0.0:
            return 0.0, []

        spans: list[MatchedSpan] = []
        start = folded.find(needle)
        while start >= 0:
            end = start + len(needle)
            spans.append(
                MatchedSpan(item.name, start, end, weight * self.position_bonus(start, end, folded))
            )
            start = folded.find(needle, end)
        if spans:
            return spans[0].score, spans

        if len(needle) < self.config.fuzzy_min_length:
            return 0.0, []
        max_distance = max(1, len(needle) // 4)
        found = fuzzy_find(needle, folded[: self.config.fuzzy_scan_chars], max_distance)
        if found is None:
            return 0.0, []
        _, start, end = found
        score = weight * self.position_bonus(start, end, folded) * self.config.fuzzy_fraction
        return score, [MatchedSpan(item.name, start, end, score)]


def fuzzy_find(needle: str, text: str, max_distance: int) -> tuple[int, int, int] | None:
    """Best approximate occurrence of ``needle`` in ``text``.

    Returns ``(distance, start, end)`` for the lowest distance (earliest start
    on ties) when it is ``<= max_distance``. By pigeonhole, any occurrence
    within ``max_distance`` edits contains one of ``max_distance + 1``
    disjoint pieces of the needle verbatim, so alignment only runs on text
    regions around piece hits.
    """

    if not needle or not text:
        return None
    best: tuple[int, int, int] | None = None
    for region_start, region_end in _candidate_regions(needle, text, max_distance):
        found = _align(needle, text[region_start:region_end])
        if found is None:
            continue
        distance, start, end = found
        candidate = (distance, region_start + start, region_start + end)
        if best is None or candidate[:2] < best[:2]:
            best = candidate
    if best is None or best[0] > max_distance:
        return None
    return best


def _candidate_regions(needle: str, text: str, max_distance: int) -> list[tuple[int, int]]:
    size = len(needle)
    piece_count = min(size, max_distance + 1)
    bounds = [round(i * size / piece_count) for i in range(piece_count + 1)]

    regions: list[tuple[int, int]] = []
    for offset, stop in zip(bounds, bounds[1:]):
        piece = needle[offset:stop]
        position = text.find(piece)
        while position >= 0:
            origin = position - offset
            regions.append(
                (max(0, origin - max_distance), min(len(text), origin + size + max_distance))
            )
            position = text.find(piece, position + 1)

    regions.sort()
    merged: list[tuple[int, int]] = []
    for start, end in regions:
        if merged and start <= merged[-1][1]:
            merged[-1] = (merged[-1][0], max(merged[-1][1], end))
        else:
            merged.append((start, end))
    return merged


def _align(needle: str, text: str) -> tuple[int, int, int] | None:
    """Semi-global edit distance: the needle may start and end anywhere in text."""

    size = len(needle)
    previous = list(range(size + 1))
    previous_start = [0] * (size + 1)
    best: tuple[int, int, int] | None = None

    for column, char in enumerate(text, start=1):
        current = [0] * (size + 1)
        current_start = [column] * (size + 1)
        for row in range(1, size + 1):
            substitution = previous[row - 1] + (needle[row - 1] != char)
            deletion = previous[row] + 1
            insertion = current[row - 1] + 1
            if substitution <= deletion and substitution <= insertion:
                current[row], current_start[row] = substitution, previous_start[row - 1]
            elif insertion <= deletion:
                current[row], current_start[row] = insertion, current_start[row - 1]
            else:
                current[row], current_start[row] = deletion, previous_start[row]
        candidate = (current[size], current_start[size], column)
        if best is None or candidate[:2] < best[:2]:
            best = candidate
        previous, previous_start = current, current_start
    return best


def _fold(text: str) -> str:
    # Lower-case without changing length so offsets stay valid for highlighting.
    output: list[str] = []
    for char in text:
        lowered = char.lower()
        output.append(lowered if len(lowered) == 1 else char)
    return "".join(output)


def _dedupe(spans: list[MatchedSpan]) -> list[MatchedSpan]:
    output: list[MatchedSpan] = []
    for span in spans:
        if output and (output[-1].field, output[-1].start, output[-1].end) == (
            span.field,
            span.start,
            span.end,
        ):
            if span.score > output[-1].score:
                output[-1] = span
            continue
        output.append(span)
    return output
