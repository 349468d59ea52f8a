"""Concurrent fan-out over record source adapters."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence

from knowledge_search.config import AggregatorConfig
from knowledge_search.errors import AdapterUnavailable
from knowledge_search.sources.adapters import RecordSourceAdapter
from knowledge_search.types import (
    ALL_ENTITY_TYPES,
    AggregateResult,
    EntityType,
    OwnerScope,
    SearchableRecord,
)

logger = logging.getLogger(__name__)


class FanOutAggregator:
    """Issues one lookup per adapter and joins them before ranking.

    Every adapter call carries the caller's scope and its own timeout. A slow
    or failing adapter contributes nothing and is listed in
    ``failed_sources``; the call as a whole still succeeds. Caller
    cancellation propagates to all in-flight adapter tasks.
    """

    def __init__(
        self,
        adapters: Mapping[EntityType, RecordSourceAdapter],
        config: AggregatorConfig | None = None,
    ) -> None:
        self.adapters = dict(adapters)
        self.config = config or AggregatorConfig()

    async def aggregate(
        self,
        owner_scope: OwnerScope,
        query: str,
        entity_types: Sequence[EntityType] | None = None,
    ) -> AggregateResult:
        requested = _unique(entity_types or ALL_ENTITY_TYPES)
        outcomes = await asyncio.gather(
            *(self._lookup(entity_type, owner_scope, query) for entity_type in requested)
        )

        result = AggregateResult(records_by_type={})
        for entity_type, outcome in zip(requested, outcomes, strict=True):
            if isinstance(outcome, AdapterUnavailable):
                logger.warning("%s", outcome)
                result.failed_sources.append(entity_type)
                result.records_by_type[entity_type] = []
                continue
            result.records_by_type[entity_type] = self._visible_unique(
                entity_type, owner_scope, outcome
            )

        logger.debug(
            "Aggregated %d candidates across %d sources (failed: %s)",
            sum(len(records) for records in result.records_by_type.values()),
            len(requested),
            [entity_type.value for entity_type in result.failed_sources],
        )
        return result

    async def _lookup(
        self, entity_type: EntityType, owner_scope: OwnerScope, query: str
    ) -> list[SearchableRecord] | AdapterUnavailable:
        adapter = self.adapters.get(entity_type)
        if adapter is None:
            return AdapterUnavailable(entity_type, "no adapter registered")
        try:
            return await asyncio.wait_for(
                adapter.find(owner_scope, query, limit=self.config.candidate_limit),
                timeout=self.config.adapter_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return AdapterUnavailable(
                entity_type, f"timed out after {self.config.adapter_timeout_seconds:.3f}s"
            )
        except Exception as exc:
            logger.debug("Adapter %s raised", entity_type.value, exc_info=True)
            return AdapterUnavailable(entity_type, f"{type(exc).__name__}: {exc}")

    @staticmethod
    def _visible_unique(
        entity_type: EntityType,
        owner_scope: OwnerScope,
        records: list[SearchableRecord],
    ) -> list[SearchableRecord]:
        kept: dict[str, SearchableRecord] = {}
        for record in records:
            if record.entity_type != entity_type or not owner_scope.can_see(record.owner):
                logger.warning(
                    "Dropping %s:%s returned outside caller scope",
                    record.entity_type.value,
                    record.id,
                )
                continue
            current = kept.get(record.id)
            if current is None or record.updated_at > current.updated_at:
                kept[record.id] = record
        return list(kept.values())


def _unique(entity_types: Sequence[EntityType]) -> list[EntityType]:
    output: list[EntityType] = []
    for entity_type in entity_types:
        if entity_type not in output:
            output.append(entity_type)
    return output
