import asyncio
from datetime import datetime, timezone

import pytest

from conftest import ALICE, BrokenAdapter, SlowAdapter
from knowledge_search.config import AggregatorConfig
from knowledge_search.search.aggregator import FanOutAggregator
from knowledge_search.types import EntityType, RecordField, RecordOwner, SearchableRecord


class StaticAdapter:
    def __init__(self, entity_type: EntityType, records: list[SearchableRecord]) -> None:
        self.entity_type = entity_type
        self.records = records

    async def find(self, owner_scope, query, *, limit=200):
        return list(self.records)


def _note(record_id: str, owner: RecordOwner, day: int = 1) -> SearchableRecord:
    return SearchableRecord(
        id=record_id,
        entity_type=EntityType.NOTE,
        owner=owner,
        fields=(RecordField("title", 3.0, f"note {record_id} day {day}"),),
        updated_at=datetime(2024, 5, day, tzinfo=timezone.utc),
    )


@pytest.mark.asyncio
async def test_aggregate_collects_every_source(adapters) -> None:
    aggregator = FanOutAggregator(adapters)

    result = await aggregator.aggregate(ALICE, "ai")

    assert set(result.records_by_type) == set(EntityType)
    assert not result.partial
    note_ids = {record.id for record in result.records_by_type[EntityType.NOTE]}
    assert note_ids == {"n-revenue", "n-plan", "n-ai"}


@pytest.mark.asyncio
async def test_slow_adapter_times_out_without_failing_the_call(adapters) -> None:
    slow = SlowAdapter(adapters[EntityType.DOCUMENT], delay=1.0)
    aggregator = FanOutAggregator(
        {**adapters, EntityType.DOCUMENT: slow},
        AggregatorConfig(adapter_timeout_seconds=0.05),
    )

    result = await aggregator.aggregate(ALICE, "ai")

    assert result.partial
    assert result.failed_sources == [EntityType.DOCUMENT]
    assert result.records_by_type[EntityType.DOCUMENT] == []
    assert result.records_by_type[EntityType.NOTE]
    assert slow.cancelled


@pytest.mark.asyncio
async def test_raising_adapter_is_isolated(adapters) -> None:
    aggregator = FanOutAggregator({**adapters, EntityType.CHAT: BrokenAdapter(EntityType.CHAT)})

    result = await aggregator.aggregate(ALICE, "design")

    assert result.failed_sources == [EntityType.CHAT]
    assert result.records_by_type[EntityType.WORKSPACE]


@pytest.mark.asyncio
async def test_missing_adapter_is_reported_as_failed() -> None:
    aggregator = FanOutAggregator({})

    result = await aggregator.aggregate(ALICE, "ai", [EntityType.NOTE])

    assert result.failed_sources == [EntityType.NOTE]


@pytest.mark.asyncio
async def test_restricts_to_requested_types(adapters) -> None:
    aggregator = FanOutAggregator(adapters)

    result = await aggregator.aggregate(
        ALICE, "ai", [EntityType.NOTE, EntityType.WORKSPACE, EntityType.NOTE]
    )

    assert list(result.records_by_type) == [EntityType.NOTE, EntityType.WORKSPACE]


@pytest.mark.asyncio
async def test_out_of_scope_records_are_dropped() -> None:
    leaked = _note("n-bob", RecordOwner(user_id="bob"))
    own = _note("n-own", RecordOwner(user_id="alice"))
    aggregator = FanOutAggregator({EntityType.NOTE: StaticAdapter(EntityType.NOTE, [leaked, own])})

    result = await aggregator.aggregate(ALICE, "note", [EntityType.NOTE])

    assert [record.id for record in result.records_by_type[EntityType.NOTE]] == ["n-own"]


@pytest.mark.asyncio
async def test_duplicate_ids_keep_latest_version() -> None:
    owner = RecordOwner(user_id="alice")
    adapter = StaticAdapter(EntityType.NOTE, [_note("n-1", owner, 1), _note("n-1", owner, 3)])
    aggregator = FanOutAggregator({EntityType.NOTE: adapter})

    result = await aggregator.aggregate(ALICE, "note", [EntityType.NOTE])

    records = result.records_by_type[EntityType.NOTE]
    assert len(records) == 1
    assert records[0].updated_at.day == 3


@pytest.mark.asyncio
async def test_caller_cancellation_reaches_adapters(adapters) -> None:
    slow = SlowAdapter(adapters[EntityType.NOTE], delay=5.0)
    aggregator = FanOutAggregator(
        {EntityType.NOTE: slow}, AggregatorConfig(adapter_timeout_seconds=10.0)
    )

    task = asyncio.create_task(aggregator.aggregate(ALICE, "ai", [EntityType.NOTE]))
    await asyncio.sleep(0.05)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task
    assert slow.cancelled
