"""Record store contract and an in-memory implementation."""

from __future__ import annotations

import json
import logging
from collections import defaultdict
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from knowledge_search.search.normalizer import QueryNormalizer
from knowledge_search.search.ranker import fuzzy_find
from knowledge_search.types import OwnerScope, RecordOwner

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_FUZZY_MIN_LENGTH = 4
_SCAN_CHARS = 4000


class RecordStore(Protocol):
    """Typed access to the workspace's document database."""

    async def find(
        self,
        collection: str,
        owner_scope: OwnerScope,
        *,
        query: str = "",
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        """Return raw records of ``collection`` visible to ``owner_scope``.

        When more than ``limit`` records are visible, records whose stored
        text matches ``query`` (verbatim or within a small edit distance) must
        be kept ahead of non-matching ones; recency orders each side.
        """


def record_owner(raw: Mapping[str, Any]) -> RecordOwner:
    owner_id = raw.get("owner_id")
    workspace_id = raw.get("workspace_id")
    return RecordOwner(
        user_id=str(owner_id) if owner_id is not None else None,
        workspace_id=str(workspace_id) if workspace_id is not None else None,
    )


def parse_timestamp(value: Any) -> datetime:
    """Coerce stored timestamps to aware datetimes (UTC when naive)."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        return _EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class InMemoryRecordStore:
    """Deterministic record store used for tests and local prototyping."""

    def __init__(self, records: Mapping[str, Iterable[Mapping[str, Any]]] | None = None) -> None:
        self._collections: dict[str, list[dict[str, Any]]] = defaultdict(list)
        for collection, items in (records or {}).items():
            self.extend(collection, items)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "InMemoryRecordStore":
        """Load ``{"notes": [...], "documents": [...], ...}`` from disk."""
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"{path}: expected an object keyed by collection")
        store = cls(payload)
        logger.info(
            "Loaded %d records from %s",
            sum(len(items) for items in store._collections.values()),
            path,
        )
        return store

    def add(self, collection: str, record: Mapping[str, Any]) -> None:
        if "id" not in record:
            raise ValueError(f"record in {collection} has no id")
        self._collections[collection].append(dict(record))

    def extend(self, collection: str, records: Iterable[Mapping[str, Any]]) -> None:
        for record in records:
            self.add(collection, record)

    async def find(
        self,
        collection: str,
        owner_scope: OwnerScope,
        *,
        query: str = "",
        limit: int = 200,
    ) -> list[dict[str, Any]]:
        visible = [
            dict(raw)
            for raw in self._collections.get(collection, [])
            if owner_scope.can_see(record_owner(raw))
        ]
        needles = _needles(query)
        visible.sort(
            key=lambda raw: (
                _matches(raw, needles),
                parse_timestamp(raw.get("updated_at") or raw.get("created_at")),
            ),
            reverse=True,
        )
        if len(visible) > limit:
            logger.debug(
                "Truncating %s from %d to %d candidates for %r",
                collection,
                len(visible),
                limit,
                query,
            )
        return visible[:limit]


def _needles(query: str) -> list[str]:
    phrase = query.strip().lower()
    if not phrase:
        return []
    return [phrase] + [term for term in QueryNormalizer.terms(phrase) if term != phrase]


def _matches(raw: Mapping[str, Any], needles: list[str]) -> bool:
    if not needles:
        return False
    texts = [text.lower() for text in _strings(raw)]
    for needle in needles:
        if any(needle in text for text in texts):
            return True
        if len(needle) < _FUZZY_MIN_LENGTH:
            continue
        max_distance = max(1, len(needle) // 4)
        if any(fuzzy_find(needle, text[:_SCAN_CHARS], max_distance) for text in texts):
            return True
    return False


def _strings(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, Mapping):
        return [text for item in value.values() for text in _strings(item)]
    if isinstance(value, (list, tuple)):
        return [text for item in value for text in _strings(item)]
    return []
