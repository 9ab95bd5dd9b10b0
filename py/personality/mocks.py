"""Test mocks and utilities for personality provider testing."""

from __future__ import annotations

import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from .constants import INTEREST_VECTOR_STORE_NAME
from .history import HistoryQuery
from .models import HistoryEntry


class InMemoryRemoteSettings:
    """Remote settings served from a dict, recording every fetch."""

    def __init__(self, records: Optional[Dict[str, Dict[str, Any]]] = None) -> None:
        self.records = records or {}
        self.fetches: List[str] = []

    async def get(self, key: str) -> Dict[str, Any]:
        self.fetches.append(key)
        # 💡: Hand out copies so callers can't alter the "remote" record
        return copy.deepcopy(self.records.get(key, {}))

    def fetch_count(self, key: str) -> int:
        return self.fetches.count(key)


class InMemoryHistory:
    """History provider returning a fixed list of entries, unfiltered and in order."""

    def __init__(self, entries: Optional[List[HistoryEntry]] = None) -> None:
        self.entries: List[HistoryEntry] = list(entries or [])
        self.queries: List[HistoryQuery] = []

    async def fetch_history(self, query: HistoryQuery) -> List[HistoryEntry]:
        self.queries.append(query)
        return list(self.entries)


class FailingHistory:
    """History provider whose store is unavailable."""

    def __init__(self, error: Exception) -> None:
        self.error = error

    async def fetch_history(self, query: HistoryQuery) -> List[HistoryEntry]:
        raise self.error


class InMemoryInterestVectorStore:
    """Interest vector store without disk I/O."""

    name = INTEREST_VECTOR_STORE_NAME

    def __init__(self, initial: Optional[Dict[str, Any]] = None) -> None:
        self._cache: Dict[str, Any] = dict(initial or {})
        self.writes: List[str] = []

    def get(self, key: str) -> Optional[Any]:
        return self._cache.get(key)

    async def set(self, key: str, value: Any) -> None:
        self.writes.append(key)
        self._cache[key] = value


class ClockController:
    """Controllable clock for recency-dependent tests."""

    def __init__(self, now: Optional[datetime] = None) -> None:
        self.now = now or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        """Move time forward, e.g. ``advance(hours=2)``."""
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def ago(self, **kwargs: float) -> datetime:
        """A moment in the past relative to the current time."""
        return self.now - timedelta(**kwargs)
