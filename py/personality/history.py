"""Browsing history collaborator."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Protocol

import aiofiles
from pydantic import BaseModel, Field

from .models import HistoryEntry


class HistoryQuery(BaseModel):
    """Which slice of history to read."""

    begin: Optional[datetime] = Field(default=None, description="Oldest visit to include")
    end: Optional[datetime] = Field(default=None, description="Newest visit to include")
    max_results: Optional[int] = Field(default=None, ge=0)


class HistoryProvider(Protocol):
    """Source of history snapshots. An empty history is a normal result."""

    async def fetch_history(self, query: HistoryQuery) -> List[HistoryEntry]:
        ...


def _aware(moment: datetime) -> datetime:
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


def select_history(entries: List[HistoryEntry], query: HistoryQuery) -> List[HistoryEntry]:
    """
    Apply a query to a list of entries: visit window, most frecent first, limit.

    Entries without a visit timestamp are only kept when the query has no window.
    """
    selected = []
    for entry in entries:
        if query.begin is not None or query.end is not None:
            if entry.visit_timestamp is None:
                continue
            visited = _aware(entry.visit_timestamp)
            if query.begin is not None and visited < _aware(query.begin):
                continue
            if query.end is not None and visited > _aware(query.end):
                continue
        selected.append(entry)

    selected.sort(key=lambda e: e.frecency, reverse=True)
    if query.max_results is not None:
        selected = selected[:query.max_results]
    return selected


class JsonHistorySource:
    """History exported to a JSON file as a list of entry records."""

    def __init__(self, file_path: Path) -> None:
        self.file_path = file_path

    async def fetch_history(self, query: HistoryQuery) -> List[HistoryEntry]:
        if not self.file_path.exists():
            return []

        async with aiofiles.open(self.file_path, "r") as f:
            content = await f.read()
        records = json.loads(content) if content.strip() else []
        entries = [HistoryEntry.model_validate(record) for record in records]
        return select_history(entries, query)
