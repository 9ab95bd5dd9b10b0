"""JSON file persistence for the finalized interest vector."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import structlog

from .constants import INTEREST_VECTOR_STORE_NAME


class KeyedStore(Protocol):
    """Keyed cache the provider persists its interest vector in."""

    name: str

    def get(self, key: str) -> Optional[Any]:
        ...

    async def set(self, key: str, value: Any) -> None:
        ...


class InterestVectorStore:
    """
    Small keyed JSON store, preloaded into memory on construction.

    Reads are served from the in-memory cache; writes replace the file
    atomically so a crash never leaves a half-written vector behind.
    """

    name = INTEREST_VECTOR_STORE_NAME

    def __init__(
        self,
        file_path: Path,
        preload: bool = True,
        logger: Optional[structlog.BoundLogger] = None,
    ) -> None:
        self.file_path = file_path
        self.logger = logger or structlog.get_logger(__name__)
        self._cache: Optional[Dict[str, Any]] = None
        if preload:
            self._cache = self._read()

    def _read(self) -> Dict[str, Any]:
        if not self.file_path.exists():
            return {}

        try:
            with open(self.file_path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            # If corrupted, start fresh but keep the old file around
            backup_path = self.file_path.with_suffix(".json.backup")
            self.logger.warning("interest_store.corrupt", path=str(self.file_path),
                                backup=str(backup_path), error=str(e))
            if self.file_path.exists():
                self.file_path.rename(backup_path)
            return {}

        return data if isinstance(data, dict) else {}

    @property
    def cache(self) -> Dict[str, Any]:
        if self._cache is None:
            self._cache = self._read()
        return self._cache

    def get(self, key: str) -> Optional[Any]:
        return self.cache.get(key)

    async def set(self, key: str, value: Any) -> None:
        data = dict(self.cache)
        data[key] = value
        self._atomic_write_json(data)
        self._cache = data

    def _atomic_write_json(self, data: Dict[str, Any]) -> None:
        """Write to a temp file in the same directory, then rename over the target."""
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        temp_fd, temp_path = tempfile.mkstemp(
            suffix=".tmp",
            prefix=f"{self.file_path.stem}_",
            dir=self.file_path.parent,
        )

        try:
            with os.fdopen(temp_fd, "w") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(temp_path, self.file_path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
