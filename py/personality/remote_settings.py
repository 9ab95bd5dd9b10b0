"""Remote configuration collaborator for recipes and model blobs."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Protocol

import aiofiles


class RemoteSettings(Protocol):
    """Source of remotely managed records, keyed by name.

    Absence is modeled as an empty record, never as None. I/O failures
    propagate to the caller; no retry is attempted here.
    """

    async def get(self, key: str) -> Dict[str, Any]:
        """Fetch the record stored under ``key``."""
        ...


class FileRemoteSettings:
    """Remote settings mirrored into a local directory, one ``<key>.json`` per record."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def _path_for(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    async def get(self, key: str) -> Dict[str, Any]:
        path = self._path_for(key)
        if not path.exists():
            return {}

        async with aiofiles.open(path, "r") as f:
            content = await f.read()
        record = json.loads(content)
        if not isinstance(record, dict):
            raise ValueError(f"Remote settings record {key} is not an object")
        return record
