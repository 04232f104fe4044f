"""
Persistence adapters for serialized override patches.

The core only needs ``save(project_id, payload)`` where ``payload`` is the
serialized patch or ``None`` ("clear all overrides"). Adapters raise
PersistenceError on failure; retries are left to the caller.

Concurrent writers are not arbitrated: the last save to complete wins.
"""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

ProjectId = str | int


class PersistenceError(Exception):
    """Raised by adapters when a payload could not be stored or read."""


@dataclass(frozen=True)
class SaveOutcome:
    """Success/failure signal of one save attempt."""

    ok: bool
    project_id: str
    payload: str | None
    error: str | None = None


class PersistenceAdapter(abc.ABC):
    @abc.abstractmethod
    async def save(self, project_id: ProjectId, payload: str | None) -> None:
        """Store `payload` for the project; None clears its overrides."""

    @abc.abstractmethod
    async def load(self, project_id: ProjectId) -> str | None:
        """Return the stored payload, or None when the project has no overrides."""


class InMemoryOverrideStore(PersistenceAdapter):
    """Dict-backed store for demos and tests; keeps every write in `history`."""

    def __init__(self, payloads: dict[str, str] | None = None):
        self.payloads: dict[str, str] = dict(payloads or {})
        self.history: list[tuple[str, str | None]] = []

    async def save(self, project_id: ProjectId, payload: str | None) -> None:
        key = str(project_id)
        self.history.append((key, payload))
        if payload is None:
            self.payloads.pop(key, None)
        else:
            self.payloads[key] = payload

    async def load(self, project_id: ProjectId) -> str | None:
        return self.payloads.get(str(project_id))


class JsonFileOverrideStore(PersistenceAdapter):
    """
    One JSON document mapping project id -> serialized override payload.

    File access runs on a worker thread so the event loop is never blocked.
    Writes go to a temporary file that replaces the original.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    async def save(self, project_id: ProjectId, payload: str | None) -> None:
        await asyncio.to_thread(self._save_sync, str(project_id), payload)

    async def load(self, project_id: ProjectId) -> str | None:
        data = await asyncio.to_thread(self._read_all)
        return data.get(str(project_id))

    def load_sync(self, project_id: ProjectId) -> str | None:
        return self._read_all().get(str(project_id))

    def _read_all(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            raise PersistenceError(f"cannot read override store {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PersistenceError(f"override store {self.path} is not a JSON object")
        return {str(key): value for key, value in data.items() if isinstance(value, str)}

    def _save_sync(self, project_id: str, payload: str | None) -> None:
        data = self._read_all()
        if payload is None:
            data.pop(project_id, None)
        else:
            data[project_id] = payload
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(data, fh, indent=4, ensure_ascii=False)
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise PersistenceError(f"cannot write override store {self.path}: {exc}") from exc
        logger.debug("Wrote overrides for project %s to %s", project_id, self.path)
