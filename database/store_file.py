"""
FileSessionStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    sessions.json      # {session_id: session dict}

Features:
  - Survives process restarts (unlike InMemorySessionStore)
  - No external dependencies (no database server)
  - Every mutation rewrites the file atomically (write temp, then rename)
  - Single-process only (no concurrent write safety)

Best for: small deployments, demos, edge devices.
"""
from __future__ import annotations

import json
import os
from pathlib import Path

import structlog

from database.store_memory import InMemorySessionStore

logger = structlog.get_logger()


class FileSessionStore(InMemorySessionStore):
    """
    Extends InMemorySessionStore with JSON file persistence.

    On init: loads all sessions from disk into memory.
    On every write: flushes the collection to disk.
    """

    def __init__(self, data_dir: str = "./data"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._load_all()
        logger.info("file_store_initialized", data_dir=str(self._data_dir), sessions=len(self._sessions))

    @property
    def path(self) -> Path:
        return self._data_dir / "sessions.json"

    def _load_all(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_store_load_error", path=str(self.path), error=str(e))
            return
        self._sessions = data if isinstance(data, dict) else {}

    def _on_change(self) -> None:
        tmp = self.path.with_suffix(".json.tmp")
        with open(tmp, "w") as f:
            json.dump(self._sessions, f, indent=2, default=str)
        os.replace(tmp, self.path)

    def stats(self) -> dict:
        return {**super().stats(), "backend": "file", "data_dir": str(self._data_dir)}
