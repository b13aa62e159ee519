"""
InMemorySessionStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Same interface as SqlSessionStore
  - Safe within a single event loop
  - All data lost on process restart

Sessions are kept as JSON-mode dicts, never as live objects, so callers can
not mutate stored state by holding on to a returned Session.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import structlog

from database.store_base import is_past_expiry
from models.schemas import Session, SessionStatus

logger = structlog.get_logger()


class InMemorySessionStore:

    def __init__(self):
        self._sessions: dict[str, dict[str, Any]] = {}     # id → session dict
        logger.info("inmemory_store_initialized")

    async def save(self, session: Session) -> None:
        self._sessions[session.id] = session.model_dump(mode="json")
        self._on_change()

    async def load(self, session_id: str) -> Optional[Session]:
        data = self._sessions.get(session_id)
        return Session.model_validate(data) if data else None

    async def delete(self, session_id: str) -> bool:
        removed = self._sessions.pop(session_id, None) is not None
        if removed:
            self._on_change()
        return removed

    async def list(
        self,
        agent_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        result = []
        for data in self._sessions.values():
            if agent_id and data["agent_id"] != agent_id:
                continue
            if status and data["status"] != status.value:
                continue
            result.append(Session.model_validate(data))
        result.sort(key=lambda s: s.created_at)
        return result

    async def cleanup_expired(self, now: datetime) -> int:
        expired = [
            sid for sid, data in self._sessions.items()
            if is_past_expiry(Session.model_validate(data), now)
        ]
        for sid in expired:
            del self._sessions[sid]
        if expired:
            self._on_change()
            logger.info("sessions_cleaned_up", count=len(expired))
        return len(expired)

    def _on_change(self) -> None:
        """Hook for subclasses that persist on write."""

    def stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        for data in self._sessions.values():
            by_status[data["status"]] = by_status.get(data["status"], 0) + 1
        return {"backend": "memory", "sessions": len(self._sessions), "by_status": by_status}
