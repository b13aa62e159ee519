"""
Session Store — Interface for all durability backends.

Implementations:
  - SqlSessionStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy)
  - InMemorySessionStore (dict-based, single-process, no persistence)
  - FileSessionStore     (JSON file on disk, single-process, durable)

Backends only persist and retrieve. Lifecycle decisions (idle, expiry,
eviction) and caching live in database/adapter.py.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from models.schemas import Session, SessionStatus


@runtime_checkable
class SessionStore(Protocol):
    """Capability the core needs from a storage backend."""

    async def save(self, session: Session) -> None:
        """Insert or replace. Saving the same session twice is a no-op."""
        ...

    async def load(self, session_id: str) -> Optional[Session]:
        ...

    async def delete(self, session_id: str) -> bool:
        ...

    async def list(
        self,
        agent_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        ...

    async def cleanup_expired(self, now: datetime) -> int:
        """Delete sessions that are Expired or past their expires_at. Returns count."""
        ...


def is_past_expiry(session: Session, now: datetime) -> bool:
    return session.status == SessionStatus.EXPIRED or (
        session.expires_at is not None and session.expires_at <= now
    )
