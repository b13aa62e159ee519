"""
SqlSessionStore — SQLAlchemy-backed session store.

Works with PostgreSQL, MySQL and SQLite through the async drivers mapped in
database/session.py. Tables are created on first use.
"""
from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Optional

import structlog
from sqlalchemy import delete, func, or_, select

from database.models import SessionRow
from database.session import create_engine, create_session_factory, init_db, session_scope
from database.store_base import is_past_expiry
from models.schemas import Session, SessionStatus

logger = structlog.get_logger()


class SqlSessionStore:

    def __init__(self, url: str = "sqlite:///./sessions.db", echo: bool = False):
        self._engine = create_engine(url, echo=echo)
        self._factory = create_session_factory(self._engine)
        self._ready = False
        self._init_lock = asyncio.Lock()

    async def _ensure_ready(self) -> None:
        if self._ready:
            return
        async with self._init_lock:
            if not self._ready:
                await init_db(self._engine)
                self._ready = True

    async def save(self, session: Session) -> None:
        await self._ensure_ready()
        async with session_scope(self._factory) as db:
            row = await db.get(SessionRow, session.id)
            if row is None:
                db.add(SessionRow.from_session(session))
            else:
                row.apply(session)

    async def load(self, session_id: str) -> Optional[Session]:
        await self._ensure_ready()
        async with session_scope(self._factory) as db:
            row = await db.get(SessionRow, session_id)
            return row.to_session() if row else None

    async def delete(self, session_id: str) -> bool:
        await self._ensure_ready()
        async with session_scope(self._factory) as db:
            result = await db.execute(delete(SessionRow).where(SessionRow.id == session_id))
            return result.rowcount > 0

    async def list(
        self,
        agent_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        await self._ensure_ready()
        stmt = select(SessionRow)
        if agent_id:
            stmt = stmt.where(SessionRow.agent_id == agent_id)
        if status:
            stmt = stmt.where(SessionRow.status == status.value)
        async with session_scope(self._factory) as db:
            rows = (await db.execute(stmt)).scalars().all()
            sessions = [r.to_session() for r in rows]
        sessions.sort(key=lambda s: s.created_at)
        return sessions

    async def cleanup_expired(self, now: datetime) -> int:
        await self._ensure_ready()
        stmt = select(SessionRow).where(or_(
            SessionRow.status == SessionStatus.EXPIRED.value,
            SessionRow.expires_at.is_not(None),
        ))
        async with session_scope(self._factory) as db:
            rows = (await db.execute(stmt)).scalars().all()
            # compared on the payload; SQLite returns naive datetimes
            ids = [r.id for r in rows if is_past_expiry(r.to_session(), now)]
            if ids:
                await db.execute(delete(SessionRow).where(SessionRow.id.in_(ids)))
        if ids:
            logger.info("sessions_cleaned_up", count=len(ids), backend="sql")
        return len(ids)

    async def stats(self) -> dict[str, Any]:
        await self._ensure_ready()
        async with session_scope(self._factory) as db:
            rows = (await db.execute(
                select(SessionRow.status, func.count()).group_by(SessionRow.status)
            )).all()
        by_status = {status: count for status, count in rows}
        return {"backend": "sql", "dialect": self._engine.dialect.name,
                "sessions": sum(by_status.values()), "by_status": by_status}

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("database_closed")
