"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

A session is stored as one row: indexed lookup columns plus the full
pydantic JSON dump in `payload`. JSON instead of PostgreSQL-specific JSONB;
on PG the dialect maps JSON to jsonb, on MySQL it uses native JSON, on
SQLite it serializes to TEXT.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Index, String
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import Session


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


class SessionRow(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    agent_id: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[Any] = mapped_column(JSON, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_sessions_agent_status", "agent_id", "status"),
    )

    @classmethod
    def from_session(cls, session: Session) -> "SessionRow":
        row = cls(id=session.id)
        row.apply(session)
        return row

    def apply(self, session: Session) -> None:
        self.agent_id = session.agent_id
        self.status = session.status.value
        self.payload = session.model_dump(mode="json")
        self.created_at = session.created_at
        self.updated_at = session.updated_at
        self.expires_at = session.expires_at

    def to_session(self) -> Session:
        return Session.model_validate(self.payload)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id, "agent_id": self.agent_id, "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }
