"""
SessionStoreAdapter — Cache, locking and lifecycle in front of a SessionStore.

The backend (memory, file, SQL) only persists. This adapter owns:
  - a bounded LRU cache of sessions (write-through, deep copies in and out)
  - per-session locks shared with the Orchestrator, so at most one turn
    runs per session id
  - lifecycle evaluation in `sweep()`, invoked by an external scheduler:
        Active / AwaitingInput idle past idle_timeout_secs → Idle
                                     (an active flow becomes Abandoned)
        any session past ttl_secs or expires_at            → Expired
                                     (then evicted or archived)

Usage:
    adapter = SessionStoreAdapter(create_store(settings.store))
    session = await adapter.get_or_create(None, "support", SessionConfig())
    async with adapter.lock(session.id):
        ...
        await adapter.save(session)
    report = await adapter.sweep()
"""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Optional

import structlog

from context.flow_engine import abandon_position
from core.errors import ConcurrencyError, NotFoundError, SessionClosedError, ValidationError
from database.store_base import SessionStore
from models.schemas import Session, SessionConfig, SessionStatus
from utils.aio import acquire_within

logger = structlog.get_logger()

Clock = Callable[[], datetime]

EXPIRED_POLICIES = ("evict", "archive")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SweepReport:
    """What one sweep pass changed."""

    def __init__(self):
        self.idled: list[str] = []
        self.expired: list[str] = []
        self.evicted: list[str] = []
        self.archived: list[str] = []
        self.abandoned_flows: list[str] = []
        self.skipped_locked: list[str] = []
        self.cleaned_up = 0

    def __bool__(self):
        return bool(self.idled or self.expired)

    def __repr__(self):
        return (f"<SweepReport idled={len(self.idled)} expired={len(self.expired)} "
                f"skipped={len(self.skipped_locked)}>")

    def to_dict(self) -> dict[str, Any]:
        return {
            "idled": self.idled, "expired": self.expired,
            "evicted": self.evicted, "archived": self.archived,
            "abandoned_flows": self.abandoned_flows,
            "skipped_locked": self.skipped_locked,
            "cleaned_up": self.cleaned_up,
        }


class _LockEntry:
    __slots__ = ("lock", "refs")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.refs = 0


class SessionStoreAdapter:

    def __init__(
        self,
        store: SessionStore,
        clock: Clock = _utcnow,
        cache_size: int = 1024,
        expired_policy: str = "evict",
    ):
        if expired_policy not in EXPIRED_POLICIES:
            raise ValueError(f"expired_policy must be one of {EXPIRED_POLICIES}")
        self._store = store
        self._clock = clock
        self._cache_size = max(1, cache_size)
        self._expired_policy = expired_policy
        self._cache: OrderedDict[str, Session] = OrderedDict()
        self._locks: dict[str, _LockEntry] = {}
        logger.info("session_adapter_initialized",
                    backend=type(store).__name__, expired_policy=expired_policy)

    @property
    def store(self) -> SessionStore:
        return self._store

    def now(self) -> datetime:
        return self._clock()

    # ── Locks ─────────────────────────────────────────────────

    @asynccontextmanager
    async def lock(
        self,
        session_id: str,
        wait: bool = True,
        timeout: Optional[float] = None,
    ) -> AsyncIterator[None]:
        """
        Per-session mutual exclusion.

        Args:
            wait:    False → raise ConcurrencyError if anyone holds or waits for the lock
            timeout: seconds to wait before raising ConcurrencyError (None = forever)
        """
        entry = self._locks.get(session_id)
        if entry is None:
            entry = self._locks[session_id] = _LockEntry()
        entry.refs += 1
        try:
            if not wait and entry.refs > 1:
                raise ConcurrencyError(session_id)
            if timeout is not None:
                if not await acquire_within(entry.lock, timeout):
                    raise ConcurrencyError(session_id, f"timed out after {timeout}s waiting for in-flight turn")
            else:
                await entry.lock.acquire()
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.refs -= 1
            if entry.refs == 0:
                self._locks.pop(session_id, None)

    def is_locked(self, session_id: str) -> bool:
        entry = self._locks.get(session_id)
        return entry is not None and entry.lock.locked()

    # ── Cache ─────────────────────────────────────────────────

    def _cache_put(self, session: Session) -> None:
        self._cache[session.id] = session.model_copy(deep=True)
        self._cache.move_to_end(session.id)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    def _cache_get(self, session_id: str) -> Optional[Session]:
        cached = self._cache.get(session_id)
        if cached is None:
            return None
        self._cache.move_to_end(session_id)
        return cached.model_copy(deep=True)

    @property
    def cached_count(self) -> int:
        return len(self._cache)

    # ── CRUD ──────────────────────────────────────────────────

    async def get(self, session_id: str) -> Optional[Session]:
        session = self._cache_get(session_id)
        if session is not None:
            return session
        session = await self._store.load(session_id)
        if session is not None:
            self._cache_put(session)
        return session

    async def create(
        self,
        agent_id: str,
        config: SessionConfig = None,
        session_id: Optional[str] = None,
        metadata: dict[str, Any] = None,
    ) -> Session:
        """Explicit start. Fails if the id is already taken."""
        if session_id and await self.get(session_id) is not None:
            raise ValidationError(f"Session '{session_id}' already exists")
        now = self._clock()
        fields: dict[str, Any] = dict(
            agent_id=agent_id,
            config=(config or SessionConfig()).model_copy(deep=True),
            created_at=now, updated_at=now, last_activity_at=now,
            metadata=metadata or {},
        )
        if session_id:
            fields["id"] = session_id
        session = Session(**fields)
        await self.save(session)
        logger.info("session_created", session_id=session.id, agent_id=agent_id)
        return session

    async def get_or_create(
        self,
        session_id: Optional[str],
        agent_id: str,
        config: SessionConfig = None,
    ) -> Session:
        """
        Resolve a session for a turn.

        A missing id or an unknown id creates a new session with the agent's
        SessionConfig. A session owned by another agent is reported as not
        found. A completed or expired one raises SessionClosedError.
        """
        if session_id:
            session = await self.get(session_id)
            if session is not None:
                if session.agent_id != agent_id:
                    raise NotFoundError("session", session_id)
                if not session.is_closed and self.is_expired(session, self._clock()):
                    await self._expire(session, self._clock())
                if session.is_closed:
                    raise SessionClosedError(session_id, session.status.value)
                return session
        return await self.create(agent_id, config, session_id)

    async def save(self, session: Session) -> None:
        """Idempotent upsert, write-through."""
        await self._store.save(session)
        self._cache_put(session)

    async def delete(self, session_id: str) -> bool:
        self._cache.pop(session_id, None)
        removed = await self._store.delete(session_id)
        if removed:
            logger.info("session_deleted", session_id=session_id)
        return removed

    async def list(
        self,
        agent_id: Optional[str] = None,
        status: Optional[SessionStatus] = None,
    ) -> list[Session]:
        return await self._store.list(agent_id=agent_id, status=status)

    # ── Lifecycle ─────────────────────────────────────────────

    @staticmethod
    def is_expired(session: Session, now: datetime) -> bool:
        if session.expires_at is not None and now >= session.expires_at:
            return True
        ttl = session.config.ttl_secs
        return bool(ttl) and now - session.created_at >= timedelta(seconds=ttl)

    @staticmethod
    def is_idle(session: Session, now: datetime) -> bool:
        timeout = session.config.idle_timeout_secs
        return bool(timeout) and now - session.last_activity_at > timedelta(seconds=timeout)

    async def _expire(self, session: Session, now: datetime, report: Optional[SweepReport] = None) -> None:
        if session.context.flow and abandon_position(session.context.flow, now) \
                and report is not None:
            report.abandoned_flows.append(session.id)
        session.transition_to(SessionStatus.EXPIRED, now)
        self._cache.pop(session.id, None)
        if self._expired_policy == "evict":
            await self._store.delete(session.id)
            if report is not None:
                report.evicted.append(session.id)
        else:
            await self._store.save(session)
            if report is not None:
                report.archived.append(session.id)
        if report is not None:
            report.expired.append(session.id)
        logger.info("session_expired", session_id=session.id, policy=self._expired_policy)

    async def sweep(self) -> SweepReport:
        """
        One lifecycle pass over every stored session.
        Sessions with a turn in flight are skipped and picked up next time.
        """
        now = self._clock()
        report = SweepReport()

        for candidate in await self._store.list():
            if candidate.status == SessionStatus.EXPIRED:
                continue
            try:
                async with self.lock(candidate.id, wait=False):
                    session = await self._store.load(candidate.id)
                    if session is None or session.status == SessionStatus.EXPIRED:
                        continue
                    if self.is_expired(session, now):
                        await self._expire(session, now, report)
                        continue
                    if session.status in (SessionStatus.ACTIVE, SessionStatus.AWAITING_INPUT) \
                            and self.is_idle(session, now):
                        if session.context.flow and abandon_position(session.context.flow, now):
                            report.abandoned_flows.append(session.id)
                        session.transition_to(SessionStatus.IDLE, now)
                        await self.save(session)
                        report.idled.append(session.id)
            except ConcurrencyError:
                report.skipped_locked.append(candidate.id)

        if self._expired_policy == "evict":
            report.cleaned_up = await self._store.cleanup_expired(now)

        logger.info("session_sweep_completed", **{k: len(v) if isinstance(v, list) else v
                                                  for k, v in report.to_dict().items()})
        return report

    def stats(self) -> dict[str, Any]:
        return {
            "backend": type(self._store).__name__,
            "cached": len(self._cache),
            "locked": sum(1 for e in self._locks.values() if e.lock.locked()),
            "expired_policy": self._expired_policy,
        }
