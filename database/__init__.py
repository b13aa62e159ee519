"""
Database layer — Multi-backend session persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON file on disk, for small deployments)

Quick start:
  from database import create_store, SessionStoreAdapter
  adapter = SessionStoreAdapter(create_store(settings.store))
  session = await adapter.get_or_create(None, "support")
"""
from database.models import Base, SessionRow
from database.session import create_engine, create_session_factory, init_db, session_scope
from database.store_base import SessionStore
from database.store import SqlSessionStore
from database.store_memory import InMemorySessionStore
from database.store_file import FileSessionStore
from database.store_factory import create_store, get_store, reset_store
from database.adapter import SessionStoreAdapter, SweepReport

__all__ = [
    # ORM models
    "Base", "SessionRow",
    # Engine / session management
    "create_engine", "create_session_factory", "init_db", "session_scope",
    # Store interface
    "SessionStore",
    # Store backends
    "SqlSessionStore", "InMemorySessionStore", "FileSessionStore",
    # Factory
    "create_store", "get_store", "reset_store",
    # Adapter (cache, locks, lifecycle)
    "SessionStoreAdapter", "SweepReport",
]
