"""
Database layer — Job store and message history persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)

Quick start:
  from database import create_store
  store = create_store({"store_backend": "memory"})
  due = await store.list_due(now, limit=10, max_attempts=5)
"""
from database.models import (
    Base, ScheduledJobRow, MessageRow, ClientRow, TemplateRow,
)
from database.session import get_engine, get_session, init_db, close_db, make_session_scope
from database.store_base import BaseJobStore
from database.store import SqlJobStore
from database.store_memory import InMemoryJobStore
from database.store_factory import create_store, get_store, reset_store

__all__ = [
    # ORM models
    "Base", "ScheduledJobRow", "MessageRow", "ClientRow", "TemplateRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db", "make_session_scope",
    # Store interface
    "BaseJobStore",
    # Store backends
    "SqlJobStore", "InMemoryJobStore",
    # Factory
    "create_store", "get_store", "reset_store",
]
