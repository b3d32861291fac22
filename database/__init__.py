"""
Database layer — leads, sequence tasks and production jobs behind one
BaseStore interface.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON files on disk, for small deployments)

Quick start:
  from database import create_store
  store = create_store(DatabaseConfig(store_backend="file", store_file_dir="./data"))
  job = await store.oldest_job_in_stage(JobStage.AWAITING_LYRICS)
"""
from database.models import (
    Base, LeadRow, SequenceDefinitionRow, SequenceTaskRow, ProductionJobRow,
)
from database.session import get_engine, get_session, init_db, close_db
from database.store_base import BaseStore
from database.store import SqlStore
from database.store_memory import InMemoryStore
from database.store_file import FileStore
from database.store_factory import BACKENDS, create_store

__all__ = [
    # ORM models
    "Base", "LeadRow", "SequenceDefinitionRow", "SequenceTaskRow", "ProductionJobRow",
    # Session management
    "get_engine", "get_session", "init_db", "close_db",
    # Store interface
    "BaseStore",
    # Store backends
    "SqlStore", "InMemoryStore", "FileStore",
    # Factory
    "BACKENDS", "create_store",
]
