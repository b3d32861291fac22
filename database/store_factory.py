"""
Store Factory — build the persistence backend named in settings.database.

  memory → InMemoryStore   leads, tasks and jobs live only as long as the process
  file   → FileStore       JSON collections under store_file_dir
  sql    → SqlStore        tables at database.url, created by init_db or
                           scripts/migrate_db.py

build_engine() asks for a store once per process and hands the same
instance to the scheduler, the pipeline, recovery and intake.
"""
from __future__ import annotations

import structlog
from typing import Callable, Optional

from config.settings import DatabaseConfig, get_settings
from database.store_base import BaseStore

logger = structlog.get_logger()


def _memory_store(config: DatabaseConfig) -> BaseStore:
    from database.store_memory import InMemoryStore
    return InMemoryStore()


def _file_store(config: DatabaseConfig) -> BaseStore:
    from database.store_file import FileStore
    return FileStore(data_dir=config.store_file_dir)


def _sql_store(config: DatabaseConfig) -> BaseStore:
    from database.store import SqlStore
    return SqlStore()


BACKENDS: dict[str, Callable[[DatabaseConfig], BaseStore]] = {
    "memory": _memory_store,
    "file": _file_store,
    "sql": _sql_store,
}


def create_store(config: Optional[DatabaseConfig] = None) -> BaseStore:
    """Build the backend for config (default: settings.database); unknown names raise ValueError."""
    config = config or get_settings().database
    backend = (config.store_backend or "memory").lower()
    if backend not in BACKENDS:
        raise ValueError(
            f"Unknown store_backend '{config.store_backend}', expected one of: {', '.join(BACKENDS)}"
        )
    store = BACKENDS[backend](config)
    if backend == "file":
        logger.info("store_created", backend=backend, data_dir=config.store_file_dir)
    else:
        logger.info("store_created", backend=backend)
    return store
