"""
Job store selection.

`database.store_backend` in settings.yaml picks the backend:
    sql     scheduled_jobs / messages tables in `database.url`
    memory  process-local dicts, lost on restart (development and tests)

The first store created is kept as the process-wide instance, so the API and
the dispatcher always share one store.
"""
from __future__ import annotations

import structlog
from typing import Optional

from database.store_base import BaseJobStore

logger = structlog.get_logger()

STORE_BACKENDS = ("sql", "memory")

_instance: Optional[BaseJobStore] = None


def create_store(config: dict = None) -> BaseJobStore:
    """Create (or return the already created) job store.

    `config` takes a single key, `store_backend`, defaulting to "memory".
    An unknown backend name raises ValueError.
    """
    global _instance
    if _instance is not None:
        return _instance

    backend = (config or {}).get("store_backend", "memory")
    if backend not in STORE_BACKENDS:
        raise ValueError(f"Unknown store backend: {backend!r} (expected one of {STORE_BACKENDS})")

    if backend == "sql":
        from database.store import SqlJobStore
        _instance = SqlJobStore()
    else:
        from database.store_memory import InMemoryJobStore
        _instance = InMemoryJobStore()

    logger.info("job_store_created", backend=backend)
    return _instance


def get_store() -> BaseJobStore:
    if _instance is None:
        return create_store()
    return _instance


def reset_store() -> None:
    """Forget the process-wide store; used between tests."""
    global _instance
    _instance = None
