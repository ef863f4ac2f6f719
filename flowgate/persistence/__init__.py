"""Persistence layer for flowgate workflows."""

from __future__ import annotations

import os
from typing import Optional

from ..config import FlowgateConfig, load_config
from .inmemory import InMemoryStoreSession, InMemoryWorkflowStore
from .sql import SQLStoreSession, SQLWorkflowStore, normalize_database_url
from .store import StoreSession, TransactionHooks, WorkflowStore

_store_instance: WorkflowStore | None = None


def get_store(
    database_url: Optional[str] = None, config: Optional[FlowgateConfig] = None
) -> WorkflowStore:
    """Factory function to obtain a workflow store.

    The backend is selected based on ``database_url`` which can be provided
    explicitly, via environment variable ``FLOWGATE_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory store is returned.
    """

    global _store_instance
    if _store_instance is not None and database_url is None and config is None:
        return _store_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("FLOWGATE_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _store_instance = InMemoryWorkflowStore()
        return _store_instance

    # raises ValueError for unsupported backends
    normalize_database_url(database_url)
    _store_instance = SQLWorkflowStore(database_url)
    return _store_instance


__all__ = [
    "StoreSession",
    "TransactionHooks",
    "WorkflowStore",
    "InMemoryStoreSession",
    "InMemoryWorkflowStore",
    "SQLStoreSession",
    "SQLWorkflowStore",
    "get_store",
]
