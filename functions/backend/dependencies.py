"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from backend.config import get_settings
from backend.store import InMemoryKeyValueStore, KeyValueStore, RedisKeyValueStore
from cove.client import CoveConfig
from cove.connector import CoveBackupConnector
from cove.errors import ConnectorNotConfiguredError

_kv_store: KeyValueStore | None = None
_backup_connector: CoveBackupConnector | None = None


def get_kv_store() -> KeyValueStore:
    """
    Return a singleton store so every request shares the same session token,
    lock and cache.
    """
    global _kv_store
    if _kv_store:
        return _kv_store

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.redis_url:
        _kv_store = InMemoryKeyValueStore()
    else:
        _kv_store = RedisKeyValueStore(settings.redis_url)
    return _kv_store


def get_backup_connector() -> CoveBackupConnector:
    global _backup_connector
    if _backup_connector:
        return _backup_connector

    settings = get_settings()
    if not settings.cove_configured:
        raise ConnectorNotConfiguredError(settings.cove_tool_id)
    _backup_connector = CoveBackupConnector(CoveConfig.from_settings(settings), get_kv_store())
    return _backup_connector


def reset_dependencies() -> None:
    """Forget the cached singletons (useful in tests)."""
    global _kv_store, _backup_connector
    _kv_store = None
    _backup_connector = None
