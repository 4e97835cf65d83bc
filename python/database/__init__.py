"""
Database package for persisted ownership discovery

This package provides:
- SQLAlchemy ORM models for discovery runs and their edges
- Session provider with retrying engine creation
- Repository for run/edge access
- DatabaseCacheStore, the persistent CacheStore used by the graph store
"""

from database.models import (
    Base,
    DiscoveryRun,
    OwnershipEdgeRecord,
    RunStatus,
)
from database.connection import (
    DatabaseSessionProvider,
    DatabaseSettings,
    db_retry,
    get_db_provider,
    close_db,
    create_test_provider,
)
from database.repositories import (
    DiscoveryRunRepository,
)
from database.cache_store import DatabaseCacheStore

__all__ = [
    'Base',
    'DiscoveryRun',
    'OwnershipEdgeRecord',
    'RunStatus',
    'DatabaseSessionProvider',
    'DatabaseSettings',
    'db_retry',
    'get_db_provider',
    'close_db',
    'create_test_provider',
    'DiscoveryRunRepository',
    'DatabaseCacheStore',
]
