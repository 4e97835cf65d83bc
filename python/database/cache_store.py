"""
SQLAlchemy-backed cache store for discovery artifacts

Each save() writes a new discovery run and makes it current; load() reads
the current run back. Database and decoding errors surface as
CacheStoreError, which the graph store treats as a cache miss.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from aggregator import DiscoveryArtifact
from database.connection import DatabaseSessionProvider, db_retry
from database.models import OwnershipEdgeRecord
from database.repositories import DiscoveryRunRepository, ensure_utc
from graph_cache import CacheStore, CacheStoreError
from ownership import EdgeSource, OwnershipEdge, RelationshipType

logger = logging.getLogger(__name__)


def record_to_edge(record: OwnershipEdgeRecord) -> OwnershipEdge:
    return OwnershipEdge(
        parent=record.parent,
        subsidiary=record.subsidiary,
        relationship_type=RelationshipType(record.relationship_type),
        confidence=float(record.confidence),
        source=EdgeSource(record.source),
        evidence=tuple(record.evidence or ()),
        discovered_at=ensure_utc(record.discovered_at),
    )


class DatabaseCacheStore(CacheStore):
    """Cache store persisting artifacts as discovery runs

    Args:
        provider: Session provider (tables are created on first use)
        keep_runs: How many past runs to retain
    """

    def __init__(self, provider: DatabaseSessionProvider, keep_runs: int = 5):
        self.provider = provider
        self.keep_runs = keep_runs
        self._tables_ready = False

    def _ensure_tables(self) -> None:
        if not self._tables_ready:
            self.provider.create_tables()
            self._tables_ready = True

    @db_retry
    def _load(self) -> Optional[DiscoveryArtifact]:
        with self.provider.session_scope() as session:
            repo = DiscoveryRunRepository(session)
            run = repo.get_current()
            if run is None:
                return None
            edges = [record_to_edge(r) for r in repo.get_edges(run.id)]
            return DiscoveryArtifact(
                edges=edges,
                last_updated=ensure_utc(run.last_updated),
                connector_calls=run.connector_calls,
                connector_successes=run.connector_successes,
            )

    @db_retry
    def _save(self, artifact: DiscoveryArtifact) -> str:
        with self.provider.session_scope() as session:
            repo = DiscoveryRunRepository(session)
            run = repo.create_run(artifact.last_updated, artifact.connector_calls,
                                  artifact.connector_successes)
            repo.add_edges(run, artifact.edges)
            repo.mark_current(run)
            repo.prune(self.keep_runs)
            return run.id

    def load(self) -> Optional[DiscoveryArtifact]:
        try:
            self._ensure_tables()
            return self._load()
        except SQLAlchemyError as e:
            raise CacheStoreError(f"Could not read cached artifact: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise CacheStoreError(f"Corrupt cached artifact: {e}") from e

    def save(self, artifact: DiscoveryArtifact) -> None:
        try:
            self._ensure_tables()
            run_id = self._save(artifact)
        except SQLAlchemyError as e:
            raise CacheStoreError(f"Could not persist artifact: {e}") from e
        logger.info(f"Persisted discovery run {run_id} ({len(artifact.edges)} edges)")

    def clear(self) -> None:
        try:
            self._ensure_tables()
            with self.provider.session_scope() as session:
                DiscoveryRunRepository(session).delete_all()
        except SQLAlchemyError as e:
            raise CacheStoreError(f"Could not clear cached artifacts: {e}") from e
