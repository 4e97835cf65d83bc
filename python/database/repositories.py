"""
Repository for persisted discovery runs and their edges
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from database.models import DiscoveryRun, OwnershipEdgeRecord, RunStatus
from ownership import OwnershipEdge, normalize_name

logger = logging.getLogger(__name__)


def ensure_utc(value: datetime) -> datetime:
    """SQLite returns naive datetimes; stored values are always UTC."""
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


class DiscoveryRunRepository:
    """Data access for discovery runs."""

    def __init__(self, session: Session):
        self.session = session

    def create_run(self, last_updated: datetime, connector_calls: int = 0,
                   connector_successes: int = 0) -> DiscoveryRun:
        run = DiscoveryRun(
            status=RunStatus.RUNNING.value,
            last_updated=last_updated,
            connector_calls=connector_calls,
            connector_successes=connector_successes,
            counts_by_source={},
        )
        self.session.add(run)
        self.session.flush()
        return run

    def add_edges(self, run: DiscoveryRun, edges: List[OwnershipEdge]) -> int:
        """Attach the canonical edges to a run, preserving their order."""
        counts: Dict[str, int] = {}
        for position, edge in enumerate(edges):
            self.session.add(OwnershipEdgeRecord(
                run_id=run.id,
                position=position,
                dedup_key=edge.dedup_key,
                parent=edge.parent,
                subsidiary=edge.subsidiary,
                parent_normalized=normalize_name(edge.parent),
                subsidiary_normalized=normalize_name(edge.subsidiary),
                relationship_type=edge.relationship_type.value,
                confidence=edge.confidence,
                source=edge.source.value,
                evidence=list(edge.evidence),
                discovered_at=edge.discovered_at,
            ))
            counts[edge.source.value] = counts.get(edge.source.value, 0) + 1
        run.total_relationships = len(edges)
        run.counts_by_source = counts
        self.session.flush()
        return len(edges)

    def mark_current(self, run: DiscoveryRun) -> None:
        """Complete the run and make it the only current one."""
        self.session.execute(
            update(DiscoveryRun).where(DiscoveryRun.id != run.id).values(is_current=False)
        )
        run.is_current = True
        run.status = RunStatus.COMPLETED.value
        run.completed_at = datetime.now(timezone.utc)
        self.session.flush()

    def get_current(self) -> Optional[DiscoveryRun]:
        return self.session.execute(
            select(DiscoveryRun).where(DiscoveryRun.is_current.is_(True))
        ).scalar_one_or_none()

    def get_edges(self, run_id: str) -> List[OwnershipEdgeRecord]:
        return list(self.session.execute(
            select(OwnershipEdgeRecord)
            .where(OwnershipEdgeRecord.run_id == run_id)
            .order_by(OwnershipEdgeRecord.position)
        ).scalars())

    def prune(self, keep: int = 5) -> int:
        """Delete all but the newest `keep` runs (the current run is always kept)."""
        old_ids = list(self.session.execute(
            select(DiscoveryRun.id)
            .where(DiscoveryRun.is_current.is_(False))
            .order_by(DiscoveryRun.created_at.desc())
            .offset(max(keep - 1, 0))
        ).scalars())
        if not old_ids:
            return 0
        self.session.execute(delete(OwnershipEdgeRecord).where(OwnershipEdgeRecord.run_id.in_(old_ids)))
        self.session.execute(delete(DiscoveryRun).where(DiscoveryRun.id.in_(old_ids)))
        logger.info(f"Pruned {len(old_ids)} old discovery runs")
        return len(old_ids)

    def delete_all(self) -> None:
        self.session.execute(delete(OwnershipEdgeRecord))
        self.session.execute(delete(DiscoveryRun))
