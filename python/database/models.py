"""
SQLAlchemy ORM models for persisted discovery artifacts

Tables:
1. discovery_runs - One row per discovery run (artifact metadata); exactly one run is current
2. ownership_edges - Canonical edges produced by a run
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import List, Optional

from sqlalchemy import (
    Boolean, CheckConstraint, DateTime, Float, ForeignKey, Index, Integer,
    JSON, String, UniqueConstraint
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class RunStatus(str, PyEnum):
    """Status of a discovery run"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


def _uuid() -> str:
    return str(uuid.uuid4())


class DiscoveryRun(Base):
    """Metadata of one persisted discovery artifact"""
    __tablename__ = "discovery_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    status: Mapped[str] = mapped_column(String(20), default=RunStatus.RUNNING.value, nullable=False)
    is_current: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    last_updated: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_relationships: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    connector_calls: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    connector_successes: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    counts_by_source: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    edges: Mapped[List["OwnershipEdgeRecord"]] = relationship(
        back_populates="run", cascade="all, delete-orphan", order_by="OwnershipEdgeRecord.position"
    )

    def __repr__(self) -> str:
        return f"<DiscoveryRun(id={self.id}, status={self.status}, edges={self.total_relationships})>"


class OwnershipEdgeRecord(Base):
    """One canonical ownership edge"""
    __tablename__ = "ownership_edges"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("discovery_runs.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(1100), nullable=False)
    parent: Mapped[str] = mapped_column(String(500), nullable=False)
    subsidiary: Mapped[str] = mapped_column(String(500), nullable=False)
    parent_normalized: Mapped[str] = mapped_column(String(500), nullable=False)
    subsidiary_normalized: Mapped[str] = mapped_column(String(500), nullable=False)
    relationship_type: Mapped[str] = mapped_column(String(20), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    source: Mapped[str] = mapped_column(String(40), nullable=False)
    evidence: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    discovered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    run: Mapped["DiscoveryRun"] = relationship(back_populates="edges")

    __table_args__ = (
        UniqueConstraint("run_id", "dedup_key", name="uq_edge_run_dedup_key"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_edge_confidence_range"),
        Index("ix_edge_parent_normalized", "parent_normalized"),
        Index("ix_edge_subsidiary_normalized", "subsidiary_normalized"),
    )

    def __repr__(self) -> str:
        return f"<OwnershipEdgeRecord({self.parent!r} -> {self.subsidiary!r}, {self.confidence})>"
