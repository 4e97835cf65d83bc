"""
Relationship aggregation and deduplication

Merges candidate edges from every discoverer and connector into the
canonical edge set, keyed by "parent::subsidiary" (case-insensitive).
The highest-confidence candidate wins; evidence from the others is kept.
"""

import logging
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from ownership import OwnershipEdge

logger = logging.getLogger(__name__)


def deduplicate(edges: Iterable[OwnershipEdge]) -> List[OwnershipEdge]:
    """Canonical edge set: one edge per dedup key, highest confidence first

    Ties keep input order. Running the result through again returns it
    unchanged.
    """
    ordered = sorted(edges, key=lambda e: e.confidence, reverse=True)
    canonical: Dict[str, OwnershipEdge] = OrderedDict()
    for edge in ordered:
        key = edge.dedup_key
        kept = canonical.get(key)
        canonical[key] = edge if kept is None else kept.merged_with(edge)
    return list(canonical.values())


def confidence_bands(edges: Iterable[OwnershipEdge]) -> Dict[str, int]:
    """Counts of high (>= 0.8), medium (>= 0.5) and low confidence edges"""
    bands = {'high': 0, 'medium': 0, 'low': 0}
    for edge in edges:
        if edge.confidence >= 0.8:
            bands['high'] += 1
        elif edge.confidence >= 0.5:
            bands['medium'] += 1
        else:
            bands['low'] += 1
    return bands


@dataclass
class DiscoveryArtifact:
    """Output of one discovery run, as persisted to the cache store

    Serialized as {"edges": [...], "metadata": {...}} with camelCase keys,
    the same casing as the edge payloads.
    """
    edges: List[OwnershipEdge]
    last_updated: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    connector_calls: int = 0
    connector_successes: int = 0

    @property
    def metadata(self) -> Dict[str, Any]:
        return {
            'totalRelationships': len(self.edges),
            'lastUpdated': self.last_updated.isoformat(),
            'countsBySource': dict(Counter(e.source.value for e in self.edges)),
            'countsByConfidence': confidence_bands(self.edges),
            'connectorCalls': self.connector_calls,
            'connectorSuccesses': self.connector_successes,
        }

    def is_expired(self, ttl: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - self.last_updated > ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            'edges': [e.to_dict() for e in self.edges],
            'metadata': self.metadata,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DiscoveryArtifact':
        """Rebuild an artifact from to_dict() output

        Raises:
            KeyError, TypeError, ValueError: If the payload is corrupt
        """
        metadata = data['metadata']
        last_updated = datetime.fromisoformat(metadata['lastUpdated'])
        if last_updated.tzinfo is None:
            last_updated = last_updated.replace(tzinfo=timezone.utc)
        return cls(
            edges=[OwnershipEdge.from_dict(item) for item in data['edges']],
            last_updated=last_updated,
            connector_calls=int(metadata.get('connectorCalls', 0)),
            connector_successes=int(metadata.get('connectorSuccesses', 0)),
        )


def aggregate(edges: Iterable[OwnershipEdge], connector_calls: int = 0,
              connector_successes: int = 0) -> DiscoveryArtifact:
    """Deduplicate candidates into a new discovery artifact"""
    candidates = list(edges)
    canonical = deduplicate(candidates)
    logger.info("Aggregated %d candidate edges into %d unique relationships",
                len(candidates), len(canonical))
    return DiscoveryArtifact(
        edges=canonical,
        connector_calls=connector_calls,
        connector_successes=connector_successes,
    )
