"""
Ownership graph snapshot and store

OwnershipGraphSnapshot holds a canonical edge set in a frozen networkx
MultiDiGraph keyed by normalized company name. GraphStore owns the current
snapshot, reloads it from the cache store when it is missing or older than
the TTL, and falls back to the last known-good snapshot (flagged stale) when
refreshing fails.
"""

import logging
import threading
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

import networkx as nx

from aggregator import DiscoveryArtifact
from audit_logger import AuditLogger, get_audit_logger
from graph_cache import CacheStore, CacheStoreError
from ownership import OwnershipEdge, normalize_name

logger = logging.getLogger(__name__)

DIRECTION_UP = "up"  # towards parents
DIRECTION_DOWN = "down"  # towards subsidiaries
DIRECTION_BOTH = "both"
DIRECTIONS = (DIRECTION_UP, DIRECTION_DOWN, DIRECTION_BOTH)


@dataclass(frozen=True)
class TraversalHit:
    """A node reached by traverse()"""
    key: str  # normalized name
    name: str  # display name
    depth: int
    confidence: float
    path: Tuple[str, ...]  # display names, start first

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'depth': self.depth,
            'confidence': round(self.confidence, 4),
            'path': list(self.path),
        }


@dataclass(frozen=True)
class OwnershipGraphSnapshot:
    """Frozen networkx view over a canonical edge set

    Nodes are normalized names carrying a `name` attribute (first display
    name seen). Each OwnershipEdge is stored as the `edge` attribute of a
    parent -> subsidiary arc; a MultiDiGraph keeps edges whose raw names
    differ but normalize to the same pair.
    """
    graph: nx.MultiDiGraph
    edges: Tuple[OwnershipEdge, ...] = ()
    built_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_updated: Optional[datetime] = None  # when the underlying artifact was produced
    stale: bool = False

    @classmethod
    def from_edges(cls, edges: Iterable[OwnershipEdge],
                   last_updated: Optional[datetime] = None) -> 'OwnershipGraphSnapshot':
        edges = tuple(edges)
        graph = nx.MultiDiGraph()
        for edge in edges:
            parent_key = normalize_name(edge.parent)
            subsidiary_key = normalize_name(edge.subsidiary)
            if parent_key not in graph:
                graph.add_node(parent_key, name=edge.parent)
            if subsidiary_key not in graph:
                graph.add_node(subsidiary_key, name=edge.subsidiary)
            graph.add_edge(parent_key, subsidiary_key, edge=edge)
        built_at = datetime.now(timezone.utc)
        return cls(
            graph=nx.freeze(graph),
            edges=edges,
            built_at=built_at,
            last_updated=last_updated or built_at,
        )

    @classmethod
    def empty(cls, stale: bool = False) -> 'OwnershipGraphSnapshot':
        snapshot = cls.from_edges(())
        return replace(snapshot, stale=stale) if stale else snapshot

    def as_stale(self) -> 'OwnershipGraphSnapshot':
        return self if self.stale else replace(self, stale=True)

    def with_overlay(self, edges: Iterable[OwnershipEdge]) -> 'OwnershipGraphSnapshot':
        """New snapshot with extra edges added (the original is untouched)"""
        extra = tuple(edges)
        if not extra:
            return self
        overlaid = self.from_edges(self.edges + extra, last_updated=self.last_updated)
        return replace(overlaid, stale=self.stale)

    def is_expired(self, ttl: timedelta, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - (self.last_updated or self.built_at) > ttl

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_node(self, name: str) -> bool:
        return self.graph.has_node(normalize_name(name))

    def display_name(self, key: str) -> str:
        if self.graph.has_node(key):
            return self.graph.nodes[key]['name']
        return key

    def parents_of(self, name: str) -> Tuple[OwnershipEdge, ...]:
        key = normalize_name(name)
        if not self.graph.has_node(key):
            return ()
        return tuple(data['edge'] for _, _, data in self.graph.in_edges(key, data=True))

    def subsidiaries_of(self, name: str) -> Tuple[OwnershipEdge, ...]:
        key = normalize_name(name)
        if not self.graph.has_node(key):
            return ()
        return tuple(data['edge'] for _, _, data in self.graph.out_edges(key, data=True))

    def _neighbours(self, key: str, direction: str) -> List[Tuple[str, OwnershipEdge]]:
        if not self.graph.has_node(key):
            return []
        result = []
        if direction in (DIRECTION_UP, DIRECTION_BOTH):
            result.extend((parent, data['edge']) for parent, _, data in self.graph.in_edges(key, data=True))
        if direction in (DIRECTION_DOWN, DIRECTION_BOTH):
            result.extend((child, data['edge']) for _, child, data in self.graph.out_edges(key, data=True))
        return result

    def neighbours(self, name: str, direction: str = DIRECTION_BOTH) -> List[Tuple[str, OwnershipEdge]]:
        """(display name, edge) pairs adjacent to name"""
        return [(self.display_name(k), e) for k, e in self._neighbours(normalize_name(name), direction)]

    def traverse(self, start: str, max_depth: int = 3, direction: str = DIRECTION_BOTH,
                 decay: float = 1.0) -> List[TraversalHit]:
        """Breadth-first walk from start, up to max_depth hops

        Confidence starts at 1.0 and is multiplied by edge.confidence * decay
        on each hop. A node is only re-expanded when reached with a strictly
        higher confidence, and never along a path that already contains it,
        so cycles terminate.

        Returns:
            Reached nodes (start excluded), highest confidence first
        """
        if direction not in DIRECTIONS:
            raise ValueError(f"direction must be one of {DIRECTIONS}, got {direction!r}")
        start_key = normalize_name(start)
        if not start_key:
            return []

        best: Dict[str, float] = {start_key: 1.0}
        hits: Dict[str, TraversalHit] = {}
        start_display = self.display_name(start_key) if self.graph.has_node(start_key) else start
        frontier = deque([(start_key, 1.0, (start_key,), (start_display,))])

        for depth in range(1, max_depth + 1):
            next_frontier = deque()
            while frontier:
                key, confidence, key_path, name_path = frontier.popleft()
                for neighbour, edge in self._neighbours(key, direction):
                    if neighbour in key_path:
                        continue
                    reached = confidence * edge.confidence * decay
                    if reached <= best.get(neighbour, 0.0):
                        continue
                    best[neighbour] = reached
                    display = self.display_name(neighbour)
                    hits[neighbour] = TraversalHit(
                        key=neighbour,
                        name=display,
                        depth=depth,
                        confidence=reached,
                        path=name_path + (display,),
                    )
                    next_frontier.append((neighbour, reached, key_path + (neighbour,), name_path + (display,)))
            frontier = next_frontier
            if not frontier:
                break

        return sorted(hits.values(), key=lambda h: (-h.confidence, h.depth, h.key))

    def stats(self) -> Dict[str, Any]:
        """Node/edge counts, average confidence and per-source counts"""
        total = len(self.edges)
        return {
            'nodes': self.graph.number_of_nodes(),
            'edges': total,
            'parents': sum(1 for _, degree in self.graph.out_degree() if degree),
            'subsidiaries': sum(1 for _, degree in self.graph.in_degree() if degree),
            'average_confidence': round(sum(e.confidence for e in self.edges) / total, 4) if total else 0.0,
            'by_source': dict(Counter(e.source.value for e in self.edges)),
            'built_at': self.built_at.isoformat(),
            'last_updated': self.last_updated.isoformat() if self.last_updated else None,
            'stale': self.stale,
        }


class GraphStore:
    """Holds the current snapshot and refreshes it from the cache store

    Args:
        cache_store: Where discovery artifacts are persisted
        rebuild: Re-aggregation callable used when the cache is missing,
            unreadable or expired
        ttl_days: Cache lifetime (fractions of a day allowed)
    """

    def __init__(self, cache_store: CacheStore,
                 rebuild: Optional[Callable[[], DiscoveryArtifact]] = None,
                 ttl_days: float = 7,
                 audit: Optional[AuditLogger] = None):
        self.cache_store = cache_store
        self.rebuild = rebuild
        self.ttl = timedelta(days=ttl_days)
        self._audit = audit
        self._current: Optional[OwnershipGraphSnapshot] = None
        self._invalidated = False
        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    def current(self) -> OwnershipGraphSnapshot:
        """Whatever is installed now, without refreshing"""
        with self._lock:
            snapshot = self._current
        return snapshot if snapshot is not None else OwnershipGraphSnapshot.empty(stale=True)

    def install(self, snapshot: OwnershipGraphSnapshot) -> None:
        """Atomically replace the current snapshot"""
        with self._lock:
            self._current = snapshot
            self._invalidated = False
        logger.info("Installed ownership graph snapshot: %d edges%s",
                    len(snapshot.edges), " (stale)" if snapshot.stale else "")

    def install_artifact(self, artifact: DiscoveryArtifact) -> OwnershipGraphSnapshot:
        snapshot = OwnershipGraphSnapshot.from_edges(
            [e for e in artifact.edges if not e.is_expired(self.ttl)],
            last_updated=artifact.last_updated,
        )
        self.install(snapshot)
        return snapshot

    def invalidate(self) -> None:
        """Force a refresh on the next snapshot() call"""
        with self._lock:
            self._invalidated = True

    def _fresh(self) -> Optional[OwnershipGraphSnapshot]:
        with self._lock:
            snapshot = self._current
            if snapshot is None or self._invalidated or snapshot.stale:
                return None
        return None if snapshot.is_expired(self.ttl) else snapshot

    def _load_cached(self) -> Optional[DiscoveryArtifact]:
        try:
            artifact = self.cache_store.load()
        except CacheStoreError as e:
            self.audit.log_cache_miss("unreadable", context={'error': str(e)})
            return None
        if artifact is None:
            self.audit.log_cache_miss("missing")
            return None
        if artifact.is_expired(self.ttl):
            self.audit.log_cache_miss("expired", context={'last_updated': artifact.last_updated.isoformat()})
            return None
        return artifact

    def snapshot(self) -> OwnershipGraphSnapshot:
        """Current snapshot, refreshed from cache or re-aggregated if needed

        Never raises: when refreshing fails the last known-good snapshot is
        returned with stale=True (an empty stale snapshot if there is none).
        """
        snapshot = self._fresh()
        if snapshot is not None:
            return snapshot

        with self._refresh_lock:
            snapshot = self._fresh()
            if snapshot is not None:
                return snapshot

            artifact = self._load_cached()
            if artifact is not None:
                return self.install_artifact(artifact)

            if self.rebuild is not None:
                try:
                    artifact = self.rebuild()
                except Exception as e:
                    logger.error(f"Ownership graph rebuild failed: {e}")
                else:
                    try:
                        self.cache_store.save(artifact)
                    except CacheStoreError as e:
                        logger.warning(f"Could not persist rebuilt artifact: {e}")
                    return self.install_artifact(artifact)

            stale = self.current().as_stale()
            logger.warning("Serving stale ownership graph (%d edges)", len(stale.edges))
            return stale
