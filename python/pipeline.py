"""
Batch ownership discovery pipeline

Runs the offline heuristics synchronously over the whole batch, fans each
company out to the applicable source connectors (bounded thread pools),
aggregates every candidate edge into a canonical artifact, persists it to
the cache store and installs it as the new graph snapshot.

Usage:
    pipeline = DiscoveryPipeline(config, cache_store=InMemoryCacheStore())
    result = pipeline.run(records)
    print(result.to_dict())
"""

import csv
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from aggregator import DiscoveryArtifact, aggregate
from audit_logger import AuditLogger, get_audit_logger
from config_manager import ConfigManager, get_config
from connectors import BaseConnector, ConnectorOutcome, build_connectors
from database import DatabaseCacheStore, get_db_provider
from discovery import CuratedRelationships, HeuristicDiscoverer, default_discoverers, run_heuristics
from graph_cache import CacheStore, CacheStoreError, InMemoryCacheStore
from monitoring import operation_timer
from ownership import CompanyRecord, OwnershipEdge, normalize_name
from ownership_graph import GraphStore
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)


class DiscoveryError(Exception):
    """Raised when a discovery run cannot produce a usable artifact"""
    pass


@dataclass
class EntityDiscovery:
    """Connector results for one company"""
    name: str
    edges: List[OwnershipEdge] = field(default_factory=list)
    outcomes: List[ConnectorOutcome] = field(default_factory=list)

    @property
    def calls(self) -> int:
        return sum(1 for o in self.outcomes if o.attempted)

    @property
    def successes(self) -> int:
        return sum(1 for o in self.outcomes if o.ok)


@dataclass
class DiscoveryResult:
    """Summary of a discovery run"""
    run_id: str
    artifact: DiscoveryArtifact
    entities_total: int
    entities_with_ownership: int
    cancelled: bool = False
    installed: bool = False
    duration_seconds: float = 0.0

    @property
    def coverage_percent(self) -> float:
        if not self.entities_total:
            return 0.0
        return self.entities_with_ownership / self.entities_total * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'metadata': self.artifact.metadata,
            'entities_total': self.entities_total,
            'entities_with_ownership': self.entities_with_ownership,
            'coverage_percent': round(self.coverage_percent, 2),
            'cancelled': self.cancelled,
            'installed': self.installed,
            'duration_seconds': round(self.duration_seconds, 3),
        }


class DiscoveryPipeline:
    """Drives heuristics, connectors and aggregation for a batch of companies

    Each run() and rebuild() gets its own cancellation token; cancel() only
    reaches runs in progress, so a cancelled run never leaves connectors
    switched off for later runs or for on-demand lookups.
    """

    def __init__(
        self,
        config: Optional[ConfigManager] = None,
        connectors: Optional[Sequence[BaseConnector]] = None,
        discoverers: Optional[Sequence[HeuristicDiscoverer]] = None,
        curated: Optional[CuratedRelationships] = None,
        cache_store: Optional[CacheStore] = None,
        graph_store: Optional[GraphStore] = None,
        audit: Optional[AuditLogger] = None
    ):
        self.config = config or get_config()
        self.connectors = list(connectors) if connectors is not None else build_connectors(self.config)
        self.discoverers = list(discoverers) if discoverers is not None else default_discoverers(self.config)
        self.curated = curated if curated is not None else CuratedRelationships(self.config)
        self.cache_store = cache_store or InMemoryCacheStore()
        self.audit = audit or get_audit_logger()
        self.graph_store = graph_store or GraphStore(
            self.cache_store, rebuild=self.rebuild, ttl_days=self.config.cache.ttl_days, audit=self.audit
        )
        self._runs_lock = threading.Lock()
        self._active_runs: Set[threading.Event] = set()
        self._last_records: List[CompanyRecord] = []

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    @contextmanager
    def _cancellable(self) -> Iterator[threading.Event]:
        token = threading.Event()
        with self._runs_lock:
            self._active_runs.add(token)
        try:
            yield token
        finally:
            with self._runs_lock:
                self._active_runs.discard(token)

    @property
    def running(self) -> bool:
        with self._runs_lock:
            return bool(self._active_runs)

    def cancel(self) -> bool:
        """Stop issuing connector calls for the runs in progress

        In-flight calls finish or time out. Returns False when nothing was
        running.
        """
        with self._runs_lock:
            active = list(self._active_runs)
        for token in active:
            token.set()
        if active:
            logger.info("Discovery cancellation requested for %d run(s)", len(active))
        return bool(active)

    # ------------------------------------------------------------------
    # Connector fan-out
    # ------------------------------------------------------------------

    def discover_entity(self, name: str, country_hint: Optional[str] = None,
                        executor: Optional[ThreadPoolExecutor] = None,
                        cancel: Optional[threading.Event] = None) -> EntityDiscovery:
        """Query every applicable connector for one company concurrently

        With a cancel token, no further connectors are started once it is
        set; calls already submitted run to completion.
        """
        result = EntityDiscovery(name=name)
        applicable = [c for c in self.connectors if c.enabled and c.applies_to(country_hint)]
        if not applicable:
            return result

        own_executor = executor is None
        if own_executor:
            executor = ThreadPoolExecutor(max_workers=max(1, min(len(applicable),
                                                               self.config.performance.connector_threads)),
                                          thread_name_prefix="connector")
        try:
            futures = []
            for connector in applicable:
                if cancel is not None and cancel.is_set():
                    break
                futures.append(executor.submit(connector.discover_with_status, name, country_hint))
            for future in futures:
                outcome = future.result()
                result.outcomes.append(outcome)
                result.edges.extend(outcome.edges)
        finally:
            if own_executor:
                executor.shutdown(wait=True)
        return result

    def _run_connectors(self, records: Sequence[CompanyRecord],
                        cancel: Optional[threading.Event] = None) -> List[EntityDiscovery]:
        if not self.connectors or not records:
            return []
        performance = self.config.performance
        with ThreadPoolExecutor(max_workers=max(1, performance.connector_threads),
                                thread_name_prefix="connector") as connector_pool, \
                ThreadPoolExecutor(max_workers=max(1, performance.max_concurrent_entities),
                                   thread_name_prefix="entity") as entity_pool:

            def work(record: CompanyRecord) -> EntityDiscovery:
                if cancel is not None and cancel.is_set():
                    return EntityDiscovery(name=record.name)
                return self.discover_entity(record.name, record.country,
                                            executor=connector_pool, cancel=cancel)

            return list(entity_pool.map(work, records))

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def build_artifact(self, records: Sequence[CompanyRecord],
                       cancel: Optional[threading.Event] = None
                       ) -> Tuple[DiscoveryArtifact, List[EntityDiscovery]]:
        """Discover and aggregate without persisting or installing

        Raises:
            DiscoveryError: If every attempted connector call failed and
                discovery.fail_when_all_connectors_down is set
        """
        candidates: List[OwnershipEdge] = run_heuristics(records, self.discoverers)
        candidates.extend(self.curated.load())

        entity_results = self._run_connectors(records, cancel)
        calls = sum(r.calls for r in entity_results)
        successes = sum(r.successes for r in entity_results)
        for entity in entity_results:
            candidates.extend(entity.edges)

        if calls and not successes and self.config.discovery.fail_when_all_connectors_down:
            raise DiscoveryError(f"All {calls} connector calls failed; keeping previous artifact")

        return aggregate(candidates, connector_calls=calls, connector_successes=successes), entity_results

    def run(self, records: Sequence[CompanyRecord]) -> DiscoveryResult:
        """Full discovery run over a batch of companies

        A cancelled run is returned but neither persisted nor installed.
        """
        with self._cancellable() as cancel:
            run_id = self.audit.set_run_context()
            self._last_records = list(records)
            start = time.perf_counter()
            logger.info("Starting ownership discovery %s for %d companies", run_id, len(records))

            try:
                with operation_timer("discovery.run"):
                    artifact, _ = self.build_artifact(records, cancel)
            finally:
                self.audit.clear_run_context()
            cancelled = cancel.is_set()

        covered = set()
        for edge in artifact.edges:
            covered.add(normalize_name(edge.parent))
            covered.add(normalize_name(edge.subsidiary))
        result = DiscoveryResult(
            run_id=run_id,
            artifact=artifact,
            entities_total=len(records),
            entities_with_ownership=sum(1 for r in records if r.normalized_name in covered),
            cancelled=cancelled,
        )

        if result.cancelled:
            logger.warning("Discovery %s cancelled; artifact not installed", run_id)
        else:
            try:
                self.cache_store.save(artifact)
            except CacheStoreError as e:
                logger.error(f"Could not persist discovery artifact: {e}")
            self.graph_store.install_artifact(artifact)
            result.installed = True

        result.duration_seconds = time.perf_counter() - start
        logger.info("Discovery %s finished: %d relationships, coverage %.1f%%",
                    run_id, len(artifact.edges), result.coverage_percent)
        return result

    def rebuild(self) -> DiscoveryArtifact:
        """Re-aggregate over the last batch; used by the graph store on cache miss

        Raises:
            DiscoveryError: If the rebuild was cancelled; the graph store then
                keeps serving its last snapshot
        """
        logger.info("Re-aggregating ownership graph from %d known companies", len(self._last_records))
        with self._cancellable() as cancel:
            artifact, _ = self.build_artifact(self._last_records, cancel)
        if cancel.is_set():
            raise DiscoveryError("Ownership graph rebuild cancelled; keeping previous snapshot")
        return artifact

    def discover_on_demand(self, name: str, country_hint: Optional[str] = None) -> EntityDiscovery:
        """Connector lookup for a single name outside a batch run

        Used by the screener when the graph has no node for a supplier.
        Batch cancellation does not apply.
        """
        logger.debug("On-demand discovery for %s", sanitize_for_logging(name))
        return self.discover_entity(name, country_hint)


def build_cache_store(config: Optional[ConfigManager] = None) -> CacheStore:
    """Cache store selected by cache.backend (memory or database)"""
    config = config or get_config()
    if config.cache.backend == 'database':
        return DatabaseCacheStore(get_db_provider(config.cache.database_url))
    return InMemoryCacheStore()


def load_records_file(path: str) -> List[CompanyRecord]:
    """Read companies to discover from a JSON or CSV file

    JSON: a list of objects (or {"companies": [...]}) with name, aliases,
    country, address. CSV: the same columns, aliases separated by ';'.

    Raises:
        DiscoveryError: If the file is missing or unreadable
    """
    file_path = Path(path)
    if not file_path.exists():
        raise DiscoveryError(f"Records file not found: {file_path}")

    try:
        if file_path.suffix.lower() == '.csv':
            with open(file_path, 'r', encoding='utf-8-sig', newline='') as f:
                rows = list(csv.DictReader(f))
        else:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            rows = data.get('companies', []) if isinstance(data, dict) else data
        records = []
        for row in rows:
            aliases = row.get('aliases') or []
            if isinstance(aliases, str):
                aliases = [a.strip() for a in aliases.split(';') if a.strip()]
            records.append(CompanyRecord.from_dict({**row, 'aliases': aliases}))
    except (OSError, KeyError, ValueError, TypeError, AttributeError, csv.Error) as e:
        raise DiscoveryError(f"Unreadable records file {file_path}: {e}") from e

    logger.info("Read %d companies from %s", len(records), file_path)
    return records
