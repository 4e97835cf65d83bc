"""
Supplier Risk Screener
Direct and indirect (ownership-graph) matching against a restricted-party list

Features:
- Exact and fuzzy matching of the supplier against listed names and aliases
- Indirect matching by walking the ownership graph in both directions with
  per-hop confidence decay
- Optional on-demand connector discovery when the graph has no data for
  the supplier, overlaid for a single scan
- Overall envelope timeout; late graph data is abandoned and the result is
  flagged possibly_incomplete
- Fails closed: a missing or empty restricted-party list aborts the scan
- Batch screening of a supplier file with a portfolio summary

Usage:
    engine = RiskScreeningEngine(restricted_list, pipeline.graph_store,
                                 on_demand=pipeline.discover_on_demand)
    result = engine.screen("Shanghai Huawei Device Co., Ltd.", country_hint="CN")
"""

import logging
import time
import unicodedata
import uuid
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from audit_logger import AuditLogger, get_audit_logger
from config_manager import ConfigManager, get_config
from monitoring import operation_timer, record_scan
from ownership import CompanyRecord, normalize_name
from ownership_graph import DIRECTION_BOTH, GraphStore, OwnershipGraphSnapshot
from restricted_list import (
    ListMatch,
    RestrictedListUnavailableError,
    RestrictedPartyList,
    ScreeningError,
)
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

NAME_MAX_LENGTH = 500

RISK_CLEAR = "clear"
RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"
RISK_CRITICAL = "critical"
RISK_LEVELS = (RISK_CLEAR, RISK_LOW, RISK_MEDIUM, RISK_HIGH, RISK_CRITICAL)

MATCH_INDIRECT = "indirect"

__all__ = [
    'BatchScanReport',
    'InputValidationError',
    'RestrictedListUnavailableError',
    'RiskScreeningEngine',
    'ScanResult',
    'ScanState',
    'ScreeningError',
    'ScreeningMatch',
    'portfolio_level',
    'risk_level_for',
]


class InputValidationError(ValueError):
    """Raised when the supplier name cannot be screened

    Attributes:
        field: The field that failed validation
        code: Error code for programmatic handling
    """
    def __init__(self, message: str, field: str = "supplier_name", code: str = "VALIDATION_ERROR"):
        self.field = field
        self.code = code
        self.message = message
        super().__init__(message)

    def to_dict(self) -> Dict[str, str]:
        return {'field': self.field, 'code': self.code, 'message': self.message}


class ScanState(str, Enum):
    RECEIVED = "received"
    NORMALIZED = "normalized"
    DIRECT_MATCH_CHECK = "direct_match_check"
    INDIRECT_MATCH_WALK = "indirect_match_walk"
    SCORED = "scored"
    REPORTED = "reported"


@dataclass
class ScreeningMatch:
    """A listed entity reached directly or through the ownership graph"""
    listed_name: str
    matched_name: str  # listed name or alias that matched
    match_type: str  # exact, fuzzy, indirect
    name_match: str  # exact, fuzzy
    confidence: float
    path_length: int = 0
    path: List[str] = field(default_factory=list)
    listing_reason: Optional[str] = None
    citation: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'listed_name': self.listed_name,
            'matched_name': self.matched_name,
            'match_type': self.match_type,
            'name_match': self.name_match,
            'confidence': round(self.confidence, 4),
            'path_length': self.path_length,
            'path': list(self.path),
            'listing_reason': self.listing_reason,
            'citation': self.citation,
        }

    def describe(self) -> str:
        listed = self.listed_name
        if self.matched_name != listed:
            listed = f"{listed} (as '{self.matched_name}')"
        if self.match_type != MATCH_INDIRECT:
            return f"{self.name_match.capitalize()} match with listed entity {listed}"
        hops = "hop" if self.path_length == 1 else "hops"
        return (f"Linked to listed entity {listed} through {self.path_length} ownership {hops}: "
                f"{' -> '.join(self.path)} ({self.name_match} name match)")


@dataclass
class ScanResult:
    """Outcome of one screening request"""
    supplier_query: str
    normalized_query: str
    matches: List[ScreeningMatch]
    risk_score: float
    risk_level: str
    evidence: List[str]
    scan_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    screened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    possibly_incomplete: bool = False
    graph_stale: bool = False
    on_demand_discovery: bool = False
    state: ScanState = ScanState.REPORTED

    @property
    def is_hit(self) -> bool:
        return bool(self.matches)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scan_id': self.scan_id,
            'supplier_query': self.supplier_query,
            'normalized_query': self.normalized_query,
            'screened_at': self.screened_at.isoformat(),
            'risk_score': self.risk_score,
            'risk_level': self.risk_level,
            'is_hit': self.is_hit,
            'match_count': len(self.matches),
            'matches': [m.to_dict() for m in self.matches],
            'evidence': list(self.evidence),
            'possibly_incomplete': self.possibly_incomplete,
            'graph_stale': self.graph_stale,
            'on_demand_discovery': self.on_demand_discovery,
        }


def risk_level_for(score: float, bands: Dict[str, float]) -> str:
    """Map a 0-10 score to a level using the lower bound of each band"""
    if score >= bands['critical']:
        return RISK_CRITICAL
    if score >= bands['high']:
        return RISK_HIGH
    if score >= bands['medium']:
        return RISK_MEDIUM
    if score >= bands['low']:
        return RISK_LOW
    return RISK_CLEAR


def validate_supplier_name(name: Optional[str]) -> str:
    """Return the stripped name or raise InputValidationError"""
    if name is None or not name.strip():
        raise InputValidationError("Supplier name is empty", code="NAME_EMPTY")
    if len(name) > NAME_MAX_LENGTH:
        raise InputValidationError(
            f"Supplier name too long ({len(name)} chars, maximum {NAME_MAX_LENGTH})",
            code="NAME_TOO_LONG",
        )
    if any(unicodedata.category(c).startswith('C') for c in name):
        logger.warning("SECURITY: Control character in supplier name: %s", sanitize_for_logging(name))
        raise InputValidationError("Supplier name contains control characters", code="CONTROL_CHARACTER")
    return name.strip()


class RiskScreeningEngine:
    """Screens suppliers against the restricted-party list and ownership graph

    Args:
        restricted_list: Loaded restricted-party list
        graph_store: Source of the current ownership graph snapshot
        config: Configuration (defaults to the global ConfigManager)
        on_demand: Callable(name, country_hint) returning an object with
            `edges` and `outcomes` (DiscoveryPipeline.discover_on_demand);
            used when the graph has no node for the supplier
        audit: Audit logger override
    """

    def __init__(
        self,
        restricted_list: RestrictedPartyList,
        graph_store: GraphStore,
        config: Optional[ConfigManager] = None,
        on_demand: Optional[Callable[[str, Optional[str]], Any]] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.restricted_list = restricted_list
        self.graph_store = graph_store
        self.config = config or get_config()
        self.on_demand = on_demand
        self._audit = audit
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="scan")

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    def close(self) -> None:
        """Release the worker threads; abandoned lookups keep running to completion"""
        self._executor.shutdown(wait=False)

    # ------------------------------------------------------------------
    # Envelope
    # ------------------------------------------------------------------

    def _within(self, deadline: float, func: Callable, *args) -> Tuple[Any, bool]:
        """Run func in the worker pool until the deadline; returns (result, timed_out)"""
        remaining = deadline - self._clock()
        if remaining <= 0:
            return None, True
        future = self._executor.submit(func, *args)
        try:
            return future.result(timeout=remaining), False
        except FuturesTimeoutError:
            future.cancel()
            return None, True

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def _direct_match(self, supplier: str) -> Optional[ScreeningMatch]:
        found = self.restricted_list.match(supplier, self.config.matching.fuzzy_match_threshold)
        if found is None:
            return None
        return self._to_match(found, found.match_type, found.confidence, [supplier])

    def _indirect_matches(self, supplier: str, snapshot: OwnershipGraphSnapshot) -> List[ScreeningMatch]:
        screening = self.config.screening
        threshold = self.config.matching.fuzzy_match_threshold
        matches = []
        hits = snapshot.traverse(supplier, max_depth=screening.max_depth,
                                 direction=DIRECTION_BOTH, decay=screening.decay_factor)
        for hit in hits:
            found = self.restricted_list.match(hit.name, threshold)
            if found is None:
                continue
            path = list(hit.path)
            path[0] = supplier
            matches.append(self._to_match(found, MATCH_INDIRECT, hit.confidence * found.confidence,
                                          path, hit.depth))
        return matches

    @staticmethod
    def _to_match(found: ListMatch, match_type: str, confidence: float,
                  path: List[str], path_length: int = 0) -> ScreeningMatch:
        return ScreeningMatch(
            listed_name=found.entry.name,
            matched_name=found.matched_name,
            match_type=match_type,
            name_match=found.match_type,
            confidence=confidence,
            path_length=path_length,
            path=path,
            listing_reason=found.entry.listing_reason,
            citation=found.entry.citation,
        )

    # ------------------------------------------------------------------
    # Graph data
    # ------------------------------------------------------------------

    def _graph_for(self, supplier: str, country_hint: Optional[str],
                   deadline: float) -> Tuple[OwnershipGraphSnapshot, bool, bool]:
        """Snapshot to walk for this scan; returns (snapshot, incomplete, used_on_demand)"""
        incomplete = False
        snapshot, timed_out = self._within(deadline, self.graph_store.snapshot)
        if timed_out:
            logger.warning("Graph refresh exceeded the scan envelope; using installed snapshot")
            snapshot = self.graph_store.current()
            incomplete = True
        if snapshot.stale:
            incomplete = True

        if (snapshot.has_node(supplier) or self.on_demand is None
                or not self.config.screening.on_demand_discovery):
            return snapshot, incomplete, False

        logger.info("No graph data for %s; running on-demand discovery", sanitize_for_logging(supplier))
        discovered, timed_out = self._within(deadline, self.on_demand, supplier, country_hint)
        if timed_out:
            logger.warning("On-demand discovery for %s abandoned at envelope expiry",
                           sanitize_for_logging(supplier))
            return snapshot, True, True
        if any(o.attempted and not o.ok for o in discovered.outcomes):
            incomplete = True
        if discovered.edges:
            snapshot = snapshot.with_overlay(discovered.edges)
        return snapshot, incomplete, True

    # ------------------------------------------------------------------
    # Screening
    # ------------------------------------------------------------------

    def screen(self, supplier_name: str, country_hint: Optional[str] = None) -> ScanResult:
        """Screen one supplier

        Raises:
            InputValidationError: If the name is empty, too long or contains
                control characters
            RestrictedListUnavailableError: If the list is not loaded; the
                engine never reports "clear" without a list
        """
        start = self._clock()
        deadline = start + self.config.screening.envelope_timeout_seconds
        state = ScanState.RECEIVED
        supplier = validate_supplier_name(supplier_name)

        try:
            if not self.restricted_list.is_loaded:
                raise RestrictedListUnavailableError("Restricted-party list is not loaded")

            with operation_timer("screening.scan"):
                normalized = normalize_name(supplier)
                if not normalized:
                    raise InputValidationError("Supplier name has no screenable characters",
                                               code="NAME_EMPTY")
                state = ScanState.NORMALIZED

                state = ScanState.DIRECT_MATCH_CHECK
                matches: List[ScreeningMatch] = []
                direct = self._direct_match(supplier)
                if direct is not None:
                    matches.append(direct)

                state = ScanState.INDIRECT_MATCH_WALK
                snapshot, incomplete, used_on_demand = self._graph_for(supplier, country_hint, deadline)
                matches.extend(self._indirect_matches(supplier, snapshot))
        except RestrictedListUnavailableError:
            logger.critical("Scan of %s aborted in state %s: restricted-party list unavailable",
                            sanitize_for_logging(supplier), state.value)
            self.audit.log_list_unavailable(supplier)
            raise

        state = ScanState.SCORED
        matches.sort(key=lambda m: (-m.confidence, m.path_length, m.listed_name))
        best = matches[0].confidence if matches else 0.0
        raw_score = min(best, 1.0) * 10
        level = risk_level_for(raw_score, self.config.screening.risk_bands)
        score = round(raw_score, 2)

        state = ScanState.REPORTED
        result = ScanResult(
            supplier_query=supplier,
            normalized_query=normalized,
            matches=matches,
            risk_score=score,
            risk_level=level,
            evidence=[m.describe() for m in matches],
            possibly_incomplete=incomplete,
            graph_stale=snapshot.stale,
            on_demand_discovery=used_on_demand,
            state=state,
        )
        record_scan(level, self._clock() - start)
        logger.info("Screened %s: score %.2f (%s), %d matches%s",
                    sanitize_for_logging(supplier), score, level, len(matches),
                    ", possibly incomplete" if incomplete else "")
        return result

    def screen_batch(self, records: Sequence[CompanyRecord]) -> 'BatchScanReport':
        """Screen a supplier file row by row and summarise the portfolio

        Rows whose name fails validation are reported in `rejected` and do
        not count towards the summary.

        Raises:
            InputValidationError: If the batch is empty
            RestrictedListUnavailableError: On the first scan that finds the
                list unavailable; no partial report is produced
        """
        if not records:
            raise InputValidationError("No suppliers to screen", field="suppliers", code="BATCH_EMPTY")

        results: List[ScanResult] = []
        rejected: List[Dict[str, Any]] = []
        with operation_timer("screening.batch"):
            for row, record in enumerate(records, start=1):
                try:
                    results.append(self.screen(record.name, record.country))
                except InputValidationError as e:
                    logger.warning("Row %d skipped: %s", row, e.message)
                    rejected.append(dict(e.to_dict(), row=row, name=sanitize_for_logging(record.name)))

        report = BatchScanReport(results=results, rejected=rejected)
        summary = report.summary
        logger.info("Batch screened %d suppliers (%d rejected): overall %s, %d flagged",
                    summary['total'], len(rejected), summary['overall_level'], summary['flagged'])
        return report


def portfolio_level(counts: Dict[str, int], total: int) -> str:
    """Overall level of a screened portfolio

    Any critical supplier, or high-risk suppliers above 15% of the total,
    makes the portfolio critical; high is any high supplier or medium above
    25%; medium is any medium supplier or low above 30%.
    """
    if counts[RISK_CRITICAL] > 0 or counts[RISK_HIGH] > total * 0.15:
        return RISK_CRITICAL
    if counts[RISK_HIGH] > 0 or counts[RISK_MEDIUM] > total * 0.25:
        return RISK_HIGH
    if counts[RISK_MEDIUM] > 0 or counts[RISK_LOW] > total * 0.3:
        return RISK_MEDIUM
    if counts[RISK_LOW] > 0:
        return RISK_LOW
    return RISK_CLEAR


@dataclass
class BatchScanReport:
    """Per-supplier results of a batch screen plus the portfolio summary"""
    results: List[ScanResult]
    rejected: List[Dict[str, Any]] = field(default_factory=list)
    scan_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    screened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def summary(self) -> Dict[str, Any]:
        total = len(self.results)
        counts = {level: 0 for level in RISK_LEVELS}
        for result in self.results:
            counts[result.risk_level] += 1
        average = sum(r.risk_score for r in self.results) / total if total else 0.0
        return {
            'total': total,
            'counts': counts,
            'average_score': round(average, 1),
            'overall_level': portfolio_level(counts, total),
            'flagged': sum(1 for r in self.results if r.is_hit),
            'possibly_incomplete': sum(1 for r in self.results if r.possibly_incomplete),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scan_id': self.scan_id,
            'screened_at': self.screened_at.isoformat(),
            'summary': self.summary,
            'results': [r.to_dict() for r in self.results],
            'rejected': list(self.rejected),
        }
