"""
Performance monitoring for discovery and screening

This module provides:
- Prometheus metrics for connector calls, discovery runs and scans
- Thread-safe in-process statistics per operation (served by the metrics endpoint)
- A timing context manager used around connector calls and scans

Usage:
    from monitoring import operation_timer

    with operation_timer("connector.wikidata"):
        edges = connector.discover(name)
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

SLOW_OPERATION_THRESHOLD_MS = 5000.0


# ============================================
# PROMETHEUS METRICS
# ============================================

connector_call_duration = Histogram(
    'ownership_connector_call_duration_seconds',
    'Source connector call duration in seconds',
    ['provider', 'status'],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0)
)

connector_calls_total = Counter(
    'ownership_connector_calls_total',
    'Total number of source connector calls',
    ['provider', 'status']  # status: success, failure, rate_limited, skipped
)

edges_discovered_total = Counter(
    'ownership_edges_discovered_total',
    'Candidate ownership edges emitted, before deduplication',
    ['source']
)

scans_total = Counter(
    'ownership_scans_total',
    'Completed screening scans',
    ['risk_level']
)

scan_duration = Histogram(
    'ownership_scan_duration_seconds',
    'Screening scan duration in seconds',
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 15.0, 30.0)
)


def record_connector_call(provider: str, status: str, duration: Optional[float] = None) -> None:
    """Count one connector call and observe its latency"""
    connector_calls_total.labels(provider=provider, status=status).inc()
    if duration is not None:
        connector_call_duration.labels(provider=provider, status=status).observe(duration)


def record_edges(source: str, count: int) -> None:
    if count:
        edges_discovered_total.labels(source=source).inc(count)


def record_scan(risk_level: str, duration: float) -> None:
    scans_total.labels(risk_level=risk_level).inc()
    scan_duration.observe(duration)


# ============================================
# OPERATION STATS TRACKING
# ============================================

@dataclass
class OperationStats:
    """Statistics for a single operation type."""
    operation: str
    count: int = 0
    total_time_ms: float = 0.0
    min_time_ms: float = float('inf')
    max_time_ms: float = 0.0
    errors: int = 0
    slow: int = 0
    last_executed: Optional[datetime] = None

    @property
    def avg_time_ms(self) -> float:
        return self.total_time_ms / self.count if self.count > 0 else 0.0

    def record(self, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        self.count += 1
        self.total_time_ms += duration_ms
        self.min_time_ms = min(self.min_time_ms, duration_ms)
        self.max_time_ms = max(self.max_time_ms, duration_ms)
        self.last_executed = datetime.now()
        if error:
            self.errors += 1
        if slow:
            self.slow += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'operation': self.operation,
            'count': self.count,
            'avg_time_ms': round(self.avg_time_ms, 2),
            'min_time_ms': round(self.min_time_ms, 2) if self.min_time_ms != float('inf') else 0.0,
            'max_time_ms': round(self.max_time_ms, 2),
            'errors': self.errors,
            'slow': self.slow,
            'last_executed': self.last_executed.isoformat() if self.last_executed else None
        }


class StatsCollector:
    """Thread-safe collector for operation statistics."""

    def __init__(self):
        self._stats: Dict[str, OperationStats] = {}
        self._lock = threading.Lock()
        self._start_time = datetime.now()

    def record(self, operation: str, duration_ms: float, error: bool = False, slow: bool = False) -> None:
        with self._lock:
            if operation not in self._stats:
                self._stats[operation] = OperationStats(operation=operation)
            self._stats[operation].record(duration_ms, error, slow)

    def get_stats(self, operation: Optional[str] = None) -> Dict[str, Any]:
        with self._lock:
            if operation:
                stat = self._stats.get(operation)
                return stat.to_dict() if stat else {}
            return {
                'uptime_seconds': (datetime.now() - self._start_time).total_seconds(),
                'operations': {op: stats.to_dict() for op, stats in self._stats.items()}
            }

    def reset(self) -> None:
        with self._lock:
            self._stats.clear()
            self._start_time = datetime.now()


_stats_collector = StatsCollector()


def get_metrics() -> Dict[str, Any]:
    """Current in-process operation statistics"""
    return _stats_collector.get_stats()


def reset_metrics() -> None:
    _stats_collector.reset()


@contextmanager
def operation_timer(operation: str):
    """Time a block and record it in the stats collector

    Exceptions propagate; they are recorded as errors.
    """
    start_time = time.perf_counter()
    error_occurred = False
    try:
        yield
    except Exception:
        error_occurred = True
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        is_slow = duration_ms > SLOW_OPERATION_THRESHOLD_MS
        _stats_collector.record(operation, duration_ms, error=error_occurred, slow=is_slow)
        if is_slow:
            logger.warning(f"SLOW OPERATION: {operation} took {duration_ms:.2f}ms "
                           f"(threshold: {SLOW_OPERATION_THRESHOLD_MS}ms)")
