"""
Base class for external ownership-data connectors

Each connector queries one public provider for the parents/subsidiaries of a
company name. The public entry point, discover(), never raises: timeouts,
HTTP errors, rate limiting and malformed payloads are written to the audit
log and reported as an empty result.

Every connector instance owns its throttle state. Calls made from several
threads are spaced at least min_interval_ms apart, and an HTTP 429 suspends
the connector until backoff_seconds have passed.
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, Iterable, List, Optional

import requests

from audit_logger import AuditLogger, get_audit_logger
from config_manager import ConnectorConfig
from monitoring import record_connector_call, record_edges
from ownership import EdgeSource, OwnershipEdge, RelationshipType, build_edge
from xml_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

USER_AGENT = "OwnershipScreener/1.0 (restricted-party compliance screening)"

# Outcome statuses
STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"
STATUS_RATE_LIMITED = "rate_limited"
STATUS_SKIPPED = "skipped"


class ConnectorError(Exception):
    """Raised inside a connector when a provider call cannot be used"""
    pass


class RateLimitedError(ConnectorError):
    """Provider answered HTTP 429"""
    pass


class MalformedResponseError(ConnectorError):
    """Provider payload could not be parsed; the whole response is discarded"""
    pass


@dataclass
class ConnectorOutcome:
    """Result of one discover() call"""
    provider: str
    edges: List[OwnershipEdge] = field(default_factory=list)
    status: str = STATUS_SUCCESS
    duration_ms: float = 0.0

    @property
    def attempted(self) -> bool:
        return self.status != STATUS_SKIPPED

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS


def normalize_country(country: Optional[str]) -> str:
    return (country or "").strip().upper()


class BaseConnector(ABC):
    """Rate-limited, fault-isolated provider client

    Subclasses set `name`, `source`, optionally `countries` (upper-case
    country names/codes the provider covers) and `requires_api_key`, and
    implement _fetch().
    """

    name: str = ""
    source: EdgeSource
    countries: Optional[FrozenSet[str]] = None
    requires_api_key: bool = False

    def __init__(
        self,
        config: ConnectorConfig,
        session: Optional[requests.Session] = None,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.config = config
        self.session = session or self._build_session()
        self._audit = audit
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_call_at = 0.0
        self._backoff_until = 0.0

    @staticmethod
    def _build_session() -> requests.Session:
        session = requests.Session()
        session.headers.update({'User-Agent': USER_AGENT})
        return session

    @property
    def audit(self) -> AuditLogger:
        if self._audit is None:
            self._audit = get_audit_logger()
        return self._audit

    @property
    def enabled(self) -> bool:
        if not self.config.enabled:
            return False
        if self.requires_api_key and not self.config.api_key:
            return False
        return True

    def applies_to(self, country_hint: Optional[str]) -> bool:
        """Whether this provider covers the given jurisdiction"""
        if self.countries is None:
            return True
        return normalize_country(country_hint) in self.countries

    @property
    def backing_off(self) -> bool:
        with self._lock:
            return self._clock() < self._backoff_until

    # ------------------------------------------------------------------
    # HTTP helpers used by subclasses
    # ------------------------------------------------------------------

    def _throttle(self) -> None:
        """Reserve the next call slot and wait for it"""
        interval = self.config.min_interval_ms / 1000.0
        with self._lock:
            now = self._clock()
            slot = max(now, self._next_call_at)
            self._next_call_at = slot + interval
        wait = slot - now
        if wait > 0:
            self._sleep(wait)

    def _get(self, url: str, params: Optional[Dict[str, Any]] = None,
             headers: Optional[Dict[str, str]] = None, **kwargs: Any) -> requests.Response:
        """GET with throttle and timeout

        Raises:
            RateLimitedError: On HTTP 429 (starts the back-off window)
            requests.RequestException: On network errors, timeouts and other HTTP errors
        """
        self._throttle()
        response = self.session.get(url, params=params, headers=headers,
                                    timeout=self.config.timeout_seconds, **kwargs)
        if response.status_code == 429:
            with self._lock:
                self._backoff_until = self._clock() + self.config.backoff_seconds
            raise RateLimitedError(f"{self.name} rate limited (HTTP 429)")
        response.raise_for_status()
        return response

    def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None,
                  headers: Optional[Dict[str, str]] = None, **kwargs: Any) -> Any:
        response = self._get(url, params=params, headers=headers, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(f"Invalid JSON from {self.name}: {e}") from e

    def edge(self, parent: str, subsidiary: str, evidence: Iterable[str],
             relationship_type: RelationshipType = RelationshipType.PARENT) -> Optional[OwnershipEdge]:
        """Build an edge at this provider's base confidence"""
        return build_edge(parent, subsidiary, self.config.base_confidence, self.source,
                          evidence=evidence, relationship_type=relationship_type)

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    @abstractmethod
    def _fetch(self, name: str, country_hint: Optional[str]) -> List[OwnershipEdge]:
        """Query the provider; may raise ConnectorError or requests exceptions"""

    def discover_with_status(self, name: str, country_hint: Optional[str] = None) -> ConnectorOutcome:
        """Run one provider lookup and report how it went"""
        outcome = ConnectorOutcome(provider=self.name)
        if not self.enabled or not self.applies_to(country_hint):
            outcome.status = STATUS_SKIPPED
            return outcome
        if self.backing_off:
            logger.debug("%s backing off, skipping %s", self.name, sanitize_for_logging(name))
            outcome.status = STATUS_RATE_LIMITED
            record_connector_call(self.name, STATUS_RATE_LIMITED)
            return outcome

        start = time.perf_counter()
        try:
            outcome.edges = [e for e in self._fetch(name, country_hint) if e is not None]
        except RateLimitedError:
            outcome.status = STATUS_RATE_LIMITED
            self.audit.log_rate_limited(self.name, name, self.config.backoff_seconds)
        except MalformedResponseError as e:
            outcome.status = STATUS_FAILURE
            self.audit.log_malformed_response(self.name, name, str(e))
        except ConnectorError as e:
            outcome.status = STATUS_FAILURE
            self.audit.log_connector_failure(self.name, name, str(e))
        except requests.Timeout:
            outcome.status = STATUS_FAILURE
            self.audit.log_connector_failure(self.name, name, "timeout",
                                             context={'timeout_seconds': self.config.timeout_seconds})
        except requests.RequestException as e:
            outcome.status = STATUS_FAILURE
            status_code = getattr(e.response, 'status_code', None)
            self.audit.log_connector_failure(self.name, name, type(e).__name__,
                                             context={'status_code': status_code})
        except (KeyError, TypeError, ValueError, AttributeError, IndexError) as e:
            outcome.status = STATUS_FAILURE
            self.audit.log_malformed_response(self.name, name, f"{type(e).__name__}: {e}")

        duration = time.perf_counter() - start
        outcome.duration_ms = duration * 1000
        if outcome.status != STATUS_SUCCESS:
            outcome.edges = []
        record_connector_call(self.name, outcome.status, duration)
        record_edges(self.source.value, len(outcome.edges))
        logger.debug("%s: %d edges for %s (%s)", self.name, len(outcome.edges),
                     sanitize_for_logging(name), outcome.status)
        return outcome

    def discover(self, name: str, country_hint: Optional[str] = None) -> List[OwnershipEdge]:
        """Edges the provider knows for name; [] on any failure"""
        return self.discover_with_status(name, country_hint).edges
