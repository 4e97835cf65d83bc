"""
Audit Event Logging Module

Structured JSON events for failures that are recovered from silently
during discovery and screening:

- CONNECTOR_FAILURE: provider call timed out or returned an HTTP error
- CONNECTOR_RATE_LIMITED: provider answered 429, calls suspended
- MALFORMED_RESPONSE: provider payload discarded
- CACHE_MISS: cached artifact missing, unreadable or expired
- LIST_UNAVAILABLE: scan aborted because the restricted-party list is not loaded

Entity names are sanitized before they are written.
"""

import logging
import json
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Dict, Any
from dataclasses import dataclass, field as dataclass_field

from config_manager import ConfigManager
from xml_utils import sanitize_for_logging


@dataclass
class AuditEvent:
    """Structured audit event for logging"""
    event_type: str
    severity: str  # INFO, WARNING, ERROR, CRITICAL
    provider: str = ""
    entity: str = ""  # sanitized, truncated
    detail: str = ""
    source: str = ""  # module that emitted the event
    run_id: str = ""
    context: Dict[str, Any] = dataclass_field(default_factory=dict)
    timestamp: str = dataclass_field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp,
            'event_type': self.event_type,
            'severity': self.severity,
            'provider': self.provider,
            'entity': self.entity,
            'detail': self.detail,
            'source': self.source,
            'run_id': self.run_id,
            'context': self.context
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


class AuditLogger:
    """Writes audit events as JSON lines to audit.log (and optionally console)"""

    def __init__(
        self,
        log_dir: str = "logs",
        log_level: int = logging.INFO,
        enable_console: bool = False,
        enable_file: bool = True
    ):
        """Initialize audit logger

        Args:
            log_dir: Directory for log files
            log_level: Minimum log level to record
            enable_console: Also output to console
            enable_file: Write to audit.log file
        """
        self.log_dir = Path(log_dir)

        self.logger = logging.getLogger('audit')
        self.logger.setLevel(log_level)
        self.logger.handlers.clear()

        formatter = logging.Formatter('%(asctime)s - AUDIT - %(levelname)s - %(message)s')

        if enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.log_dir / "audit.log", encoding='utf-8')
            file_handler.setLevel(log_level)
            file_handler.setFormatter(formatter)
            self.logger.addHandler(file_handler)

        if enable_console:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(log_level)
            console_handler.setFormatter(formatter)
            self.logger.addHandler(console_handler)

        self._run_id: str = ""

    def set_run_context(self, run_id: Optional[str] = None) -> str:
        """Tag subsequent events with a discovery-run or scan id"""
        self._run_id = run_id or f"RUN-{uuid.uuid4().hex[:8]}"
        return self._run_id

    def clear_run_context(self) -> None:
        self._run_id = ""

    @staticmethod
    def _sanitize(text: Any, max_length: int = 100) -> str:
        if text is None or text == "":
            return ""
        sanitized = sanitize_for_logging(str(text))
        if len(sanitized) > max_length:
            return sanitized[:max_length] + "...(truncated)"
        return sanitized

    def _sanitize_context(self, context: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not context:
            return {}
        sanitized = {}
        for key, value in context.items():
            if value is None or isinstance(value, (bool, int, float)):
                sanitized[str(key)] = value
            elif isinstance(value, dict):
                sanitized[str(key)] = self._sanitize_context(value)
            else:
                sanitized[str(key)] = self._sanitize(value, max_length=200)
        return sanitized

    def log_event(
        self,
        event_type: str,
        severity: str = "WARNING",
        provider: str = "",
        entity: str = "",
        detail: str = "",
        source: str = "",
        context: Optional[Dict[str, Any]] = None
    ) -> AuditEvent:
        """Emit one audit event and return it"""
        event = AuditEvent(
            event_type=event_type,
            severity=severity,
            provider=provider,
            entity=self._sanitize(entity),
            detail=self._sanitize(detail, max_length=300),
            source=source,
            run_id=self._run_id,
            context=self._sanitize_context(context)
        )
        level = getattr(logging, severity, logging.WARNING)
        self.logger.log(level, event.to_json())
        return event

    def log_connector_failure(self, provider: str, entity: str, reason: str,
                              context: Optional[Dict[str, Any]] = None) -> AuditEvent:
        return self.log_event("CONNECTOR_FAILURE", "WARNING", provider=provider, entity=entity,
                              detail=reason, source="connectors", context=context)

    def log_rate_limited(self, provider: str, entity: str, backoff_seconds: float) -> AuditEvent:
        return self.log_event("CONNECTOR_RATE_LIMITED", "WARNING", provider=provider, entity=entity,
                              detail=f"HTTP 429, suspending calls for {backoff_seconds:.0f}s",
                              source="connectors", context={'backoff_seconds': backoff_seconds})

    def log_malformed_response(self, provider: str, entity: str, reason: str) -> AuditEvent:
        return self.log_event("MALFORMED_RESPONSE", "WARNING", provider=provider, entity=entity,
                              detail=reason, source="connectors")

    def log_cache_miss(self, reason: str, context: Optional[Dict[str, Any]] = None) -> AuditEvent:
        return self.log_event("CACHE_MISS", "INFO", detail=reason, source="ownership_graph",
                              context=context)

    def log_list_unavailable(self, entity: str) -> AuditEvent:
        return self.log_event("LIST_UNAVAILABLE", "CRITICAL", entity=entity,
                              detail="Restricted-party list not loaded; scan aborted",
                              source="screener")


_audit_logger: Optional[AuditLogger] = None


def get_audit_logger(log_dir: str = "logs", enable_console: bool = False) -> AuditLogger:
    """Get or create the global audit logger instance"""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger(log_dir=log_dir, enable_console=enable_console)
    return _audit_logger


def reset_audit_logger() -> None:
    """Reset the global audit logger (for testing)"""
    global _audit_logger
    _audit_logger = None


def configure_logging(config: ConfigManager) -> AuditLogger:
    """Apply the logging section of the configuration

    Sets the root level and format, and replaces the global audit logger
    with one writing to logging.audit_log_dir.
    """
    global _audit_logger
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(config.logging.level).upper(), logging.INFO))
    for handler in root.handlers:
        handler.setFormatter(logging.Formatter(config.logging.format))
    _audit_logger = AuditLogger(log_dir=config.logging.audit_log_dir, enable_console=config.logging.console)
    return _audit_logger
