"""
Configuration Management Module
Loads and validates configuration from config.yaml
"""

import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, Optional, List

logger = logging.getLogger(__name__)


@dataclass
class MatchingConfig:
    """Similarity thresholds used when comparing names"""
    fuzzy_match_threshold: float = 0.7
    geographic_min_similarity: float = 0.5
    near_duplicate_similarity: float = 0.95


@dataclass
class DiscoveryConfig:
    """Heuristic discovery settings

    Confidences are uncalibrated defaults; override them in config.yaml
    once labelled ground truth is available.
    """
    confidences: Dict[str, float] = field(default_factory=lambda: {
        'pattern': 0.85,
        'name_analysis': 0.70,
        'geographic_max': 0.75,
        'city_code': 0.75,
        'curated_subsidiary': 0.95,
        'curated_affiliate': 0.90,
    })
    curated_relationships_file: Optional[str] = None
    fail_when_all_connectors_down: bool = True


@dataclass
class ConnectorConfig:
    """Per-provider connector settings"""
    enabled: bool = True
    base_confidence: float = 0.8
    min_interval_ms: int = 500
    timeout_seconds: float = 10.0
    backoff_seconds: float = 60.0
    api_key: Optional[str] = None


DEFAULT_CONNECTORS: Dict[str, Dict[str, Any]] = {
    'wikidata': {'base_confidence': 0.85, 'min_interval_ms': 1000},
    'companies_house': {'base_confidence': 0.90, 'min_interval_ms': 500},
    'sec_edgar': {'base_confidence': 0.85, 'min_interval_ms': 200},
    'wikipedia': {'base_confidence': 0.80, 'min_interval_ms': 200},
    'dbpedia': {'base_confidence': 0.80, 'min_interval_ms': 500},
    'opencorporates': {'base_confidence': 0.75, 'min_interval_ms': 1000, 'enabled': False},
}


@dataclass
class CacheConfig:
    """Ownership graph cache settings"""
    ttl_days: float = 7
    backend: str = "memory"  # memory, database
    database_url: Optional[str] = None


@dataclass
class ScreeningConfig:
    """Risk screening parameters"""
    decay_factor: float = 0.85
    max_depth: int = 3
    envelope_timeout_seconds: float = 15.0
    on_demand_discovery: bool = True
    risk_bands: Dict[str, float] = field(default_factory=lambda: {
        'low': 2.0,
        'medium': 4.0,
        'high': 6.0,
        'critical': 8.0,
    })


@dataclass
class LoggingConfig:
    """Logging configuration"""
    level: str = "INFO"
    audit_log_dir: str = "logs"
    console: bool = True
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class PerformanceConfig:
    """Performance configuration"""
    max_concurrent_entities: int = 4
    connector_threads: int = 6


@dataclass
class AlgorithmConfig:
    """Algorithm version information"""
    version: str = "1.0.0"
    name: str = "Ownership Graph Screener"
    last_updated: str = "2025-11-08"


class ConfigurationError(Exception):
    """Raised when configuration is invalid"""
    pass


class ConfigManager:
    """Manages system configuration"""

    _instance: Optional['ConfigManager'] = None

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration manager

        Args:
            config_path: Path to config.yaml file
        """
        self.config_path = Path(config_path) if config_path else self._find_config()
        self._raw_config: Dict[str, Any] = {}
        self.matching: MatchingConfig = MatchingConfig()
        self.discovery: DiscoveryConfig = DiscoveryConfig()
        self.connectors: Dict[str, ConnectorConfig] = {
            name: ConnectorConfig(**overrides) for name, overrides in DEFAULT_CONNECTORS.items()
        }
        self.cache: CacheConfig = CacheConfig()
        self.screening: ScreeningConfig = ScreeningConfig()
        self.logging: LoggingConfig = LoggingConfig()
        self.performance: PerformanceConfig = PerformanceConfig()
        self.algorithm: AlgorithmConfig = AlgorithmConfig()

        if self.config_path and self.config_path.exists():
            self.load()
        else:
            logger.warning(f"Config file not found at {self.config_path}, using defaults")

    def _find_config(self) -> Path:
        """Find config.yaml in common locations"""
        search_paths = [
            Path(__file__).parent / "config.yaml",
            Path.cwd() / "config.yaml",
            Path.cwd() / "python" / "config.yaml",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return search_paths[0]

    def load(self) -> None:
        """Load configuration from YAML file"""
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                self._raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except FileNotFoundError:
            raise ConfigurationError(f"Config file not found: {self.config_path}")

        self._parse_matching()
        self._parse_discovery()
        self._parse_connectors()
        self._parse_cache()
        self._parse_screening()
        self._parse_logging()
        self._parse_performance()
        self._parse_algorithm()
        self._validate()

    def _parse_matching(self) -> None:
        """Parse matching configuration"""
        cfg = self._raw_config.get('matching', {})
        self.matching = MatchingConfig(
            fuzzy_match_threshold=cfg.get('fuzzy_match_threshold', 0.7),
            geographic_min_similarity=cfg.get('geographic_min_similarity', 0.5),
            near_duplicate_similarity=cfg.get('near_duplicate_similarity', 0.95)
        )

    def _parse_discovery(self) -> None:
        """Parse discovery configuration"""
        cfg = self._raw_config.get('discovery', {})
        confidences = dict(self.discovery.confidences)
        confidences.update(cfg.get('confidences', {}))
        self.discovery = DiscoveryConfig(
            confidences=confidences,
            curated_relationships_file=cfg.get('curated_relationships_file'),
            fail_when_all_connectors_down=cfg.get('fail_when_all_connectors_down', True)
        )

    def _parse_connectors(self) -> None:
        """Parse per-provider connector configuration"""
        cfg = self._raw_config.get('connectors', {})
        for name, overrides in cfg.items():
            if name not in self.connectors:
                raise ConfigurationError(f"Unknown connector in config: {name}")
            current = self.connectors[name]
            overrides = overrides or {}
            self.connectors[name] = ConnectorConfig(
                enabled=overrides.get('enabled', current.enabled),
                base_confidence=overrides.get('base_confidence', current.base_confidence),
                min_interval_ms=overrides.get('min_interval_ms', current.min_interval_ms),
                timeout_seconds=overrides.get('timeout_seconds', current.timeout_seconds),
                backoff_seconds=overrides.get('backoff_seconds', current.backoff_seconds),
                api_key=overrides.get('api_key', current.api_key)
            )

    def _parse_cache(self) -> None:
        """Parse cache configuration"""
        cfg = self._raw_config.get('cache', {})
        self.cache = CacheConfig(
            ttl_days=float(cfg.get('ttl_days', 7)),
            backend=cfg.get('backend', 'memory'),
            database_url=cfg.get('database_url')
        )

    def _parse_screening(self) -> None:
        """Parse screening configuration"""
        cfg = self._raw_config.get('screening', {})
        self.screening = ScreeningConfig(
            decay_factor=cfg.get('decay_factor', 0.85),
            max_depth=cfg.get('max_depth', 3),
            envelope_timeout_seconds=cfg.get('envelope_timeout_seconds', 15.0),
            on_demand_discovery=cfg.get('on_demand_discovery', True),
            risk_bands=cfg.get('risk_bands', self.screening.risk_bands)
        )

    def _parse_logging(self) -> None:
        """Parse logging configuration"""
        cfg = self._raw_config.get('logging', {})
        self.logging = LoggingConfig(
            level=cfg.get('level', 'INFO'),
            audit_log_dir=cfg.get('audit_log_dir', 'logs'),
            console=cfg.get('console', True),
            format=cfg.get('format', self.logging.format)
        )

    def _parse_performance(self) -> None:
        """Parse performance configuration"""
        cfg = self._raw_config.get('performance', {})
        self.performance = PerformanceConfig(
            max_concurrent_entities=cfg.get('max_concurrent_entities', 4),
            connector_threads=cfg.get('connector_threads', 6)
        )

    def _parse_algorithm(self) -> None:
        """Parse algorithm configuration"""
        cfg = self._raw_config.get('algorithm', {})
        self.algorithm = AlgorithmConfig(
            version=cfg.get('version', '1.0.0'),
            name=cfg.get('name', 'Ownership Graph Screener'),
            last_updated=cfg.get('last_updated', '2025-11-08')
        )

    @classmethod
    def get_instance(cls, config_path: Optional[str] = None) -> 'ConfigManager':
        """Get singleton instance of ConfigManager"""
        if cls._instance is None:
            cls._instance = ConfigManager(config_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset singleton instance (useful for testing)"""
        cls._instance = None

    def connector(self, name: str) -> ConnectorConfig:
        """Settings for one provider, defaults if it is not configured"""
        return self.connectors.get(name, ConnectorConfig())

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return {
            'matching': {
                'fuzzy_match_threshold': self.matching.fuzzy_match_threshold,
                'geographic_min_similarity': self.matching.geographic_min_similarity,
                'near_duplicate_similarity': self.matching.near_duplicate_similarity
            },
            'discovery': {
                'confidences': dict(self.discovery.confidences),
                'curated_relationships_file': self.discovery.curated_relationships_file
            },
            'connectors': {
                name: {
                    'enabled': c.enabled,
                    'base_confidence': c.base_confidence,
                    'min_interval_ms': c.min_interval_ms,
                    'timeout_seconds': c.timeout_seconds
                } for name, c in self.connectors.items()
            },
            'cache': {
                'ttl_days': self.cache.ttl_days,
                'backend': self.cache.backend
            },
            'screening': {
                'decay_factor': self.screening.decay_factor,
                'max_depth': self.screening.max_depth,
                'envelope_timeout_seconds': self.screening.envelope_timeout_seconds,
                'risk_bands': dict(self.screening.risk_bands)
            },
            'algorithm': {
                'version': self.algorithm.version,
                'name': self.algorithm.name,
                'last_updated': self.algorithm.last_updated
            }
        }

    def _validate(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: If any value is out of range
        """
        errors: List[str] = []

        for label, value in [
            ('matching.fuzzy_match_threshold', self.matching.fuzzy_match_threshold),
            ('matching.geographic_min_similarity', self.matching.geographic_min_similarity),
            ('matching.near_duplicate_similarity', self.matching.near_duplicate_similarity),
            ('screening.decay_factor', self.screening.decay_factor),
        ]:
            if not 0.0 <= value <= 1.0:
                errors.append(f"{label} must be in [0, 1], got {value}")

        for key, value in self.discovery.confidences.items():
            if not 0.0 <= value <= 1.0:
                errors.append(f"discovery.confidences.{key} must be in [0, 1], got {value}")

        for name, connector in self.connectors.items():
            if not 0.0 <= connector.base_confidence <= 1.0:
                errors.append(f"connectors.{name}.base_confidence must be in [0, 1]")
            if connector.min_interval_ms < 0 or connector.timeout_seconds <= 0:
                errors.append(f"connectors.{name} interval/timeout must be positive")

        if self.screening.max_depth < 1:
            errors.append("screening.max_depth must be at least 1")

        bands = self.screening.risk_bands
        band_order = ['low', 'medium', 'high', 'critical']
        missing = [b for b in band_order if b not in bands]
        if missing:
            errors.append(f"screening.risk_bands missing: {missing}")
        else:
            values = [bands[b] for b in band_order]
            if values != sorted(values) or values[0] <= 0 or values[-1] > 10:
                errors.append("screening.risk_bands must increase within (0, 10]")

        if self.cache.ttl_days <= 0:
            errors.append("cache.ttl_days must be positive")
        if self.cache.backend not in ('memory', 'database'):
            errors.append(f"cache.backend must be 'memory' or 'database', got {self.cache.backend}")

        if errors:
            raise ConfigurationError("Invalid configuration: " + "; ".join(errors))


def get_config(config_path: Optional[str] = None) -> ConfigManager:
    """Convenience function to get configuration instance"""
    return ConfigManager.get_instance(config_path)
