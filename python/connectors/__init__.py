"""
Source connectors for ownership discovery

Usage:
    from connectors import build_connectors

    for connector in build_connectors(config):
        edges = connector.discover("ZTE Corporation", country_hint="CN")
"""

from typing import Dict, List, Optional, Type

import requests

from audit_logger import AuditLogger
from config_manager import ConfigManager, get_config
from connectors.base import (
    BaseConnector,
    ConnectorError,
    ConnectorOutcome,
    MalformedResponseError,
    RateLimitedError,
    STATUS_FAILURE,
    STATUS_RATE_LIMITED,
    STATUS_SKIPPED,
    STATUS_SUCCESS,
)
from connectors.companies_house import CompaniesHouseConnector
from connectors.dbpedia import DBpediaConnector
from connectors.opencorporates import OpenCorporatesConnector
from connectors.sec_edgar import SecEdgarConnector
from connectors.wikidata import WikidataConnector
from connectors.wikipedia import WikipediaConnector

CONNECTOR_CLASSES: Dict[str, Type[BaseConnector]] = {
    cls.name: cls for cls in (
        WikidataConnector,
        CompaniesHouseConnector,
        SecEdgarConnector,
        WikipediaConnector,
        DBpediaConnector,
        OpenCorporatesConnector,
    )
}


def build_connectors(config: Optional[ConfigManager] = None,
                     session: Optional[requests.Session] = None,
                     audit: Optional[AuditLogger] = None) -> List[BaseConnector]:
    """Instantiate every enabled connector from configuration"""
    config = config or get_config()
    connectors = []
    for name, cls in CONNECTOR_CLASSES.items():
        connector = cls(config.connector(name), session=session, audit=audit)
        if connector.enabled:
            connectors.append(connector)
    return connectors


__all__ = [
    'BaseConnector',
    'ConnectorError',
    'ConnectorOutcome',
    'MalformedResponseError',
    'RateLimitedError',
    'STATUS_FAILURE',
    'STATUS_RATE_LIMITED',
    'STATUS_SKIPPED',
    'STATUS_SUCCESS',
    'CONNECTOR_CLASSES',
    'build_connectors',
    'WikidataConnector',
    'CompaniesHouseConnector',
    'SecEdgarConnector',
    'WikipediaConnector',
    'DBpediaConnector',
    'OpenCorporatesConnector',
]
