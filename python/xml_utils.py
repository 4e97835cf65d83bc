"""
Shared XML and log-safety utilities

Provider responses that arrive as XML (SEC EDGAR Atom feeds) are parsed
through a hardened lxml parser: no DTDs, no entity resolution, no network.
"""

import logging
import re
from typing import Any

from lxml import etree

logger = logging.getLogger(__name__)


def get_secure_parser() -> etree.XMLParser:
    """Get a secure XML parser that prevents XXE attacks"""
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        dtd_validation=False,
        load_dtd=False,
        huge_tree=False
    )


def secure_parse_bytes(content: bytes) -> Any:
    """Securely parse an XML document held in memory

    Args:
        content: Raw response body

    Returns:
        Root element

    Raises:
        ValueError: If the payload is empty or not well-formed XML
    """
    if not content:
        raise ValueError("Empty XML payload")
    try:
        return etree.fromstring(content, get_secure_parser())
    except etree.XMLSyntaxError as e:
        raise ValueError(f"Malformed XML: {e}") from e


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500]
