"""
Core data types for ownership discovery and restricted-party screening

- CompanyRecord: a company as submitted for discovery (immutable, versioned)
- OwnershipEdge: one candidate parent/subsidiary/affiliate relationship
- RestrictedPartyEntry: one listed entity from the external restricted-party feed

Names are compared through normalize_name(), which is also the key used by
the ownership graph.
"""

import re
import logging
import unicodedata
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

logger = logging.getLogger(__name__)

# Legal-form tokens dropped from the end of a name during normalization
LEGAL_SUFFIX_TOKENS = frozenset({
    'co', 'ltd', 'limited', 'inc', 'incorporated', 'corp', 'corporation',
    'llc', 'company', 'gmbh', 'plc', 'ag', 'sa', 'nv', 'bv', 'srl', 'spa',
    'pte', 'pty', 'kk', 'ab', 'jsc', 'pjsc', 'ojsc', 'ooo', 'oao', 'zao',
})

DEFAULT_EDGE_TTL = timedelta(days=7)


def normalize_name(name: Optional[str]) -> str:
    """Normalize a company name for matching and graph keys

    Lowercases, removes accents and punctuation, collapses whitespace and
    strips trailing legal-form tokens (Ltd, Inc, Corp, LLC, ...).

    >>> normalize_name("  ZTE Corporation ")
    'zte'
    >>> normalize_name("Huawei Technologies Co., Ltd.")
    'huawei technologies'
    """
    if not name:
        return ""
    name = ''.join(c for c in unicodedata.normalize('NFD', name)
                   if unicodedata.category(c) != 'Mn')
    name = re.sub(r'[^\w\s]', ' ', name.lower())
    tokens = name.split()
    stripped = list(tokens)
    while stripped and stripped[-1] in LEGAL_SUFFIX_TOKENS:
        stripped.pop()
    # A name made only of legal-form tokens keeps its tokens
    return ' '.join(stripped or tokens)


def is_self_loop(parent: str, subsidiary: str) -> bool:
    """True when both ends of an edge normalize to the same company"""
    return normalize_name(parent) == normalize_name(subsidiary)


class RelationshipType(str, Enum):
    """Direction/kind of an ownership edge"""
    PARENT = "parent"
    SUBSIDIARY = "subsidiary"
    AFFILIATE = "affiliate"


class EdgeSource(str, Enum):
    """Where an edge came from"""
    # Heuristic discoverers (no network)
    PATTERN = "pattern"
    NAME_ANALYSIS = "name_analysis"
    GEOGRAPHIC = "geographic"
    CITY_CODE = "city_code"
    CURATED = "curated"
    # External providers
    WIKIDATA = "wikidata"
    COMPANIES_HOUSE = "companies_house"
    SEC_EDGAR = "sec_edgar"
    WIKIPEDIA = "wikipedia"
    DBPEDIA = "dbpedia"
    OPENCORPORATES = "opencorporates"


@dataclass(frozen=True)
class CompanyRecord:
    """A company submitted for discovery or screening"""
    name: str
    aliases: FrozenSet[str] = field(default_factory=frozenset)
    country: Optional[str] = None
    address: Optional[str] = None
    version: int = 1

    def __post_init__(self):
        if not self.name or not self.name.strip():
            raise ValueError("CompanyRecord.name must not be empty")
        object.__setattr__(self, 'name', ' '.join(self.name.split()))
        object.__setattr__(self, 'aliases', frozenset(self.aliases or ()))

    @property
    def normalized_name(self) -> str:
        return normalize_name(self.name)

    def with_version(self, **changes: Any) -> 'CompanyRecord':
        """Return a re-discovered copy with an incremented version"""
        return replace(self, version=self.version + 1, **changes)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CompanyRecord':
        return cls(
            name=data['name'],
            aliases=frozenset(data.get('aliases') or ()),
            country=data.get('country') or None,
            address=data.get('address') or None,
        )


@dataclass(frozen=True)
class OwnershipEdge:
    """Candidate ownership relationship between two companies

    Edges are immutable; merging evidence produces a new edge.
    """
    parent: str
    subsidiary: str
    relationship_type: RelationshipType
    confidence: float
    source: EdgeSource
    evidence: Tuple[str, ...] = ()
    discovered_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Edge confidence must be in [0, 1], got {self.confidence}")
        if is_self_loop(self.parent, self.subsidiary):
            raise ValueError(f"Self-referential edge rejected: {self.parent!r} -> {self.subsidiary!r}")
        object.__setattr__(self, 'relationship_type', RelationshipType(self.relationship_type))
        object.__setattr__(self, 'source', EdgeSource(self.source))
        object.__setattr__(self, 'evidence', tuple(self.evidence))

    @property
    def dedup_key(self) -> str:
        return f"{self.parent.lower()}::{self.subsidiary.lower()}"

    def merged_with(self, other: 'OwnershipEdge') -> 'OwnershipEdge':
        """Return a copy carrying other's evidence after this edge's own"""
        extra = tuple(e for e in other.evidence if e not in self.evidence)
        if not extra:
            return self
        return replace(self, evidence=self.evidence + extra)

    def is_expired(self, ttl: timedelta = DEFAULT_EDGE_TTL, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - self.discovered_at > ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            'parent': self.parent,
            'subsidiary': self.subsidiary,
            'relationshipType': self.relationship_type.value,
            'confidence': self.confidence,
            'source': self.source.value,
            'evidence': list(self.evidence),
            'discoveredAt': self.discovered_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OwnershipEdge':
        """Rebuild an edge from to_dict() output

        Raises:
            KeyError, ValueError: If the payload is incomplete or invalid
        """
        discovered_at = datetime.fromisoformat(data['discoveredAt'])
        if discovered_at.tzinfo is None:
            discovered_at = discovered_at.replace(tzinfo=timezone.utc)
        return cls(
            parent=data['parent'],
            subsidiary=data['subsidiary'],
            relationship_type=RelationshipType(data['relationshipType']),
            confidence=float(data['confidence']),
            source=EdgeSource(data['source']),
            evidence=tuple(data.get('evidence') or ()),
            discovered_at=discovered_at,
        )


def build_edge(parent: str, subsidiary: str, confidence: float, source: EdgeSource,
               evidence: Iterable[str] = (),
               relationship_type: RelationshipType = RelationshipType.PARENT) -> Optional[OwnershipEdge]:
    """Create an edge, or None when both ends are the same company"""
    parent = (parent or "").strip()
    subsidiary = (subsidiary or "").strip()
    if not parent or not subsidiary or is_self_loop(parent, subsidiary):
        logger.debug("Skipping self-referential or empty edge: %r -> %r", parent, subsidiary)
        return None
    return OwnershipEdge(
        parent=parent,
        subsidiary=subsidiary,
        relationship_type=relationship_type,
        confidence=round(min(max(confidence, 0.0), 1.0), 4),
        source=source,
        evidence=tuple(evidence),
    )


@dataclass(frozen=True)
class RestrictedPartyEntry:
    """One entity on the restricted-party list (read-only)"""
    name: str
    aliases: Tuple[str, ...] = ()
    country: Optional[str] = None
    listing_reason: Optional[str] = None
    citation: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'aliases', tuple(self.aliases or ()))

    @property
    def all_names(self) -> Tuple[str, ...]:
        return (self.name,) + self.aliases

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'aliases': list(self.aliases),
            'country': self.country,
            'listingReason': self.listing_reason,
            'citation': self.citation,
        }
