"""
Heuristic ownership discovery

Offline discoverers that infer candidate ownership edges from the company
records themselves, with no network access:

- PatternMatcher: name contains a known corporate-group root
- NameDecompositionDiscoverer: names sharing a base name once legal/structural suffixes are stripped
- GeographicClusteringDiscoverer: similar names in the same city
- CityCodeDiscoverer: city prefix followed by a known group root
- CuratedRelationships: manually researched relationships from a YAML file

All discoverers are deterministic for a given input order.
"""

import re
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import yaml

from config_manager import ConfigManager, get_config
from ownership import CompanyRecord, EdgeSource, OwnershipEdge, RelationshipType, build_edge
from similarity import similarity

logger = logging.getLogger(__name__)

# Corporate-group roots recognised by substring containment
CORPORATE_GROUPS = (
    # Chinese tech & telecom
    'Huawei', 'ZTE', 'China Telecom', 'China Mobile', 'China Unicom',
    'Lenovo', 'Xiaomi', 'Oppo', 'Vivo', 'OnePlus', 'Realme',
    # Surveillance & AI
    'Hikvision', 'Dahua', 'DJI', 'SenseTime', 'Megvii', 'CloudWalk', 'Yitu',
    'iFlytek', 'Cambricon', 'Horizon Robotics',
    # Semiconductors
    'SMIC', 'YMTC', 'CXMT', 'JHICC', 'HLMC', 'SMEE', 'Naura',
    'Loongson', 'Phytium', 'Hygon', 'Zhaoxin',
    # Defense & aerospace
    'CETC', 'CSSC', 'AVIC', 'CASIC', 'CASC', 'NORINCO', 'Poly Technologies',
    'CSIC', 'CSGC', 'Aero Engine Corporation',
    # Russia
    'Gazprom', 'Rosneft', 'Rostec', 'Almaz-Antey', 'United Aircraft',
    'Sukhoi', 'MiG', 'Tupolev', 'Ilyushin', 'Kamov',
    'Kalashnikov', 'Uralvagonzavod', 'JSC Rosatom',
    # Energy & resources
    'Sinopec', 'PetroChina', 'CNOOC', 'ChemChina', 'Sinochem',
    'Aluminum Corporation of China', 'Chalco',
    # Shipping
    'COSCO', 'China Shipbuilding', 'China Merchants',
    # Nuclear & space
    'CNNC', 'CGN', 'China Aerospace', 'Great Wall Industry',
    # Electronics & manufacturing
    'BOE', 'TCL', 'Hisense', 'Haier', 'Midea', 'Gree',
    'BYD', 'CATL', 'Gotion', 'Sunwoda', 'EVE Energy',
    # Iran / DPRK
    'IRISL', 'Mahan Air', 'Bank Mellat', 'Bank Melli',
    'Korea Mining Development',
    # Computing & equipment
    'Inspur', 'Sugon', 'Dawning', 'Tianjin Phytium',
    'Shanghai Micro Electronics', 'Advanced Micro-Fabrication',
    'Piotech', 'AMEC', 'SMIT',
)

# Groups that regional subsidiaries are commonly named after
CITY_CODE_GROUPS = (
    'Huawei', 'ZTE', 'Hikvision', 'Dahua', 'DJI', 'SMIC', 'CETC', 'AVIC',
    'CSSC', 'CASIC', 'CASC', 'Rostec', 'Almaz-Antey', 'United Aircraft',
    'Gazprom', 'Rosneft',
)

# City -> name/abbreviation prefixes
CITY_ALIASES: Dict[str, Sequence[str]] = OrderedDict([
    ('Shanghai', ('Shanghai', 'SH')),
    ('Beijing', ('Beijing', 'BJ', 'Peking')),
    ('Shenzhen', ('Shenzhen', 'SZ')),
    ('Guangzhou', ('Guangzhou', 'GZ', 'Canton')),
    ('Chengdu', ('Chengdu', 'CD')),
    ('Hangzhou', ('Hangzhou', 'HZ')),
    ('Wuhan', ('Wuhan', 'WH')),
    ("Xi'an", ("Xi'an", 'Xian', 'XA')),
    ('Chongqing', ('Chongqing', 'CQ')),
    ('Tianjin', ('Tianjin', 'TJ')),
    ('Nanjing', ('Nanjing', 'NJ')),
    ('Shenyang', ('Shenyang', 'SY')),
    ('Harbin', ('Harbin', 'HRB')),
    ('Dalian', ('Dalian', 'DL')),
    ('Qingdao', ('Qingdao', 'QD')),
    ('Jinan', ('Jinan', 'JN')),
    ('Zhengzhou', ('Zhengzhou', 'ZZ')),
    ('Changsha', ('Changsha', 'CS')),
    ('Kunming', ('Kunming', 'KM')),
    ('Suzhou', ('Suzhou', 'SZ')),
    ('Wuxi', ('Wuxi', 'WX')),
    ('Ningbo', ('Ningbo', 'NB')),
    ('Hefei', ('Hefei', 'HF')),
    ('Moscow', ('Moscow', 'MSC')),
    ('Saint Petersburg', ('Saint Petersburg', 'St. Petersburg', 'SPB')),
    ('Novosibirsk', ('Novosibirsk',)),
    ('Yekaterinburg', ('Yekaterinburg',)),
    ('Kazan', ('Kazan',)),
    ('Nizhny Novgorod', ('Nizhny Novgorod',)),
])

# Stripped from the end of a name, repeatedly, to find its base name
BASE_NAME_SUFFIXES = (
    'Co., Ltd.', 'Co.,Ltd.', 'Co. Ltd.', 'Co Ltd', 'Co.', 'Company',
    'Corporation', 'Corp.', 'Corp',
    'Incorporated', 'Inc.', 'Inc',
    'Limited', 'Ltd.', 'Ltd',
    'LLC', 'L.L.C.', 'GmbH', 'S.r.l.', 'S.A.', 'N.V.', 'B.V.', 'PLC', 'AG',
    'Technologies', 'Technology', 'Group', 'Holdings', 'Holding', 'Subsidiary',
)

_SUFFIX_PATTERNS = [
    re.compile(r'[\s,]+' + re.escape(suffix) + r'$', re.IGNORECASE)
    for suffix in BASE_NAME_SUFFIXES
]

# Matches the canonical full form of a group's flagship company
CANONICAL_SUFFIX = ' technologies co., ltd.'


def extract_base_name(name: str) -> str:
    """Strip trailing legal and structural suffixes until none remain

    >>> extract_base_name("Acme Technologies Subsidiary LLC")
    'Acme'
    """
    base = (name or "").strip()
    changed = True
    while changed:
        changed = False
        for pattern in _SUFFIX_PATTERNS:
            stripped = pattern.sub('', base).strip()
            if stripped and stripped != base:
                base = stripped
                changed = True
    return base


def extract_city(address: Optional[str]) -> Optional[str]:
    """First comma-delimited token of an address ("City, Country")"""
    if not address:
        return None
    parts = [p.strip() for p in address.split(',')]
    if len(parts) >= 2 and parts[0]:
        return parts[0]
    return None


class HeuristicDiscoverer(ABC):
    """Base class for offline discoverers"""

    source: EdgeSource

    def __init__(self, config: Optional[ConfigManager] = None):
        self.config = config or get_config()

    def confidence(self, key: str) -> float:
        return self.config.discovery.confidences[key]

    @abstractmethod
    def discover(self, records: Sequence[CompanyRecord]) -> List[OwnershipEdge]:
        """Return candidate edges for the batch"""


class PatternMatcher(HeuristicDiscoverer):
    """Links a record to the corporate group whose root its name contains

    Example: "Shanghai Huawei Device Co., Ltd." -> parent "Huawei"
    """

    source = EdgeSource.PATTERN

    def __init__(self, config: Optional[ConfigManager] = None,
                 groups: Iterable[str] = CORPORATE_GROUPS):
        super().__init__(config)
        self.groups = tuple(groups)

    def _is_group_itself(self, name: str, root: str) -> bool:
        lowered = name.strip().lower()
        root_lower = root.lower()
        return (lowered == root_lower
                or lowered == root_lower + CANONICAL_SUFFIX
                or extract_base_name(name).lower() == root_lower)

    def discover(self, records: Sequence[CompanyRecord]) -> List[OwnershipEdge]:
        confidence = self.confidence('pattern')
        edges = []
        for record in records:
            lowered = record.name.lower()
            for root in self.groups:
                if root.lower() not in lowered:
                    continue
                if self._is_group_itself(record.name, root):
                    continue
                edge = build_edge(
                    root, record.name, confidence, self.source,
                    evidence=[f'Entity name contains corporate group: "{root}"'],
                )
                if edge:
                    edges.append(edge)
        return edges


class NameDecompositionDiscoverer(HeuristicDiscoverer):
    """Groups records by base name; the shortest name in a group is the parent"""

    source = EdgeSource.NAME_ANALYSIS

    def discover(self, records: Sequence[CompanyRecord]) -> List[OwnershipEdge]:
        confidence = self.confidence('name_analysis')
        near_duplicate = self.config.matching.near_duplicate_similarity

        groups: Dict[str, List[CompanyRecord]] = OrderedDict()
        for record in records:
            groups.setdefault(extract_base_name(record.name).lower(), []).append(record)

        edges = []
        for base_name, group in groups.items():
            if len(group) < 2:
                continue
            ordered = sorted(group, key=lambda r: len(r.name))
            parent = ordered[0]
            for candidate in ordered[1:]:
                if similarity(parent.name, candidate.name) > near_duplicate:
                    continue
                edge = build_edge(
                    parent.name, candidate.name, confidence, self.source,
                    evidence=[f'Shared base name: "{base_name}". Parent identified as simplest form.'],
                )
                if edge:
                    edges.append(edge)
        return edges


class GeographicClusteringDiscoverer(HeuristicDiscoverer):
    """Pairs similarly named records located in the same city"""

    source = EdgeSource.GEOGRAPHIC

    def discover(self, records: Sequence[CompanyRecord]) -> List[OwnershipEdge]:
        max_confidence = self.confidence('geographic_max')
        min_similarity = self.config.matching.geographic_min_similarity

        buckets: Dict[str, List[CompanyRecord]] = OrderedDict()
        cities: Dict[str, str] = {}
        for record in records:
            city = extract_city(record.address)
            if not city:
                continue
            key = city.lower()
            cities.setdefault(key, city)
            buckets.setdefault(key, []).append(record)

        edges = []
        for key, group in buckets.items():
            for i in range(len(group)):
                for j in range(i + 1, len(group)):
                    first, second = group[i], group[j]
                    score = similarity(first.name, second.name)
                    if not min_similarity < score < 1.0:
                        continue
                    if len(second.name) < len(first.name):
                        first, second = second, first
                    edge = build_edge(
                        first.name, second.name,
                        min(max_confidence, 0.5 + score * 0.3),
                        self.source,
                        evidence=[f'Both located in {cities[key]}. Name similarity: {score * 100:.0f}%'],
                    )
                    if edge:
                        edges.append(edge)
        return edges


class CityCodeDiscoverer(HeuristicDiscoverer):
    """Regional subsidiaries named "<city or city code> <group> ..." """

    source = EdgeSource.CITY_CODE

    def __init__(self, config: Optional[ConfigManager] = None,
                 groups: Iterable[str] = CITY_CODE_GROUPS,
                 city_aliases: Optional[Dict[str, Sequence[str]]] = None):
        super().__init__(config)
        self.groups = tuple(groups)
        self.city_aliases = city_aliases if city_aliases is not None else CITY_ALIASES

    @staticmethod
    def _strip_prefix(name: str, alias: str) -> Optional[str]:
        # Prefix must end on a word boundary ("SH Huawei", not "Shanghai" via "SH")
        if not name.lower().startswith(alias.lower()):
            return None
        rest = name[len(alias):]
        if rest and rest[0].isalnum():
            return None
        return rest.strip()

    def discover(self, records: Sequence[CompanyRecord]) -> List[OwnershipEdge]:
        confidence = self.confidence('city_code')
        edges = []
        for record in records:
            for city, aliases in self.city_aliases.items():
                for alias in aliases:
                    rest = self._strip_prefix(record.name, alias)
                    if not rest:
                        continue
                    for root in self.groups:
                        if root.lower() in rest.lower():
                            edge = build_edge(
                                root, record.name, confidence, self.source,
                                evidence=[f'Entity in {city} with corporate group {root} in name'],
                            )
                            if edge:
                                edges.append(edge)
                            break
        return edges


class CuratedRelationships:
    """Manually researched relationships kept in a YAML file

    File layout::

        subsidiaries:
          "Parent Co.": ["Subsidiary A", "Subsidiary B"]
        affiliates:
          "Parent Co.": ["Affiliate A"]
    """

    source = EdgeSource.CURATED

    def __init__(self, config: Optional[ConfigManager] = None, path: Optional[str] = None):
        self.config = config or get_config()
        self.path = self._resolve(path or self.config.discovery.curated_relationships_file)

    def _resolve(self, path: Optional[str]) -> Optional[Path]:
        if not path:
            return None
        candidate = Path(path)
        if not candidate.is_absolute() and self.config.config_path:
            relative = Path(self.config.config_path).parent / candidate
            if relative.exists():
                return relative
        return candidate

    def load(self) -> List[OwnershipEdge]:
        """Read the file into edges; a missing file yields no edges"""
        if self.path is None:
            return []
        if not self.path.exists():
            logger.warning("Curated relationships file not found: %s", self.path)
            return []

        with open(self.path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        edges = []
        confidences = self.config.discovery.confidences
        sections = [
            ('subsidiaries', 'subsidiary', RelationshipType.PARENT, confidences['curated_subsidiary']),
            ('affiliates', 'affiliate', RelationshipType.AFFILIATE, confidences['curated_affiliate']),
        ]
        for section, label, relationship_type, confidence in sections:
            for parent, children in (data.get(section) or {}).items():
                for child in children or []:
                    edge = build_edge(
                        parent, child, confidence, self.source,
                        evidence=[f'Curated {label} relationship ({self.path.name})'],
                        relationship_type=relationship_type,
                    )
                    if edge:
                        edges.append(edge)
        logger.info("Loaded %d curated relationships from %s", len(edges), self.path)
        return edges


def default_discoverers(config: Optional[ConfigManager] = None) -> List[HeuristicDiscoverer]:
    """The four offline discoverers in their run order"""
    config = config or get_config()
    return [
        PatternMatcher(config),
        NameDecompositionDiscoverer(config),
        GeographicClusteringDiscoverer(config),
        CityCodeDiscoverer(config),
    ]


def run_heuristics(records: Sequence[CompanyRecord],
                   discoverers: Optional[Sequence[HeuristicDiscoverer]] = None,
                   config: Optional[ConfigManager] = None) -> List[OwnershipEdge]:
    """Run every discoverer over the batch and concatenate their edges"""
    discoverers = discoverers if discoverers is not None else default_discoverers(config)
    edges: List[OwnershipEdge] = []
    for discoverer in discoverers:
        found = discoverer.discover(records)
        logger.info("%s: %d relationships", type(discoverer).__name__, len(found))
        edges.extend(found)
    return edges
