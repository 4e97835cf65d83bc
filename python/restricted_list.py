"""
Restricted-party list holder

Keeps the currently loaded restricted-party entries indexed by normalized
name and alias, and answers exact and fuzzy lookups. The list itself is
acquired elsewhere; load_entries_file() reads an already exported JSON or
CSV file.

Screening must fail closed: lookups against a list that was never loaded
(or loaded empty) raise RestrictedListUnavailableError.
"""

import csv
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from rapidfuzz import process
from rapidfuzz.distance import Levenshtein

from ownership import RestrictedPartyEntry, normalize_name

logger = logging.getLogger(__name__)


class ScreeningError(Exception):
    """Base exception for screening errors"""
    pass


class RestrictedListUnavailableError(ScreeningError):
    """Raised when the restricted-party list is missing, empty or unreadable"""
    pass


@dataclass(frozen=True)
class ListMatch:
    """A restricted-party entry matched by name"""
    entry: RestrictedPartyEntry
    matched_name: str  # the listed name or alias that matched
    match_type: str  # exact, fuzzy
    confidence: float


@dataclass(frozen=True)
class _ListIndex:
    entries: Tuple[RestrictedPartyEntry, ...]
    by_name: Mapping[str, Tuple[RestrictedPartyEntry, str]]
    keys: Tuple[str, ...]
    loaded_at: datetime


class RestrictedPartyList:
    """Thread-safe holder of the loaded list; load() swaps the index atomically"""

    def __init__(self, entries: Optional[Iterable[RestrictedPartyEntry]] = None):
        self._index: Optional[_ListIndex] = None
        self._lock = threading.Lock()
        if entries is not None:
            self.load(entries)

    def load(self, entries: Iterable[RestrictedPartyEntry]) -> int:
        """Replace the list; returns the number of entries loaded"""
        entries = tuple(entries)
        by_name: Dict[str, Tuple[RestrictedPartyEntry, str]] = {}
        for entry in entries:
            for name in entry.all_names:
                key = normalize_name(name)
                if key and key not in by_name:
                    by_name[key] = (entry, name)
        index = _ListIndex(
            entries=entries,
            by_name=MappingProxyType(by_name),
            keys=tuple(by_name),
            loaded_at=datetime.now(timezone.utc),
        )
        with self._lock:
            self._index = index
        logger.info("Loaded %d restricted-party entries (%d names)", len(entries), len(by_name))
        if not entries:
            logger.warning("Restricted-party list loaded empty; screening will be refused")
        return len(entries)

    @property
    def is_loaded(self) -> bool:
        index = self._index
        return index is not None and len(index.entries) > 0

    def __len__(self) -> int:
        index = self._index
        return len(index.entries) if index else 0

    @property
    def loaded_at(self) -> Optional[datetime]:
        index = self._index
        return index.loaded_at if index else None

    def _require(self) -> _ListIndex:
        index = self._index
        if index is None or not index.entries:
            raise RestrictedListUnavailableError("Restricted-party list is not loaded")
        return index

    def match_exact(self, name: str) -> Optional[ListMatch]:
        index = self._require()
        key = normalize_name(name)
        found = index.by_name.get(key) if key else None
        if found is None:
            return None
        entry, matched_name = found
        return ListMatch(entry=entry, matched_name=matched_name, match_type="exact", confidence=1.0)

    def match_fuzzy(self, name: str, threshold: float) -> Optional[ListMatch]:
        """Best listed name with similarity >= threshold"""
        index = self._require()
        key = normalize_name(name)
        if not key:
            return None
        best = process.extractOne(
            key, index.keys,
            scorer=Levenshtein.normalized_similarity,
            score_cutoff=threshold,
        )
        if best is None:
            return None
        matched_key, score, _ = best
        entry, matched_name = index.by_name[matched_key]
        return ListMatch(entry=entry, matched_name=matched_name, match_type="fuzzy",
                         confidence=round(float(score), 4))

    def match(self, name: str, fuzzy_threshold: float) -> Optional[ListMatch]:
        """Exact match if any, otherwise the best fuzzy match"""
        return self.match_exact(name) or self.match_fuzzy(name, fuzzy_threshold)

    def entries(self) -> List[RestrictedPartyEntry]:
        return list(self._require().entries)


def _entry_from_mapping(row: Dict) -> RestrictedPartyEntry:
    name = (row.get('name') or '').strip()
    if not name:
        raise ValueError("entry without a name")
    aliases = row.get('aliases') or []
    if isinstance(aliases, str):
        aliases = [a.strip() for a in aliases.split(';') if a.strip()]
    return RestrictedPartyEntry(
        name=name,
        aliases=tuple(aliases),
        country=row.get('country') or None,
        listing_reason=row.get('listing_reason') or row.get('listingReason') or None,
        citation=row.get('citation') or None,
    )


def load_entries_file(path: str) -> List[RestrictedPartyEntry]:
    """Read restricted-party entries from an exported JSON or CSV file

    JSON: a list of objects (or {"entries": [...]}) with name, aliases,
    country, listing_reason, citation. CSV: the same columns, aliases
    separated by ';'.

    Raises:
        RestrictedListUnavailableError: If the file is missing or unreadable
    """
    file_path = Path(path)
    if not file_path.exists():
        raise RestrictedListUnavailableError(f"Restricted-party list file not found: {file_path}")

    try:
        if file_path.suffix.lower() == '.csv':
            with open(file_path, 'r', encoding='utf-8-sig', newline='') as f:
                rows = list(csv.DictReader(f))
        else:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            rows = data.get('entries', []) if isinstance(data, dict) else data
        entries = [_entry_from_mapping(row) for row in rows]
    except (OSError, ValueError, TypeError, AttributeError, csv.Error) as e:
        raise RestrictedListUnavailableError(f"Unreadable restricted-party list {file_path}: {e}") from e

    logger.info("Read %d restricted-party entries from %s", len(entries), file_path)
    return entries
