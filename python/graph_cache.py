"""
Cache stores for discovery artifacts

A CacheStore persists the latest DiscoveryArtifact. Read failures surface as
CacheStoreError so that the graph store can treat them as a cache miss.
"""

import copy
import threading
from abc import ABC, abstractmethod
from typing import Optional

from aggregator import DiscoveryArtifact


class CacheStoreError(Exception):
    """Raised when a cache store cannot be read or written"""
    pass


class CacheStore(ABC):

    @abstractmethod
    def load(self) -> Optional[DiscoveryArtifact]:
        """Latest artifact, or None if nothing has been saved

        Raises:
            CacheStoreError: If the stored artifact is unreadable
        """

    @abstractmethod
    def save(self, artifact: DiscoveryArtifact) -> None:
        """Replace the stored artifact"""

    @abstractmethod
    def clear(self) -> None:
        """Remove the stored artifact"""


class InMemoryCacheStore(CacheStore):
    """Process-local store, holding the artifact in its serialized form"""

    def __init__(self):
        self._payload = None
        self._lock = threading.Lock()

    def load(self) -> Optional[DiscoveryArtifact]:
        with self._lock:
            payload = copy.deepcopy(self._payload)
        if payload is None:
            return None
        try:
            return DiscoveryArtifact.from_dict(payload)
        except (KeyError, TypeError, ValueError) as e:
            raise CacheStoreError(f"Corrupt cached artifact: {e}") from e

    def save(self, artifact: DiscoveryArtifact) -> None:
        payload = artifact.to_dict()
        with self._lock:
            self._payload = payload

    def clear(self) -> None:
        with self._lock:
            self._payload = None
