from __future__ import annotations

import threading
from typing import Iterable


def normalize_address(value: str) -> str:
    return str(value or '').strip().lower()


class WatchRegistry:
    """Set of lower-cased contract addresses watched by one tenant's ingester.

    The scan loop reads it while the watch-update subscriber mutates it from
    another thread, so every access goes through a single lock.
    """

    def __init__(self, tenant_id: str, addresses: Iterable[str] = ()) -> None:
        self.tenant_id = tenant_id
        self._lock = threading.Lock()
        self._addresses: set[str] = set()
        for address in addresses:
            self.add(address)

    def contains(self, address: str) -> bool:
        candidate = normalize_address(address)
        with self._lock:
            return candidate in self._addresses

    def add(self, address: str) -> bool:
        candidate = normalize_address(address)
        if not candidate:
            return False
        with self._lock:
            if candidate in self._addresses:
                return False
            self._addresses.add(candidate)
            return True

    def remove(self, address: str) -> bool:
        candidate = normalize_address(address)
        with self._lock:
            if candidate not in self._addresses:
                return False
            self._addresses.discard(candidate)
            return True

    def snapshot(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._addresses)

    def __len__(self) -> int:
        with self._lock:
            return len(self._addresses)

    def __contains__(self, address: object) -> bool:
        return isinstance(address, str) and self.contains(address)
