from __future__ import annotations

import copy
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional


@dataclass
class CacheEntry:
    result: Dict[str, Any]
    stored_at: float


class ResultCache:
    """Last stable result per radicación number, expiring after ``ttl_seconds``."""

    def __init__(self, *, ttl_seconds: float, clock: Callable[[], float] = time.time) -> None:
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def lookup(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.stored_at > self.ttl_seconds:
            del self._entries[key]
            return None
        return copy.deepcopy(entry.result)

    def store(self, key: str, result: Dict[str, Any]) -> None:
        self._entries[key] = CacheEntry(result=copy.deepcopy(result), stored_at=self._clock())

    def sweep(self, now: Optional[float] = None) -> int:
        cutoff = (self._clock() if now is None else now) - self.ttl_seconds
        expired = [k for k, e in self._entries.items() if e.stored_at < cutoff]
        for k in expired:
            del self._entries[k]
        return len(expired)
