"""Pending-delete store backing split-update correlation."""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional

from ..events import CanonicalEvent

logger = logging.getLogger(__name__)

_ANY = object()


class PendingMetrics:
    """Store activity: `captured`, `superseded`, `expired` and `dropped`
    counts plus the `pending_depth` gauge.

    Numbers are only kept in memory here; the emitter subclasses this to
    forward them to Prometheus.
    """

    def __init__(self) -> None:
        self.counters: Counter[str] = Counter()
        self.gauges: Dict[str, float] = {}

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] += value

    def set_gauge(self, name: str, value: float) -> None:
        self.gauges[name] = value


@dataclass(frozen=True)
class PendingDelete:
    """A captured DELETE awaiting a matching INSERT."""

    key: str
    commit_ts: object
    captured_at: float
    old_data: Dict[str, object]
    event: CanonicalEvent
    started_at: float = 0.0


class PendingDeleteStore:
    """Maps ``table_recordId`` to the delete awaiting correlation.

    Every removal goes through a single locked check-and-remove, so exactly
    one caller can take a given entry.
    """

    def __init__(
        self,
        stale_after_seconds: float,
        max_entries: int = 10_000,
        *,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[PendingMetrics] = None,
    ) -> None:
        if stale_after_seconds <= 0:
            raise ValueError("stale_after_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.stale_after_seconds = stale_after_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._metrics = metrics or PendingMetrics()
        self._lock = Lock()
        self._entries: Dict[str, PendingDelete] = {}

    @property
    def metrics(self) -> PendingMetrics:
        return self._metrics

    def put(self, entry: PendingDelete) -> Optional[PendingDelete]:
        """Store `entry`, returning the older delete it superseded, if any."""
        with self._lock:
            previous = self._entries.pop(entry.key, None)
            self._entries[entry.key] = entry
            self._enforce_cap_locked()
            depth = len(self._entries)
        self._metrics.inc("captured")
        if previous is not None:
            self._metrics.inc("superseded")
            logger.debug(
                "pending delete %s superseded (commit_ts %r -> %r)",
                entry.key,
                previous.commit_ts,
                entry.commit_ts,
            )
        self._metrics.set_gauge("pending_depth", depth)
        return previous

    def claim(self, key: str, commit_ts: object = _ANY) -> Optional[PendingDelete]:
        """Remove and return the entry under `key`.

        When `commit_ts` is given the entry is only taken if its commit
        timestamp matches; otherwise it stays in place and None is returned.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if commit_ts is not _ANY and entry.commit_ts != commit_ts:
                return None
            del self._entries[key]
            depth = len(self._entries)
        self._metrics.set_gauge("pending_depth", depth)
        return entry

    def peek(self, key: str) -> Optional[PendingDelete]:
        with self._lock:
            return self._entries.get(key)

    def sweep(self, *, now: Optional[float] = None) -> List[PendingDelete]:
        """Discard entries captured more than `stale_after_seconds` ago."""
        current = now if now is not None else self._clock()
        with self._lock:
            stale_keys = [
                key
                for key, entry in self._entries.items()
                if current - entry.captured_at > self.stale_after_seconds
            ]
            removed = [self._entries.pop(key) for key in stale_keys]
            depth = len(self._entries)
        if removed:
            self._metrics.inc("expired", len(removed))
            logger.warning(
                "discarded %d stale pending delete(s): %s",
                len(removed),
                ", ".join(entry.key for entry in removed),
            )
        self._metrics.set_gauge("pending_depth", depth)
        return removed

    def pending_keys(self) -> List[str]:
        with self._lock:
            return list(self._entries)

    def clear(self) -> int:
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
        self._metrics.set_gauge("pending_depth", 0)
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _enforce_cap_locked(self) -> None:
        while len(self._entries) > self.max_entries:
            oldest = min(self._entries.values(), key=lambda entry: entry.captured_at)
            del self._entries[oldest.key]
            self._metrics.inc("dropped")
            logger.warning(
                "pending delete store full - dropping %s captured at %.3f",
                oldest.key,
                oldest.captured_at,
            )


__all__ = ["PendingDelete", "PendingDeleteStore", "PendingMetrics"]
