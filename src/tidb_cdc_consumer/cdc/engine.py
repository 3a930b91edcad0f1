"""Reconciliation engine coordinating detection, normalization and emission."""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional

from ..events import CanonicalEvent, RawMessage, WireProtocol
from .detector import ProtocolDetector
from .emitter import ConsumerMetrics, OperationEmitter
from .normalizers import (
    CanalArrayNormalizer,
    ControlNormalizer,
    MalformedNormalizer,
    Normalizer,
    SimpleProtocolNormalizer,
    SplitUpdateNormalizer,
)
from .pending import PendingDeleteStore
from .scheduler import Scheduler

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Turns raw change messages into canonical events.

    Messages must be handed over one at a time in partition order.  Deferred
    work (finalizing parked deletes, sweeping stale ones) only happens inside
    :meth:`run_pending`, which the caller invokes between messages.
    """

    def __init__(
        self,
        emitter: OperationEmitter,
        *,
        clock: Callable[[], float] = time.monotonic,
        correlation_window_seconds: float = 0.5,
        sweep_interval_seconds: float = 30.0,
        stale_after_seconds: float = 5.0,
        max_pending: int = 10_000,
        update_heuristic: bool = True,
        detector: Optional[ProtocolDetector] = None,
        scheduler: Optional[Scheduler] = None,
        store: Optional[PendingDeleteStore] = None,
    ) -> None:
        self._emitter = emitter
        self._clock = clock
        self._detector = detector or ProtocolDetector()
        self._scheduler = scheduler or Scheduler(clock=clock)
        self._store = store or PendingDeleteStore(
            stale_after_seconds=stale_after_seconds,
            max_entries=max_pending,
            clock=clock,
            metrics=emitter.metrics.pending_metrics(),
        )
        self._split_update = SplitUpdateNormalizer(
            self._store,
            self._scheduler,
            self._emit_deferred,
            correlation_window_seconds=correlation_window_seconds,
            sweep_interval_seconds=sweep_interval_seconds,
        )
        self._normalizers: Dict[WireProtocol, Normalizer] = {
            WireProtocol.MALFORMED: MalformedNormalizer(),
            WireProtocol.CONTROL: ControlNormalizer(),
            WireProtocol.SIMPLE: SimpleProtocolNormalizer(
                update_heuristic=update_heuristic
            ),
            WireProtocol.CANAL_ARRAY: CanalArrayNormalizer(
                update_heuristic=update_heuristic
            ),
        }
        self._deferred: List[CanonicalEvent] = []

    @property
    def metrics(self) -> ConsumerMetrics:
        return self._emitter.metrics

    @property
    def store(self) -> PendingDeleteStore:
        return self._store

    def handle(self, message: RawMessage) -> List[CanonicalEvent]:
        """Process one message to completion and return the events it emitted."""
        started_at = self._clock()
        self.metrics.inc_messages()
        try:
            detection = self._detector.detect(message)
            if detection.protocol is WireProtocol.SPLIT_UPDATE:
                events = self._split_update.normalize(
                    detection, started_at=started_at
                )
            else:
                events = self._normalizers[detection.protocol].normalize(detection)
        except Exception:  # noqa: BLE001 - a bad message must not stop the engine
            logger.exception(
                "error processing CDC message (partition=%s offset=%s)",
                message.partition,
                message.offset,
            )
            self._emitter.record_error(started_at)
            return []

        for event in events:
            self._emitter.emit(event, started_at)
        return events

    def run_pending(self) -> List[CanonicalEvent]:
        """Run due timers and return the events they emitted."""
        self._scheduler.run_due()
        emitted, self._deferred = self._deferred, []
        return emitted

    def next_due(self) -> Optional[float]:
        return self._scheduler.next_due()

    def pending_count(self) -> int:
        return len(self._store)

    def close(self) -> None:
        """Drop parked deletes and their timers without emitting them."""
        self._split_update.close()
        self._scheduler.clear()

    def _emit_deferred(self, event: CanonicalEvent, started_at: float) -> None:
        self._emitter.emit(event, started_at)
        self._deferred.append(event)


__all__ = ["ReconciliationEngine"]
