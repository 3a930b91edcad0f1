"""Metrics and structured-log side effects for canonical events."""

from __future__ import annotations

import json
import logging
import time
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Optional, Protocol, Tuple

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from ..events import CanonicalEvent
from .pending import PendingMetrics

logger = logging.getLogger(__name__)

ERROR_LABEL = "error"
LABELS = ("table_name", "operation_type")


class EventSink(Protocol):
    """Receives one structured record per emitted event."""

    def __call__(self, record: Dict[str, object]) -> None: ...


class ConsumerMetrics:
    """Prometheus collectors for the consumer plus an in-process snapshot."""

    def __init__(
        self,
        registry: Optional[CollectorRegistry] = None,
        *,
        namespace: str = "",
    ) -> None:
        registry = registry if registry is not None else REGISTRY
        prefix = f"{namespace}_cdc" if namespace else "cdc"
        self._events = Counter(
            f"{prefix}_events",
            "Total number of CDC events processed",
            LABELS,
            registry=registry,
        )
        self._duration = Histogram(
            f"{prefix}_processing_duration_seconds",
            "Duration of CDC event processing",
            LABELS,
            registry=registry,
        )
        self._messages = Counter(
            f"{prefix}_messages_consumed",
            "Raw messages handed to the reconciliation engine",
            registry=registry,
        )
        self._errors = Counter(
            f"{prefix}_errors",
            "CDC processing errors",
            registry=registry,
        )
        self._pending = Gauge(
            f"{prefix}_pending_deletes",
            "Deletes waiting for a matching insert",
            registry=registry,
        )
        self._pending_expired = Counter(
            f"{prefix}_pending_deletes_expired",
            "Pending deletes discarded by the stale sweep",
            registry=registry,
        )
        self._pending_dropped = Counter(
            f"{prefix}_pending_deletes_dropped",
            "Pending deletes dropped because the store was full",
            registry=registry,
        )
        self._snapshot: Dict[str, float] = defaultdict(float)
        self._event_counts: Dict[Tuple[str, str], int] = defaultdict(int)

    def inc_event(self, table: str, operation: str) -> None:
        self._events.labels(table_name=table, operation_type=operation).inc()
        self._event_counts[(table, operation)] += 1
        self._snapshot["events_total"] += 1

    def observe_duration(self, table: str, operation: str, seconds: float) -> None:
        self._duration.labels(table_name=table, operation_type=operation).observe(
            max(seconds, 0.0)
        )

    def inc_messages(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._messages.inc(amount)
        self._snapshot["messages_total"] += amount

    def inc_errors(self, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._errors.inc(amount)
        self._snapshot["errors_total"] += amount

    def set_pending(self, value: float) -> None:
        self._pending.set(value)
        self._snapshot["pending_deletes"] = value

    def inc_pending_expired(self, amount: int = 1) -> None:
        self._pending_expired.inc(amount)
        self._snapshot["pending_expired_total"] += amount

    def inc_pending_dropped(self, amount: int = 1) -> None:
        self._pending_dropped.inc(amount)
        self._snapshot["pending_dropped_total"] += amount

    def event_count(self, table: str, operation: str) -> int:
        return self._event_counts.get((table, operation), 0)

    def snapshot(self) -> Dict[str, float]:
        return dict(self._snapshot)

    def pending_metrics(self) -> "PendingMetricsAdapter":
        return PendingMetricsAdapter(self)


class PendingMetricsAdapter(PendingMetrics):
    """Adapter bridging PendingDeleteStore metrics to ConsumerMetrics."""

    def __init__(self, metrics: ConsumerMetrics) -> None:
        super().__init__()
        self._metrics = metrics

    def inc(self, name: str, value: int = 1) -> None:
        super().inc(name, value)
        if name == "expired":
            self._metrics.inc_pending_expired(value)
        elif name == "dropped":
            self._metrics.inc_pending_dropped(value)

    def set_gauge(self, name: str, value: float) -> None:
        super().set_gauge(name, value)
        if name == "pending_depth":
            self._metrics.set_pending(value)


class JsonlEventSink:
    """Logs each event record and optionally appends it to a JSON-lines file."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path is not None else None

    def __call__(self, record: Dict[str, object]) -> None:
        line = json.dumps(record, ensure_ascii=False, default=str)
        logger.info("CDC event: %s", line)
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(line + "\n")
        except OSError as exc:
            logger.error("failed to append CDC event to %s: %s", self._path, exc)


class OperationEmitter:
    """Counts, logs and times every terminal canonical event.

    ``emit`` never raises: a failure while recording an event is logged and
    counted under the ``error`` label so the caller can move on to the next
    message.
    """

    def __init__(
        self,
        metrics: ConsumerMetrics,
        sink: Optional[EventSink] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._metrics = metrics
        self._sink = sink or JsonlEventSink()
        self._clock = clock
        self._wall_clock = wall_clock

    @property
    def metrics(self) -> ConsumerMetrics:
        return self._metrics

    def emit(self, event: CanonicalEvent, started_at: Optional[float] = None) -> bool:
        try:
            label = event.operation.label
            self._sink(event.to_record(self._wall_clock()))
            self._metrics.inc_event(event.table, label)
            if started_at is not None:
                self._metrics.observe_duration(
                    event.table, label, self._clock() - started_at
                )
        except Exception:  # noqa: BLE001 - emission failures must not stop consumption
            logger.exception(
                "failed to emit %s event for %s (partition=%s offset=%s)",
                getattr(event.operation, "value", event.operation),
                event.table,
                event.partition,
                event.offset,
            )
            self.record_error()
            return False
        return True

    def record_error(self, started_at: Optional[float] = None) -> None:
        try:
            self._metrics.inc_errors()
            self._metrics.inc_event(ERROR_LABEL, ERROR_LABEL)
            if started_at is not None:
                self._metrics.observe_duration(
                    ERROR_LABEL, ERROR_LABEL, self._clock() - started_at
                )
        except Exception:  # noqa: BLE001
            logger.exception("failed to record CDC error metrics")


__all__ = [
    "ConsumerMetrics",
    "ERROR_LABEL",
    "EventSink",
    "JsonlEventSink",
    "OperationEmitter",
    "PendingMetricsAdapter",
]
