"""Kafka runtime wiring the reconciliation engine to its collaborators."""

from __future__ import annotations

import logging
import signal
import time
from threading import Event
from typing import Callable, Optional

from confluent_kafka import KafkaException
from prometheus_client import CollectorRegistry
from prometheus_client.exposition import ThreadingWSGIServer

from .cdc import (
    ConsumerMetrics,
    EventSink,
    JsonlEventSink,
    OperationEmitter,
    ReconciliationEngine,
)
from .config import Settings, load_settings
from .health import start_http_server
from .transport import ExponentialBackoff, KafkaMessageSource

logger = logging.getLogger(__name__)


def build_engine(
    settings: Settings,
    *,
    metrics: Optional[ConsumerMetrics] = None,
    sink: Optional[EventSink] = None,
    registry: Optional[CollectorRegistry] = None,
    clock: Callable[[], float] = time.monotonic,
) -> ReconciliationEngine:
    """Construct a reconciliation engine using application settings."""
    if metrics is None:
        metrics = ConsumerMetrics(registry)
    if sink is None:
        sink = JsonlEventSink(settings.event_log_path if settings.write_jsonl else None)
    emitter = OperationEmitter(metrics, sink, clock=clock)
    return ReconciliationEngine(
        emitter,
        clock=clock,
        correlation_window_seconds=settings.correlation_window_seconds,
        sweep_interval_seconds=settings.sweep_interval_seconds,
        stale_after_seconds=settings.stale_after_seconds,
        max_pending=settings.pending_cap,
        update_heuristic=settings.update_heuristic,
    )


class ConsumerRuntime:
    """Coordinates the Kafka source, the engine and the metrics endpoint."""

    def __init__(
        self,
        settings: Settings,
        *,
        engine: Optional[ReconciliationEngine] = None,
        source: Optional[KafkaMessageSource] = None,
        metrics_server: Optional[
            Callable[[int], Optional[ThreadingWSGIServer]]
        ] = start_http_server,
        sleep: Callable[[float], None] = time.sleep,
        backoff: Optional[ExponentialBackoff] = None,
    ) -> None:
        self.settings = settings
        self.engine = engine or build_engine(settings)
        self.source = source or KafkaMessageSource(
            settings, on_error=self.engine.metrics.inc_errors
        )
        self._metrics_server = metrics_server
        self._http_server: Optional[ThreadingWSGIServer] = None
        self._sleep = sleep
        self._backoff = backoff or ExponentialBackoff(
            base_interval=0.1, multiplier=2.0, max_interval=30.0
        )
        self._stop_event = Event()

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def run(self) -> None:
        self._start_metrics_server()
        if self.settings.startup_delay_seconds > 0:
            logger.info(
                "waiting %.1fs for dependencies before connecting",
                self.settings.startup_delay_seconds,
            )
            self._sleep(self.settings.startup_delay_seconds)
        try:
            self.source.start()
        except Exception:  # noqa: BLE001 - logged here, surfaced to the caller
            logger.exception("failed to start CDC consumer")
            self.engine.metrics.inc_errors()
            raise
        logger.info("CDC consumer started, listening to topic %s", self.settings.kafka_topic)
        try:
            while not self._stop_event.is_set():
                self.process_once()
        finally:
            self.close()

    def process_once(self) -> int:
        """Poll one message, hand it to the engine and run due timers."""
        try:
            message = self.source.poll()
        except KafkaException as exc:
            delay = self._backoff.next_delay()
            self.engine.metrics.inc_errors()
            logger.error(
                "kafka poll failed (%d in a row) - retrying in %.2fs: %s",
                self._backoff.failures,
                delay,
                exc,
            )
            self._sleep(delay)
            return 0
        self._backoff.reset()

        # Windows that closed while poll blocked are finalized before this message.
        emitted = len(self.engine.run_pending())
        if message is not None:
            emitted += len(self.engine.handle(message))
            try:
                self.source.commit()
            except KafkaException as exc:
                self.engine.metrics.inc_errors()
                logger.warning(
                    "offset commit failed for partition %s offset %s: %s",
                    message.partition,
                    message.offset,
                    exc,
                )
        emitted += len(self.engine.run_pending())
        return emitted

    def stop(self) -> None:
        logger.info("stopping CDC consumer")
        self._stop_event.set()

    def close(self) -> None:
        self.source.close()
        self.engine.close()
        server, self._http_server = self._http_server, None
        if server is not None:
            server.shutdown()
            server.server_close()
        logger.info("CDC consumer stopped")

    def _start_metrics_server(self) -> None:
        port = self.settings.prometheus_port
        if self._metrics_server is None or port <= 0:
            return
        self._http_server = self._metrics_server(port)
        logger.info("metrics and health server running on port %d", port)


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    settings = load_settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, settings.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    runtime = ConsumerRuntime(settings)

    def _handle_signal(signum, _frame) -> None:
        logger.info("%s received, shutting down gracefully", signal.Signals(signum).name)
        runtime.stop()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)
    runtime.run()
