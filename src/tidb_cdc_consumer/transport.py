"""Kafka transport helpers feeding raw messages to the reconciliation engine.

Only the thin edge lives here: subscription, polling, offset commits and a
retry policy for transport failures.  Partition assignment and rebalancing
are left to librdkafka.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Callable, Dict, Optional

from confluent_kafka import Consumer, KafkaException

from .config import Settings
from .events import RawMessage

logger = logging.getLogger(__name__)


class ExponentialBackoff:
    """Delay before the next poll after consecutive transport failures.

    The n-th consecutive failure waits ``base_interval * multiplier**n``,
    capped at ``max_interval``. With ``jitter`` the wait is drawn uniformly
    from zero up to that value so restarted consumers do not retry in step.
    """

    def __init__(
        self,
        base_interval: float = 0.1,
        multiplier: float = 2.0,
        max_interval: float = 30.0,
        *,
        jitter: bool = True,
        random_fn: Callable[[], float] = random.random,
    ) -> None:
        if base_interval <= 0 or max_interval < base_interval:
            raise ValueError("need 0 < base_interval <= max_interval")
        if multiplier < 1:
            raise ValueError("multiplier must be at least 1.0")
        self.base_interval = base_interval
        self.multiplier = multiplier
        self.max_interval = max_interval
        self.jitter = jitter
        self._random = random_fn
        self._failures = 0

    @property
    def failures(self) -> int:
        return self._failures

    def reset(self) -> None:
        self._failures = 0

    def next_delay(self) -> float:
        ceiling = min(
            self.base_interval * self.multiplier**self._failures, self.max_interval
        )
        self._failures += 1
        return ceiling * self._random() if self.jitter else ceiling


class KafkaMessageSource:
    """Polls a single topic and converts Kafka messages into RawMessage."""

    def __init__(
        self,
        settings: Settings,
        *,
        consumer_factory: Callable[[Dict[str, Any]], Any] = Consumer,
        on_error: Optional[Callable[[], None]] = None,
    ) -> None:
        self._settings = settings
        self._consumer_factory = consumer_factory
        self._on_error = on_error
        self._consumer: Optional[Any] = None
        self._last_message: Optional[Any] = None

    @property
    def started(self) -> bool:
        return self._consumer is not None

    def start(self) -> None:
        if self._consumer is not None:
            return
        consumer = self._consumer_factory(self._settings.kafka_config())
        consumer.subscribe([self._settings.kafka_topic])
        self._consumer = consumer
        logger.info(
            "subscribed to %s on %s as %s",
            self._settings.kafka_topic,
            ",".join(self._settings.kafka_brokers),
            self._settings.kafka_group_id,
        )

    def poll(self, timeout: Optional[float] = None) -> Optional[RawMessage]:
        """Return the next message, or None on timeout or a transport error.

        Raises KafkaException for fatal client errors so the caller can back off.
        """
        if self._consumer is None:
            raise RuntimeError("message source has not been started")
        wait = self._settings.kafka_poll_timeout_seconds if timeout is None else timeout
        msg = self._consumer.poll(wait)
        if msg is None:
            return None
        error = msg.error()
        if error is not None:
            logger.warning(
                "kafka error on %s[%s]: %s", msg.topic(), msg.partition(), error
            )
            if self._on_error is not None:
                self._on_error()
            if getattr(error, "fatal", lambda: False)():
                raise KafkaException(error)
            return None
        self._last_message = msg
        logger.debug(
            "received message from topic %s, partition %s", msg.topic(), msg.partition()
        )
        return RawMessage(
            key=msg.key(),
            value=msg.value(),
            partition=msg.partition() or 0,
            offset=msg.offset() or 0,
        )

    def commit(self) -> None:
        """Commit the offset of the last message handed out."""
        if self._consumer is None or self._last_message is None:
            return
        self._consumer.commit(message=self._last_message, asynchronous=False)
        self._last_message = None

    def close(self) -> None:
        consumer, self._consumer = self._consumer, None
        self._last_message = None
        if consumer is None:
            return
        try:
            consumer.close()
        except KafkaException as exc:
            logger.warning("error closing kafka consumer: %s", exc)


__all__ = [
    "ExponentialBackoff",
    "KafkaMessageSource",
]
