"""Runtime configuration helpers for the TiDB CDC consumer."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv


@dataclass(frozen=True)
class Settings:
    """Immutable container for service configuration."""

    kafka_brokers: Tuple[str, ...]
    kafka_topic: str
    kafka_group_id: str
    kafka_client_id: str
    kafka_session_timeout_ms: int
    kafka_heartbeat_interval_ms: int
    kafka_poll_timeout_seconds: float
    kafka_auto_offset_reset: str
    prometheus_port: int
    correlation_window_seconds: float
    sweep_interval_seconds: float
    stale_after_seconds: float
    pending_cap: int
    update_heuristic: bool
    write_jsonl: bool
    event_log_path: Path
    log_level: str = "INFO"
    startup_delay_seconds: float = 0.0

    def kafka_config(self) -> dict:
        """Translate settings into a librdkafka consumer configuration."""
        return {
            "bootstrap.servers": ",".join(self.kafka_brokers),
            "group.id": self.kafka_group_id,
            "client.id": self.kafka_client_id,
            "session.timeout.ms": self.kafka_session_timeout_ms,
            "heartbeat.interval.ms": self.kafka_heartbeat_interval_ms,
            "auto.offset.reset": self.kafka_auto_offset_reset,
            "enable.auto.commit": False,
            "allow.auto.create.topics": False,
        }


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _coerce_offset_reset(value: Optional[str]) -> str:
    if value is None:
        return "earliest"
    normalized = value.strip().lower()
    if normalized in {"earliest", "latest"}:
        return normalized
    return "earliest"


def _coerce_log_level(value: Optional[str]) -> str:
    if value is None:
        return "INFO"
    normalized = value.strip().upper()
    if normalized in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
        return normalized
    return "INFO"


def _split_csv(value: Optional[str]) -> Tuple[str, ...]:
    if not value:
        return ()
    return tuple(entry.strip() for entry in value.split(",") if entry.strip())


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    kafka_brokers = _split_csv(os.getenv("KAFKA_BROKERS", "localhost:9092")) or (
        "localhost:9092",
    )
    kafka_topic = os.getenv("KAFKA_TOPIC", "tidb-cdc-events")
    kafka_group_id = os.getenv("KAFKA_GROUP_ID", "tidb-cdc-consumer-group")
    kafka_client_id = os.getenv("KAFKA_CLIENT_ID", "tidb-cdc-consumer")
    kafka_session_timeout_ms = int(os.getenv("KAFKA_SESSION_TIMEOUT_MS", "30000"))
    kafka_heartbeat_interval_ms = int(
        os.getenv("KAFKA_HEARTBEAT_INTERVAL_MS", "3000")
    )
    kafka_poll_timeout_seconds = float(os.getenv("KAFKA_POLL_TIMEOUT_SECONDS", "0.1"))
    kafka_auto_offset_reset = _coerce_offset_reset(os.getenv("KAFKA_AUTO_OFFSET_RESET"))

    prometheus_port = int(os.getenv("PROMETHEUS_PORT", "3001"))

    correlation_window_seconds = (
        float(os.getenv("CDC_CORRELATION_WINDOW_MS", "500")) / 1000.0
    )
    sweep_interval_seconds = float(os.getenv("CDC_SWEEP_INTERVAL_SECONDS", "30"))
    stale_after_seconds = float(os.getenv("CDC_STALE_AFTER_SECONDS", "5"))
    pending_cap = int(os.getenv("CDC_PENDING_CAP", "10000"))
    update_heuristic = _as_bool(os.getenv("CDC_UPDATE_HEURISTIC"), True)

    write_jsonl = _as_bool(os.getenv("WRITE_JSONL"), False)
    event_log_path = Path(os.getenv("EVENT_LOG_PATH", "cdc_events.jsonl"))
    log_level = _coerce_log_level(os.getenv("LOG_LEVEL"))
    startup_delay_seconds = float(os.getenv("STARTUP_DELAY_SECONDS", "0"))

    return Settings(
        kafka_brokers=kafka_brokers,
        kafka_topic=kafka_topic,
        kafka_group_id=kafka_group_id,
        kafka_client_id=kafka_client_id,
        kafka_session_timeout_ms=kafka_session_timeout_ms,
        kafka_heartbeat_interval_ms=kafka_heartbeat_interval_ms,
        kafka_poll_timeout_seconds=kafka_poll_timeout_seconds,
        kafka_auto_offset_reset=kafka_auto_offset_reset,
        prometheus_port=prometheus_port,
        correlation_window_seconds=correlation_window_seconds,
        sweep_interval_seconds=sweep_interval_seconds,
        stale_after_seconds=stale_after_seconds,
        pending_cap=pending_cap,
        update_heuristic=update_heuristic,
        write_jsonl=write_jsonl,
        event_log_path=event_log_path,
        log_level=log_level,
        startup_delay_seconds=startup_delay_seconds,
    )
