"""Normalizers turning detected wire payloads into canonical events."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Optional, Protocol

from ..events import CanonicalEvent, Operation, WireProtocol
from ..identity import correlation_key, email_marks_update, extract_record_id
from .detector import UNKNOWN_TABLE, Detection
from .pending import PendingDelete, PendingDeleteStore
from .scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)

SIMPLE_TYPE_CODES: Dict[int, Operation] = {
    0: Operation.INSERT,
    1: Operation.UPDATE,
    2: Operation.DELETE,
}


class Normalizer(Protocol):
    """Converts one detected message into zero or more canonical events."""

    def normalize(self, detection: Detection) -> List[CanonicalEvent]: ...


class DeferredEmitter(Protocol):
    """Callback receiving events whose emission was deferred by a timer."""

    def __call__(self, event: CanonicalEvent, started_at: float) -> None: ...


def _as_row(value: object) -> Optional[Dict[str, object]]:
    if isinstance(value, dict):
        return value
    return None


def _apply_update_heuristic(
    operation: Operation, row: Optional[Dict[str, object]], enabled: bool
) -> Operation:
    if enabled and operation is Operation.INSERT and email_marks_update(row):
        return Operation.UPDATE
    return operation


class MalformedNormalizer:
    """Reports undecodable messages as a single PARSE_ERROR event."""

    def normalize(self, detection: Detection) -> List[CanonicalEvent]:
        return [
            CanonicalEvent(
                table=UNKNOWN_TABLE,
                operation=Operation.PARSE_ERROR,
                protocol=WireProtocol.MALFORMED,
                record_id=detection.key_record_id,
                partition=detection.partition,
                offset=detection.offset,
                key=detection.key,
            )
        ]


class ControlNormalizer:
    """Watermark/bootstrap messages: counted, never reconciled."""

    def normalize(self, detection: Detection) -> List[CanonicalEvent]:
        payload = detection.payload
        return [
            CanonicalEvent(
                table=detection.table,
                operation=Operation.from_tag(detection.operation_tag),
                protocol=WireProtocol.CONTROL,
                data=_as_row(payload.get("data")),
                commit_ts=payload.get("commitTs"),
                partition=detection.partition,
                offset=detection.offset,
                key=detection.key,
            )
        ]


class SimpleProtocolNormalizer:
    """Handles ``{schema, table, type: 0|1|2, data, old?}`` payloads."""

    def __init__(self, *, update_heuristic: bool = True) -> None:
        self._update_heuristic = update_heuristic

    def normalize(self, detection: Detection) -> List[CanonicalEvent]:
        payload = detection.payload
        code = payload.get("type")
        operation = Operation.UNKNOWN
        if isinstance(code, int) and not isinstance(code, bool):
            operation = SIMPLE_TYPE_CODES.get(code, Operation.UNKNOWN)

        data = _as_row(payload.get("data"))
        old_data = _as_row(payload.get("old")) if operation is Operation.UPDATE else None
        operation = _apply_update_heuristic(operation, data, self._update_heuristic)

        schema = payload.get("schema")
        return [
            CanonicalEvent(
                table=detection.table,
                schema=str(schema) if schema is not None else None,
                operation=operation,
                protocol=WireProtocol.SIMPLE,
                data=data,
                old_data=old_data,
                record_id=extract_record_id(data) or detection.key_record_id,
                commit_ts=payload.get("commitTs"),
                partition=detection.partition,
                offset=detection.offset,
                key=detection.key,
            )
        ]


class CanalArrayNormalizer:
    """Fans a Canal-JSON batch out into one event per row image."""

    def __init__(self, *, update_heuristic: bool = True) -> None:
        self._update_heuristic = update_heuristic

    def normalize(self, detection: Detection) -> List[CanonicalEvent]:
        payload = detection.payload
        rows = payload.get("data") or []
        base_operation = Operation.from_tag(detection.operation_tag)
        old_rows = payload.get("old")
        if not isinstance(old_rows, list) or len(old_rows) != len(rows):
            old_rows = None
        schema = payload.get("database")

        events: List[CanonicalEvent] = []
        for index, raw_row in enumerate(rows):
            row = _as_row(raw_row)
            if row is None:
                logger.debug(
                    "skipping non-object row %d in canal batch (partition=%s offset=%s)",
                    index,
                    detection.partition,
                    detection.offset,
                )
                continue
            old_data = None
            if old_rows is not None and base_operation in (
                Operation.UPDATE,
                Operation.DELETE,
            ):
                old_data = _as_row(old_rows[index])
            events.append(
                CanonicalEvent(
                    table=detection.table,
                    schema=schema if isinstance(schema, str) else None,
                    operation=_apply_update_heuristic(
                        base_operation, row, self._update_heuristic
                    ),
                    protocol=WireProtocol.CANAL_ARRAY,
                    data=row,
                    old_data=old_data,
                    record_id=extract_record_id(row) or detection.key_record_id,
                    partition=detection.partition,
                    offset=detection.offset,
                    key=detection.key,
                )
            )
        return events


class SplitUpdateNormalizer:
    """Rebuilds UPDATEs that arrive as a DELETE followed by an INSERT.

    A DELETE with an identity is parked in the pending store and a finalize
    task is scheduled `correlation_window_seconds` later.  An INSERT for the
    same ``table_recordId`` with an equal commit timestamp claims the entry
    and the pair is emitted as one UPDATE; otherwise the finalize task claims
    it and emits the DELETE on its own.  Whichever side removes the entry
    first decides the outcome, the other one finds nothing.
    """

    def __init__(
        self,
        store: PendingDeleteStore,
        scheduler: Scheduler,
        emit_deferred: DeferredEmitter,
        *,
        correlation_window_seconds: float = 0.5,
        sweep_interval_seconds: float = 30.0,
    ) -> None:
        if correlation_window_seconds <= 0:
            raise ValueError("correlation_window_seconds must be positive")
        self._store = store
        self._scheduler = scheduler
        self._emit_deferred = emit_deferred
        self._window = correlation_window_seconds
        self._clock = scheduler.clock
        self._timers: Dict[str, ScheduledTask] = {}
        self._sweep_task = scheduler.call_every(
            sweep_interval_seconds, self.sweep, name="pending-delete-sweep"
        )

    @property
    def store(self) -> PendingDeleteStore:
        return self._store

    def timer_count(self) -> int:
        """Finalize tasks still tracked for parked deletes."""
        return len(self._timers)

    def normalize(
        self, detection: Detection, *, started_at: Optional[float] = None
    ) -> List[CanonicalEvent]:
        payload = detection.payload
        operation = Operation.from_tag(detection.operation_tag)
        data = _as_row(payload.get("data"))
        old_data = _as_row(payload.get("old"))
        event = CanonicalEvent(
            table=detection.table,
            operation=operation,
            protocol=WireProtocol.SPLIT_UPDATE,
            data=data,
            old_data=old_data,
            commit_ts=payload.get("commitTs"),
            partition=detection.partition,
            offset=detection.offset,
            key=detection.key,
        )

        if operation is Operation.DELETE and old_data is not None:
            begun = started_at if started_at is not None else self._clock()
            return self._on_delete(event, begun, detection.key_record_id)
        if operation is Operation.INSERT and data is not None:
            return self._on_insert(event, detection.key_record_id)

        # Anything else passes through untouched; unknown shapes keep the payload.
        if operation is Operation.UNKNOWN and data is None:
            event = replace(event, data=dict(payload))
        record_id = extract_record_id(data or old_data) or detection.key_record_id
        return [replace(event, record_id=record_id)]

    def _on_delete(
        self, event: CanonicalEvent, started_at: float, key_record_id: Optional[str]
    ) -> List[CanonicalEvent]:
        record_id = extract_record_id(event.old_data)
        if record_id is None:
            logger.debug(
                "delete on %s has no identity - emitting immediately", event.table
            )
            return [replace(event, record_id=key_record_id)]

        key = correlation_key(event.table, record_id)
        commit_ts = event.commit_ts
        self._store.put(
            PendingDelete(
                key=key,
                commit_ts=commit_ts,
                captured_at=self._clock(),
                old_data=dict(event.old_data or {}),
                event=replace(event, record_id=record_id),
                started_at=started_at,
            )
        )
        superseded = self._timers.pop(key, None)
        if superseded is not None:
            superseded.cancel()
        task = self._scheduler.call_later(
            self._window,
            lambda: self._finalize(key, commit_ts, task),
            name=f"finalize:{key}",
        )
        self._timers[key] = task
        logger.debug(
            "parked delete %s (commit_ts=%r) for %.3fs", key, commit_ts, self._window
        )
        return []

    def _on_insert(
        self, event: CanonicalEvent, key_record_id: Optional[str]
    ) -> List[CanonicalEvent]:
        record_id = extract_record_id(event.data)
        if record_id is None:
            return [replace(event, record_id=key_record_id)]

        key = correlation_key(event.table, record_id)
        pending = self._store.claim(key, event.commit_ts)
        if pending is None:
            return [replace(event, record_id=record_id)]

        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        logger.debug("delete+insert on %s collapsed into update", key)
        return [
            replace(
                event,
                operation=Operation.UPDATE,
                old_data=pending.old_data,
                record_id=record_id,
            )
        ]

    def _finalize(
        self, key: str, commit_ts: object, task: ScheduledTask
    ) -> Optional[CanonicalEvent]:
        if self._timers.get(key) is task:
            del self._timers[key]
        pending = self._store.claim(key, commit_ts)
        if pending is None:
            return None
        self._emit_deferred(pending.event, pending.started_at)
        return pending.event

    def sweep(self) -> None:
        """Drop stale pending deletes; never emits."""
        for entry in self._store.sweep():
            timer = self._timers.pop(entry.key, None)
            if timer is not None:
                timer.cancel()

    def close(self) -> None:
        self._sweep_task.cancel()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        dropped = self._store.clear()
        if dropped:
            logger.info("dropping %d pending delete(s) on shutdown", dropped)


__all__ = [
    "CanalArrayNormalizer",
    "ControlNormalizer",
    "DeferredEmitter",
    "MalformedNormalizer",
    "Normalizer",
    "SIMPLE_TYPE_CODES",
    "SimpleProtocolNormalizer",
    "SplitUpdateNormalizer",
]
