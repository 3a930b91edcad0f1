"""Canonical event types shared by the detector, normalizers and emitter."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional


class Operation(str, Enum):
    """Operation tag carried by every canonical event."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    WATERMARK = "WATERMARK"
    BOOTSTRAP = "BOOTSTRAP"
    UNKNOWN = "UNKNOWN"
    PARSE_ERROR = "PARSE_ERROR"

    @property
    def label(self) -> str:
        return self.value.lower()

    @classmethod
    def from_tag(cls, tag: object) -> "Operation":
        """Resolve a textual wire tag, falling back to UNKNOWN."""
        if not isinstance(tag, str):
            return cls.UNKNOWN
        try:
            operation = cls(tag.strip().upper())
        except ValueError:
            return cls.UNKNOWN
        if operation is cls.PARSE_ERROR:
            return cls.UNKNOWN
        return operation


CONTROL_OPERATIONS = frozenset({Operation.WATERMARK, Operation.BOOTSTRAP})


class WireProtocol(str, Enum):
    """Wire encodings recognised by the protocol detector."""

    SIMPLE = "simple"
    CANAL_ARRAY = "canal-json"
    SPLIT_UPDATE = "split-update"
    CONTROL = "control"
    MALFORMED = "parse-error"


@dataclass(frozen=True)
class RawMessage:
    """One message as delivered by the transport."""

    key: Optional[bytes]
    value: Optional[bytes]
    partition: int = 0
    offset: int = 0


@dataclass(frozen=True)
class CanonicalEvent:
    """Protocol-independent representation of a single row change."""

    table: str
    operation: Operation
    protocol: WireProtocol
    schema: Optional[str] = None
    data: Optional[Dict[str, object]] = None
    old_data: Optional[Dict[str, object]] = None
    record_id: Optional[str] = None
    commit_ts: object = None
    partition: int = 0
    offset: int = 0
    key: object = None

    def with_operation(self, operation: Operation) -> "CanonicalEvent":
        return replace(self, operation=operation)

    def to_record(self, captured_at: Optional[datetime] = None) -> Dict[str, object]:
        """Build the structured log record for this event."""
        moment = captured_at or datetime.now(timezone.utc)
        return {
            "timestamp": format_timestamp(moment),
            "schema_name": self.schema,
            "table_name": self.table,
            "operation_type": self.operation.value,
            "data": self.data,
            "old_data": self.old_data,
            "row_id": self.record_id,
            "commit_ts": self.commit_ts,
            "partition": self.partition,
            "offset": self.offset,
            "key": self.key,
            "protocol": self.protocol.value,
        }


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


__all__ = [
    "CONTROL_OPERATIONS",
    "CanonicalEvent",
    "Operation",
    "RawMessage",
    "WireProtocol",
    "format_timestamp",
]
