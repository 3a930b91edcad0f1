"""Wire-format detection for raw CDC messages."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from ..events import CONTROL_OPERATIONS, Operation, RawMessage, WireProtocol

logger = logging.getLogger(__name__)

UNKNOWN_TABLE = "unknown"


@dataclass(frozen=True)
class Detection:
    """Result of classifying one raw message.

    `payload` is the decoded value object (empty for malformed messages) and
    `key` is either the decoded key object or the raw key text.
    """

    protocol: WireProtocol
    partition: int
    offset: int
    payload: Dict[str, object] = field(default_factory=dict)
    key: object = None
    key_table: Optional[str] = None
    key_record_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def table(self) -> str:
        table = self.payload.get("table")
        if isinstance(table, str) and table:
            return table
        return self.key_table or UNKNOWN_TABLE

    @property
    def operation_tag(self) -> object:
        tag = self.payload.get("type")
        if tag is None:
            tag = self.payload.get("op")
        return tag


class ProtocolDetector:
    """Classifies messages into one of the supported wire variants."""

    def detect(self, message: RawMessage) -> Detection:
        key, key_table, key_record_id = self._parse_key(message.key)
        try:
            payload = self._parse_value(message.value)
        except ValueError as exc:
            logger.warning(
                "received non-JSON message (partition=%s offset=%s key_present=%s): %s",
                message.partition,
                message.offset,
                message.key is not None,
                exc,
            )
            return Detection(
                protocol=WireProtocol.MALFORMED,
                partition=message.partition,
                offset=message.offset,
                key=key,
                key_table=key_table,
                key_record_id=key_record_id,
                error=str(exc),
            )

        protocol = self.classify(payload)
        logger.debug(
            "message partition=%s offset=%s classified as %s",
            message.partition,
            message.offset,
            protocol.value,
        )
        return Detection(
            protocol=protocol,
            partition=message.partition,
            offset=message.offset,
            payload=payload,
            key=key,
            key_table=key_table,
            key_record_id=key_record_id,
        )

    @staticmethod
    def classify(payload: Dict[str, object]) -> WireProtocol:
        if all(payload.get(name) is not None for name in ("schema", "table", "type")):
            return WireProtocol.SIMPLE
        if isinstance(payload.get("data"), list):
            return WireProtocol.CANAL_ARRAY
        tag = payload.get("type")
        if isinstance(tag, str) and Operation.from_tag(tag) in CONTROL_OPERATIONS:
            return WireProtocol.CONTROL
        return WireProtocol.SPLIT_UPDATE

    @staticmethod
    def _parse_key(
        raw: Optional[bytes],
    ) -> Tuple[object, Optional[str], Optional[str]]:
        if not raw:
            return None, None, None
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        try:
            parsed = json.loads(text)
        except (ValueError, RecursionError):
            return text, None, None
        if not isinstance(parsed, dict):
            return parsed, None, None
        table = _first_present(parsed, "tbl", "table")
        record_id = _first_present(parsed, "rid", "rowid")
        return (
            parsed,
            str(table) if table is not None else None,
            str(record_id) if record_id is not None else None,
        )

    @staticmethod
    def _parse_value(raw: Optional[bytes]) -> Dict[str, object]:
        if raw is None:
            raise ValueError("message has no value")
        if isinstance(raw, bytes):
            try:
                text = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise ValueError(f"value is not valid UTF-8: {exc}") from exc
        else:
            text = str(raw)
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ValueError(f"value is not valid JSON: {exc}") from exc
        except RecursionError as exc:
            raise ValueError("value is nested too deeply to decode") from exc
        if not isinstance(payload, dict):
            raise ValueError(
                f"value must be a JSON object, got {type(payload).__name__}"
            )
        return payload


def _first_present(mapping: Dict[str, object], *names: str) -> object:
    for name in names:
        value = mapping.get(name)
        if value is not None and value != "":
            return value
    return None


__all__ = ["Detection", "ProtocolDetector", "UNKNOWN_TABLE"]
