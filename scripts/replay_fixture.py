"""
Replay a JSON-lines fixture of raw CDC messages through the reconciliation engine.

Each fixture line is an object ``{"key": ..., "value": ..., "partition": int,
"offset": int, "delay_ms": float}``.  ``key``/``value`` may be JSON objects or
raw strings; ``delay_ms`` advances a virtual clock before the message is
handled so correlation windows can be exercised without sleeping.  Events are
printed as JSON lines followed by a per-operation summary.

Example:
  python scripts/replay_fixture.py tests/fixtures/split_update.jsonl --window-ms 500
"""

from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from prometheus_client import CollectorRegistry

from tidb_cdc_consumer.cdc import ConsumerMetrics, OperationEmitter, ReconciliationEngine
from tidb_cdc_consumer.events import RawMessage


class VirtualClock:
    def __init__(self) -> None:
        self.now = 0.0

    def advance(self, seconds: float) -> None:
        self.now += max(seconds, 0.0)

    def __call__(self) -> float:
        return self.now


def _encode(part: Any) -> Optional[bytes]:
    if part is None:
        return None
    if isinstance(part, str):
        return part.encode("utf-8")
    return json.dumps(part).encode("utf-8")


def _read_fixture(path: Path) -> Iterator[Dict[str, Any]]:
    with path.open(encoding="utf-8") as handle:
        for line_no, line in enumerate(handle, start=1):
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError as exc:
                raise SystemExit(f"{path}:{line_no}: invalid fixture line: {exc}")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[0].strip())
    parser.add_argument("fixture", type=Path, help="JSON-lines fixture file")
    parser.add_argument("--window-ms", type=float, default=500.0)
    parser.add_argument("--stale-seconds", type=float, default=5.0)
    parser.add_argument("--sweep-seconds", type=float, default=30.0)
    parser.add_argument(
        "--no-update-heuristic",
        action="store_true",
        help="disable the email-pattern INSERT->UPDATE reclassification",
    )
    args = parser.parse_args(argv)

    clock = VirtualClock()
    records: List[Dict[str, object]] = []
    emitter = OperationEmitter(
        ConsumerMetrics(CollectorRegistry()), records.append, clock=clock
    )
    engine = ReconciliationEngine(
        emitter,
        clock=clock,
        correlation_window_seconds=args.window_ms / 1000.0,
        stale_after_seconds=args.stale_seconds,
        sweep_interval_seconds=args.sweep_seconds,
        update_heuristic=not args.no_update_heuristic,
    )

    for index, entry in enumerate(_read_fixture(args.fixture)):
        clock.advance(float(entry.get("delay_ms", 0.0)) / 1000.0)
        engine.run_pending()
        engine.handle(
            RawMessage(
                key=_encode(entry.get("key")),
                value=_encode(entry.get("value")),
                partition=int(entry.get("partition", 0)),
                offset=int(entry.get("offset", index)),
            )
        )
    # Let every outstanding correlation window close.
    next_due = engine.next_due()
    while next_due is not None and engine.pending_count():
        clock.advance(next_due - clock())
        engine.run_pending()
        next_due = engine.next_due()

    for record in records:
        print(json.dumps(record, ensure_ascii=False, default=str))
    summary = Counter(str(record["operation_type"]) for record in records)
    print(
        "summary: " + ", ".join(f"{op}={count}" for op, count in sorted(summary.items())),
        file=sys.stderr,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
