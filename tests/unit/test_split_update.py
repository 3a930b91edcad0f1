import json

import pytest

from tidb_cdc_consumer.cdc.detector import ProtocolDetector
from tidb_cdc_consumer.cdc.emitter import ConsumerMetrics
from tidb_cdc_consumer.cdc.normalizers import SplitUpdateNormalizer
from tidb_cdc_consumer.cdc.pending import PendingDelete, PendingDeleteStore
from tidb_cdc_consumer.cdc.scheduler import Scheduler
from tidb_cdc_consumer.events import CanonicalEvent, Operation, RawMessage, WireProtocol


def _split(table, op, row, commit_ts=100, record_id=None, offset=0) -> RawMessage:
    payload = {"table": table, "type": op, "commitTs": commit_ts}
    payload["old" if op == "DELETE" else "data"] = row
    key = None
    if record_id is not None:
        key = json.dumps({"tbl": table, "rid": str(record_id)}).encode()
    return RawMessage(key=key, value=json.dumps(payload).encode(), offset=offset)


@pytest.mark.unit
def test_delete_then_insert_becomes_single_update(engine, clock, records):
    assert engine.handle(_split("users", "DELETE", {"id": 7, "email": "a@x.com"}, record_id=7)) == []
    assert records == []
    assert engine.pending_count() == 1

    clock.advance(0.02)
    (event,) = engine.handle(
        _split("users", "INSERT", {"id": 7, "email": "b@x.com"}, record_id=7, offset=1)
    )

    assert event.operation is Operation.UPDATE
    assert event.old_data == {"id": 7, "email": "a@x.com"}
    assert event.data == {"id": 7, "email": "b@x.com"}
    assert event.record_id == "7"
    assert event.protocol is WireProtocol.SPLIT_UPDATE
    assert engine.pending_count() == 0

    clock.advance(31)
    assert engine.run_pending() == []
    assert [record["operation_type"] for record in records] == ["UPDATE"]
    assert engine.metrics.event_count("users", "update") == 1
    assert engine.metrics.event_count("users", "delete") == 0
    assert engine.metrics.event_count("users", "insert") == 0


@pytest.mark.unit
def test_unmatched_delete_is_emitted_once_after_window(engine, clock, records, registry):
    engine.handle(_split("products", "DELETE", {"id": 3, "name": "Book"}, commit_ts=101))

    clock.advance(0.49)
    assert engine.run_pending() == []

    clock.advance(0.01)
    (event,) = engine.run_pending()
    assert event.operation is Operation.DELETE
    assert event.table == "products"
    assert event.old_data == {"id": 3, "name": "Book"}
    assert event.record_id == "3"
    assert records[-1]["operation_type"] == "DELETE"

    clock.advance(60)
    assert engine.run_pending() == []
    assert engine.metrics.event_count("products", "delete") == 1

    labels = {"table_name": "products", "operation_type": "delete"}
    duration = registry.get_sample_value("cdc_processing_duration_seconds_sum", labels)
    assert duration == pytest.approx(0.5)


@pytest.mark.unit
def test_commit_ts_mismatch_keeps_delete_and_insert_apart(engine, clock):
    engine.handle(_split("users", "DELETE", {"id": 7}, commit_ts=100))
    (insert,) = engine.handle(_split("users", "INSERT", {"id": 7}, commit_ts=101))
    assert insert.operation is Operation.INSERT

    clock.advance(0.5)
    (delete,) = engine.run_pending()
    assert delete.operation is Operation.DELETE
    assert engine.metrics.event_count("users", "update") == 0


@pytest.mark.unit
def test_insert_after_window_is_plain_insert(engine, clock):
    engine.handle(_split("users", "DELETE", {"id": 7}))
    clock.advance(0.6)
    (delete,) = engine.run_pending()
    (insert,) = engine.handle(_split("users", "INSERT", {"id": 7}))

    assert delete.operation is Operation.DELETE
    assert insert.operation is Operation.INSERT
    assert insert.old_data is None


@pytest.mark.unit
def test_delete_without_identity_is_emitted_immediately(engine):
    (event,) = engine.handle(_split("users", "DELETE", {"name": "nobody"}, record_id=12))
    assert event.operation is Operation.DELETE
    assert event.record_id == "12"
    assert engine.pending_count() == 0


@pytest.mark.unit
def test_correlation_is_scoped_per_table(engine, clock):
    engine.handle(_split("users", "DELETE", {"id": 1}))
    (insert,) = engine.handle(_split("products", "INSERT", {"id": 1}))
    assert insert.operation is Operation.INSERT
    assert engine.pending_count() == 1

    clock.advance(0.5)
    (delete,) = engine.run_pending()
    assert (delete.table, delete.operation) == ("users", Operation.DELETE)


@pytest.mark.unit
def test_superseding_delete_replaces_pending_entry(engine, clock):
    engine.handle(_split("users", "DELETE", {"id": 7, "v": 1}, commit_ts=100))
    clock.advance(0.3)
    engine.handle(_split("users", "DELETE", {"id": 7, "v": 2}, commit_ts=200))
    assert engine.pending_count() == 1

    clock.advance(0.3)
    assert engine.run_pending() == []

    (update,) = engine.handle(_split("users", "INSERT", {"id": 7, "v": 3}, commit_ts=200))
    assert update.operation is Operation.UPDATE
    assert update.old_data == {"id": 7, "v": 2}

    clock.advance(1)
    assert engine.run_pending() == []
    assert engine.metrics.event_count("users", "delete") == 0


@pytest.mark.unit
def test_sweep_discards_stale_entries_without_emitting(engine, clock, records):
    event = CanonicalEvent(
        table="users",
        operation=Operation.DELETE,
        protocol=WireProtocol.SPLIT_UPDATE,
        old_data={"id": 99},
        record_id="99",
    )
    engine.store.put(
        PendingDelete(
            key="users_99",
            commit_ts=None,
            captured_at=clock(),
            old_data={"id": 99},
            event=event,
        )
    )

    clock.advance(30)
    assert engine.run_pending() == []
    assert engine.pending_count() == 0
    assert records == []
    assert engine.metrics.snapshot()["pending_expired_total"] == 1


@pytest.mark.unit
def test_missing_commit_ts_on_both_sides_still_correlates(engine):
    engine.handle(_split("users", "DELETE", {"id": 5}, commit_ts=None))
    (event,) = engine.handle(_split("users", "INSERT", {"id": 5}, commit_ts=None))
    assert event.operation is Operation.UPDATE


@pytest.mark.unit
def test_close_drops_pending_deletes(engine, clock, records):
    engine.handle(_split("users", "DELETE", {"id": 7}))
    engine.close()
    clock.advance(1)
    assert engine.run_pending() == []
    assert engine.pending_count() == 0
    assert records == []


@pytest.mark.unit
def test_other_split_operations_pass_through(engine):
    (update,) = engine.handle(
        _split("users", "UPDATE", {"id": 4, "email": "x@x.com"}, record_id=4)
    )
    assert update.operation is Operation.UPDATE
    assert update.record_id == "4"

    (unknown,) = engine.handle(
        RawMessage(key=None, value=json.dumps({"table": "users", "op": "c"}).encode())
    )
    assert unknown.operation is Operation.UNKNOWN
    assert unknown.data == {"table": "users", "op": "c"}


@pytest.mark.unit
def test_evicted_deletes_do_not_leave_timers_behind(clock, registry):
    metrics = ConsumerMetrics(registry)
    store = PendingDeleteStore(
        stale_after_seconds=5, max_entries=1, clock=clock, metrics=metrics.pending_metrics()
    )
    scheduler = Scheduler(clock=clock)
    deferred = []
    normalizer = SplitUpdateNormalizer(
        store, scheduler, lambda event, started_at: deferred.append(event)
    )
    detector = ProtocolDetector()

    for record_id in range(100):
        detection = detector.detect(_split("users", "DELETE", {"id": record_id}))
        assert normalizer.normalize(detection) == []
    assert len(store) == 1

    clock.advance(10)
    scheduler.run_due()

    assert normalizer.timer_count() == 0
    assert len(store) == 0
    assert [event.record_id for event in deferred] == ["99"]
    assert metrics.snapshot()["pending_dropped_total"] == 99
