import json
import logging
from datetime import datetime, timezone

import pytest

from tidb_cdc_consumer.cdc.emitter import ConsumerMetrics, JsonlEventSink, OperationEmitter
from tidb_cdc_consumer.events import CanonicalEvent, Operation, WireProtocol

FIXED_NOW = datetime(2024, 5, 1, 12, 30, 0, tzinfo=timezone.utc)


def _event(**overrides) -> CanonicalEvent:
    fields = dict(
        table="users",
        schema="testdb",
        operation=Operation.UPDATE,
        protocol=WireProtocol.SIMPLE,
        data={"id": 1, "email": "new@x.com"},
        old_data={"id": 1, "email": "old@x.com"},
        record_id="1",
        commit_ts=42,
        partition=3,
        offset=17,
        key={"tbl": "users", "rid": "1"},
    )
    fields.update(overrides)
    return CanonicalEvent(**fields)


@pytest.mark.unit
def test_emit_builds_structured_record(clock, registry):
    records = []
    emitter = OperationEmitter(
        ConsumerMetrics(registry), records.append, clock=clock, wall_clock=lambda: FIXED_NOW
    )

    assert emitter.emit(_event(), started_at=clock()) is True
    assert records == [
        {
            "timestamp": "2024-05-01T12:30:00Z",
            "schema_name": "testdb",
            "table_name": "users",
            "operation_type": "UPDATE",
            "data": {"id": 1, "email": "new@x.com"},
            "old_data": {"id": 1, "email": "old@x.com"},
            "row_id": "1",
            "commit_ts": 42,
            "partition": 3,
            "offset": 17,
            "key": {"tbl": "users", "rid": "1"},
            "protocol": "simple",
        }
    ]
    labels = {"table_name": "users", "operation_type": "update"}
    assert registry.get_sample_value("cdc_events_total", labels) == 1.0
    assert registry.get_sample_value("cdc_processing_duration_seconds_count", labels) == 1.0


@pytest.mark.unit
def test_sink_failure_is_counted_as_error(clock, registry, caplog):
    def broken_sink(record):
        raise RuntimeError("disk on fire")

    metrics = ConsumerMetrics(registry)
    emitter = OperationEmitter(metrics, broken_sink, clock=clock)

    with caplog.at_level(logging.ERROR, logger="tidb_cdc_consumer.cdc.emitter"):
        assert emitter.emit(_event()) is False

    assert "failed to emit" in caplog.text
    assert metrics.snapshot()["errors_total"] == 1
    assert metrics.event_count("error", "error") == 1
    assert registry.get_sample_value("cdc_errors_total") == 1.0
    assert metrics.event_count("users", "update") == 0
    assert metrics.snapshot()["events_total"] == 1
    assert (
        registry.get_sample_value(
            "cdc_events_total", {"table_name": "users", "operation_type": "update"}
        )
        is None
    )


@pytest.mark.unit
def test_record_error_observes_duration(clock, registry):
    metrics = ConsumerMetrics(registry)
    emitter = OperationEmitter(metrics, lambda record: None, clock=clock)
    started = clock()
    clock.advance(0.25)

    emitter.record_error(started)

    labels = {"table_name": "error", "operation_type": "error"}
    assert registry.get_sample_value("cdc_events_total", labels) == 1.0
    assert registry.get_sample_value(
        "cdc_processing_duration_seconds_sum", labels
    ) == pytest.approx(0.25)


@pytest.mark.unit
def test_metrics_namespace_prefixes_collectors(registry):
    metrics = ConsumerMetrics(registry, namespace="tidb")
    metrics.inc_messages(3)
    metrics.inc_messages(0)
    assert registry.get_sample_value("tidb_cdc_messages_consumed_total") == 3.0
    assert metrics.snapshot() == {"messages_total": 3}


@pytest.mark.unit
def test_pending_metrics_adapter_forwards_store_metrics(registry):
    metrics = ConsumerMetrics(registry)
    adapter = metrics.pending_metrics()

    adapter.set_gauge("pending_depth", 4)
    adapter.inc("expired", 2)
    adapter.inc("dropped")
    adapter.inc("captured")

    assert registry.get_sample_value("cdc_pending_deletes") == 4.0
    assert registry.get_sample_value("cdc_pending_deletes_expired_total") == 2.0
    assert registry.get_sample_value("cdc_pending_deletes_dropped_total") == 1.0
    assert adapter.counters["captured"] == 1


@pytest.mark.unit
def test_jsonl_sink_appends_lines(tmp_path, caplog):
    path = tmp_path / "events.jsonl"
    sink = JsonlEventSink(path)

    with caplog.at_level(logging.INFO, logger="tidb_cdc_consumer.cdc.emitter"):
        sink({"table_name": "users", "operation_type": "INSERT"})
        sink({"table_name": "orders", "operation_type": "DELETE"})

    lines = path.read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["table_name"] for line in lines] == ["users", "orders"]
    assert "CDC event:" in caplog.text


@pytest.mark.unit
def test_jsonl_sink_logs_write_failures(tmp_path, caplog):
    sink = JsonlEventSink(tmp_path / "missing" / "events.jsonl")
    with caplog.at_level(logging.ERROR, logger="tidb_cdc_consumer.cdc.emitter"):
        sink({"table_name": "users"})
    assert "failed to append CDC event" in caplog.text
