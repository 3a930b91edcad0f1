"""Reconciliation engine: protocol detection, normalization and emission."""

from .detector import Detection, ProtocolDetector
from .emitter import (
    ConsumerMetrics,
    EventSink,
    JsonlEventSink,
    OperationEmitter,
    PendingMetricsAdapter,
)
from .engine import ReconciliationEngine
from .normalizers import (
    CanalArrayNormalizer,
    ControlNormalizer,
    MalformedNormalizer,
    Normalizer,
    SimpleProtocolNormalizer,
    SplitUpdateNormalizer,
)
from .pending import PendingDelete, PendingDeleteStore, PendingMetrics
from .scheduler import ScheduledTask, Scheduler

__all__ = [
    "CanalArrayNormalizer",
    "ConsumerMetrics",
    "ControlNormalizer",
    "Detection",
    "EventSink",
    "JsonlEventSink",
    "MalformedNormalizer",
    "Normalizer",
    "OperationEmitter",
    "PendingDelete",
    "PendingDeleteStore",
    "PendingMetrics",
    "PendingMetricsAdapter",
    "ProtocolDetector",
    "ReconciliationEngine",
    "ScheduledTask",
    "Scheduler",
    "SimpleProtocolNormalizer",
    "SplitUpdateNormalizer",
]
