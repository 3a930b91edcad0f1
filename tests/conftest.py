"""Test session configuration.

Loads the project `.env` once so tests see the same defaults as a local run,
and provides the virtual clock and an engine wired to an isolated Prometheus
registry.
"""

from __future__ import annotations

from typing import Dict, List

import pytest
from dotenv import load_dotenv
from prometheus_client import CollectorRegistry

from tidb_cdc_consumer.cdc import ConsumerMetrics, OperationEmitter, ReconciliationEngine


class ManualClock:
    def __init__(self, start: float = 0.0) -> None:
        self._current = start

    def advance(self, seconds: float) -> float:
        self._current += seconds
        return self._current

    def __call__(self) -> float:
        return self._current


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    # Load once per test session; no error if .env is absent.
    load_dotenv()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def records() -> List[Dict[str, object]]:
    return []


@pytest.fixture
def engine(clock, registry, records) -> ReconciliationEngine:
    emitter = OperationEmitter(ConsumerMetrics(registry), records.append, clock=clock)
    return ReconciliationEngine(emitter, clock=clock)
