"""Counters and gauges emitted by the entry lifecycle and reconciliation paths."""

from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Dict, Optional, Protocol

from .logging import get_logger

__all__ = [
    "InMemoryMetricsClient",
    "MetricsClient",
    "get_metrics_client",
    "reset_metrics_client",
]

logger = get_logger(__name__)


class MetricsClient(Protocol):  # pragma: no cover - interface only
    def increment(self, metric: str, value: int = 1) -> None: ...

    def gauge(self, metric: str, value: int) -> None: ...


class InMemoryMetricsClient(MetricsClient):
    """Process-local sink; counters accumulate, gauges keep the last value."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._counters: Counter[str] = Counter()
        self._gauges: Dict[str, int] = {}

    def increment(self, metric: str, value: int = 1) -> None:
        with self._lock:
            self._counters[metric] += value
        logger.debug("metric_incremented", extra={"metric": metric, "value": value})

    def gauge(self, metric: str, value: int) -> None:
        with self._lock:
            self._gauges[metric] = value
        logger.debug("metric_gauged", extra={"metric": metric, "value": value})

    def counter(self, metric: str) -> int:
        with self._lock:
            return self._counters[metric]

    def gauge_value(self, metric: str) -> Optional[int]:
        with self._lock:
            return self._gauges.get(metric)

    def snapshot(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {"counters": dict(self._counters), "gauges": dict(self._gauges)}


_client: Optional[InMemoryMetricsClient] = None
_client_lock = Lock()


def get_metrics_client() -> InMemoryMetricsClient:
    global _client
    with _client_lock:
        if _client is None:
            _client = InMemoryMetricsClient()
        return _client


def reset_metrics_client() -> None:
    """Drop the shared client so the next caller starts from zero."""

    global _client
    with _client_lock:
        _client = None
