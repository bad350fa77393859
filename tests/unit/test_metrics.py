import pytest

from backend.app.domain.time_entries import InMemoryEntryLedger, reconcile_open_entries
from backend.app.infra.metrics import (
    InMemoryMetricsClient,
    get_metrics_client,
    reset_metrics_client,
)

pytestmark = [pytest.mark.metrics]


@pytest.fixture(autouse=True)
def _fresh_client():
    reset_metrics_client()
    yield
    reset_metrics_client()


def test_counters_accumulate_and_gauges_overwrite() -> None:
    client = InMemoryMetricsClient()

    client.increment("time_entries_started_total")
    client.increment("time_entries_started_total", 2)
    client.gauge("time_entries_reconciled_closed", 4)
    client.gauge("time_entries_reconciled_closed", 1)

    assert client.counter("time_entries_started_total") == 3
    assert client.counter("never_seen") == 0
    assert client.gauge_value("time_entries_reconciled_closed") == 1
    assert client.gauge_value("never_seen") is None
    assert client.snapshot() == {
        "counters": {"time_entries_started_total": 3},
        "gauges": {"time_entries_reconciled_closed": 1},
    }


def test_shared_client_is_used_when_none_is_injected() -> None:
    shared = get_metrics_client()
    assert get_metrics_client() is shared

    reconcile_open_entries(InMemoryEntryLedger())

    assert shared.gauge_value("time_entries_reconciled_closed") == 0
    reset_metrics_client()
    assert get_metrics_client() is not shared
