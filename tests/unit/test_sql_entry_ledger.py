"""SqlEntryLedger behaviour against a temporary SQLite database."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import timezone

import pytest

from backend.app.domain.time_entries import (
    ConflictError,
    EntryPatch,
    InMemoryEntryLedger,
    OpenEntryConstraintViolation,
    SqlEntryLedger,
    TimeEntryService,
    bootstrap_ledger,
    build_entry_ledger,
)
from backend.app.domain.time_entries import ledger as ledger_module
from backend.app.infra.db import build_engine
from tests.helpers.factories import (
    RecordingNotifier,
    StubMetrics,
    at,
    build_harness,
)

pytestmark = [pytest.mark.ledger]


@pytest.fixture()
def ledger(tmp_path) -> SqlEntryLedger:
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    sql_ledger = SqlEntryLedger(engine)
    bootstrap_ledger(sql_ledger, metrics=StubMetrics())
    yield sql_ledger
    engine.dispose()


def test_timestamps_round_trip_as_aware_utc(ledger) -> None:
    harness = build_harness(ledger)

    imported = harness.service.import_closed(
        harness.owner_id, harness.project.id, "2024-03-04T10:00:00+01:00", at(45)
    )

    stored = harness.entry(imported.id)
    assert stored.start == at(0)
    assert stored.end == at(45)
    assert stored.start.tzinfo is not None
    assert stored.start.utcoffset() == timezone.utc.utcoffset(None)
    assert stored.project_name == "Alpha"
    assert stored.to_payload()["start"] == "2024-03-04T09:00:00.000Z"


def test_start_close_then_open_in_one_transaction(ledger) -> None:
    harness = build_harness(ledger)
    first = harness.service.start_entry(harness.owner_id, harness.project.id, at=at(0))

    second = harness.service.start_entry(harness.owner_id, harness.project.id, at=at(30))

    assert harness.entry(first.id).end == at(30)
    assert harness.service.current_open_entry(harness.owner_id).id == second.id


def test_unique_index_rejects_second_open_entry(ledger) -> None:
    harness = build_harness(ledger)
    harness.service.start_entry(harness.owner_id, harness.project.id, at=at(0))

    with pytest.raises(OpenEntryConstraintViolation):
        with ledger.transaction() as tx:
            tx.insert_entry(
                owner_id=harness.owner_id,
                project_id=harness.project.id,
                start=at(10),
                end=None,
            )

    assert len([entry for entry in harness.entries() if entry.is_open]) == 1


def test_index_allows_open_entries_for_different_owners(ledger) -> None:
    harness = build_harness(ledger)

    harness.service.start_entry(harness.owner_id, harness.project.id, at=at(0))
    harness.service.start_entry(
        harness.other_owner_id, harness.other_project.id, at=at(0)
    )

    assert harness.service.current_open_entry(harness.other_owner_id) is not None


class _StaleReadLedger:
    """Hides the running entry from the first ``stale_reads`` lookups."""

    def __init__(self, inner: SqlEntryLedger, stale_reads: int) -> None:
        self._inner = inner
        self.stale_reads = stale_reads

    def __getattr__(self, name):
        return getattr(self._inner, name)

    @contextmanager
    def transaction(self):
        with self._inner.transaction() as tx:
            yield _StaleReadTransaction(tx, self)


class _StaleReadTransaction:
    def __init__(self, tx, ledger: _StaleReadLedger) -> None:
        self._tx = tx
        self._ledger = ledger

    def __getattr__(self, name):
        return getattr(self._tx, name)

    def get_open_entry(self, owner_id: int):
        if self._ledger.stale_reads:
            self._ledger.stale_reads -= 1
            return None
        return self._tx.get_open_entry(owner_id)


def test_service_translates_index_violation_to_conflict(ledger) -> None:
    harness = build_harness(ledger)
    closed = harness.closed(0, 30)
    harness.service.start_entry(harness.owner_id, harness.project.id, at=at(60))
    service = TimeEntryService(
        ledger=_StaleReadLedger(ledger, stale_reads=1),
        notifier=RecordingNotifier(),
        metrics=StubMetrics(),
        clock=harness.clock,
    )

    with pytest.raises(ConflictError):
        service.edit_entry(harness.owner_id, closed.id, EntryPatch(end=None))

    assert harness.entry(closed.id).end == at(30)


def test_lost_race_is_retried_against_the_index(ledger) -> None:
    harness = build_harness(ledger)
    first = harness.service.start_entry(harness.owner_id, harness.project.id, at=at(0))
    metrics = StubMetrics()
    service = TimeEntryService(
        ledger=_StaleReadLedger(ledger, stale_reads=1),
        notifier=RecordingNotifier(),
        metrics=metrics,
        clock=harness.clock,
    )

    second = service.start_entry(harness.owner_id, harness.project.id, at=at(30))

    assert metrics.count("time_entries_start_conflict_retries_total") == 1
    assert harness.entry(first.id).end == at(30)
    assert [entry.id for entry in harness.entries() if entry.is_open] == [second.id]


def test_lost_race_surfaces_conflict_when_attempts_exhausted(ledger) -> None:
    harness = build_harness(ledger)
    first = harness.service.start_entry(harness.owner_id, harness.project.id, at=at(0))
    service = TimeEntryService(
        ledger=_StaleReadLedger(ledger, stale_reads=3),
        notifier=RecordingNotifier(),
        metrics=StubMetrics(),
        max_start_attempts=3,
        clock=harness.clock,
    )

    with pytest.raises(ConflictError):
        service.start_entry(harness.owner_id, harness.project.id, at=at(30))

    assert [entry.id for entry in harness.entries()] == [first.id]
    assert harness.entry(first.id).is_open


class _FailingInsertLedger:
    def __init__(self, inner: SqlEntryLedger) -> None:
        self._inner = inner

    def __getattr__(self, name):
        return getattr(self._inner, name)

    @contextmanager
    def transaction(self):
        with self._inner.transaction() as tx:
            yield _FailingInsertTransaction(tx)


class _FailingInsertTransaction:
    def __init__(self, tx) -> None:
        self._tx = tx

    def __getattr__(self, name):
        return getattr(self._tx, name)

    def insert_entry(self, **kwargs):
        raise RuntimeError("injected failure")


def test_injected_failure_rolls_back_close(ledger) -> None:
    harness = build_harness(ledger)
    first = harness.service.start_entry(harness.owner_id, harness.project.id, at=at(0))
    service = TimeEntryService(
        ledger=_FailingInsertLedger(ledger),
        notifier=RecordingNotifier(),
        metrics=StubMetrics(),
        clock=harness.clock,
    )

    with pytest.raises(RuntimeError):
        service.start_entry(harness.owner_id, harness.project.id, at=at(30))

    assert harness.entry(first.id).is_open
    assert len(harness.entries()) == 1


def test_shift_start_commits_both_rows(ledger) -> None:
    harness = build_harness(ledger)
    earlier = harness.closed(0, 30)
    later = harness.closed(30, 60)

    harness.service.shift_start(
        harness.owner_id, later.id, 15, linked_previous_entry_id=earlier.id
    )

    assert harness.entry(earlier.id).end == at(15)
    assert harness.entry(later.id).start == at(15)


def test_identifiers_are_not_reused_after_delete(ledger) -> None:
    harness = build_harness(ledger)
    first = harness.closed(0, 30)
    harness.service.delete_entry(harness.owner_id, first.id)

    second = harness.closed(30, 60)

    assert second.id > first.id


def test_owner_and_project_uniqueness(ledger) -> None:
    owner_id = ledger.create_owner("unique-key")

    with pytest.raises(ConflictError):
        ledger.create_owner("unique-key")
    ledger.create_project(owner_id, "Focus", target_hours=5, color="#fff")
    with pytest.raises(ConflictError):
        ledger.create_project(owner_id, "Focus")
    assert ledger.find_owner_by_api_key("unique-key") == owner_id
    assert ledger.find_owner_by_api_key("missing") is None


def test_list_entries_since_filter(ledger) -> None:
    harness = build_harness(ledger)
    old = harness.closed(0, 30)
    recent = harness.closed(60, 90)

    entries = ledger.list_entries(harness.owner_id, since=at(45))

    assert [entry.id for entry in entries] == [recent.id]
    assert {entry.id for entry in ledger.list_entries(harness.owner_id)} == {
        old.id,
        recent.id,
    }


def test_build_entry_ledger_selects_implementation(tmp_path, monkeypatch) -> None:
    engine = build_engine(f"sqlite:///{tmp_path / 'factory.db'}")
    monkeypatch.setattr(ledger_module, "get_engine", lambda: engine)

    sql_ledger = build_entry_ledger()

    assert isinstance(sql_ledger, SqlEntryLedger)
    assert sql_ledger.engine is engine
    assert isinstance(build_entry_ledger(prefer_sql=False), InMemoryEntryLedger)
    engine.dispose()
