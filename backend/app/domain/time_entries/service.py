"""Time-entry lifecycle service: the only writer to the entry ledger."""

from __future__ import annotations

import math
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from ...config.loader import DEFAULT_LIST_WINDOW_DAYS, DEFAULT_MAX_START_ATTEMPTS
from ...infra.events import ChangeEventType, ChangeNotifier, get_change_notifier
from ...infra.logging import get_logger
from ...infra.metrics import MetricsClient, get_metrics_client
from .ledger import (
    EntryLedger,
    InMemoryEntryLedger,
    LedgerTransaction,
    OpenEntryConstraintViolation,
)
from .types import (
    UNSET,
    ConflictError,
    EntryPatch,
    InternalError,
    NotFoundError,
    TimeEntry,
    TimeEntryError,
    UnsetType,
    ValidationError,
    parse_identifier,
    parse_instant,
    utcnow,
)

logger = get_logger(__name__)

LIST_WINDOWS = ("week", "all")

InstantInput = Union[datetime, str]


class TimeEntryService:
    """Enforces one open entry per owner and keeps edited timelines consistent.

    Every mutation runs in exactly one ledger transaction and publishes one
    change event after the transaction commits.
    """

    def __init__(
        self,
        *,
        ledger: EntryLedger | None = None,
        notifier: ChangeNotifier | None = None,
        metrics: MetricsClient | None = None,
        max_start_attempts: int = DEFAULT_MAX_START_ATTEMPTS,
        list_window_days: int = DEFAULT_LIST_WINDOW_DAYS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if max_start_attempts < 1:
            raise ValueError("max_start_attempts must be at least 1")
        self._ledger = ledger or InMemoryEntryLedger()
        self._notifier = notifier or get_change_notifier()
        self._metrics = metrics or get_metrics_client()
        self._max_start_attempts = max_start_attempts
        self._list_window_days = list_window_days
        self._clock = clock

    @property
    def ledger(self) -> EntryLedger:
        return self._ledger

    @property
    def max_start_attempts(self) -> int:
        return self._max_start_attempts

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def start_entry(
        self,
        owner_id: int,
        project_id: Any,
        *,
        at: InstantInput | None = None,
    ) -> TimeEntry:
        """Close the running entry (if any) and open a new one at ``at``."""

        project_id = parse_identifier(project_id, "project_id")
        started_at = self._instant_or_now(at, "at")

        attempt = 0
        while True:
            attempt += 1
            try:
                with self._transaction(translate_conflicts=False) as tx:
                    if tx.get_project(owner_id, project_id) is None:
                        raise _project_not_found(project_id)
                    stopped: Optional[TimeEntry] = None
                    current = tx.get_open_entry(owner_id)
                    if current is not None:
                        if current.start >= started_at:
                            raise ConflictError(
                                "The running entry starts after the requested start",
                                details={
                                    "entry_id": current.id,
                                    "start": started_at.isoformat(),
                                },
                            )
                        stopped = tx.close_open_entry(owner_id, current.id, started_at)
                    entry = tx.insert_entry(
                        owner_id=owner_id,
                        project_id=project_id,
                        start=started_at,
                        end=None,
                    )
                break
            except OpenEntryConstraintViolation as exc:
                self._safe_metrics_increment("time_entries_start_conflict_retries_total")
                logger.warning(
                    "time_entry_start_conflict",
                    extra={
                        "owner_id": owner_id,
                        "attempt": attempt,
                        "max_attempts": self._max_start_attempts,
                    },
                )
                if attempt >= self._max_start_attempts:
                    raise ConflictError(
                        "Another entry was started concurrently",
                        details={"owner_id": owner_id, "attempts": attempt},
                    ) from exc

        self._record(
            owner_id,
            ChangeEventType.ENTRY_STARTED,
            action="started",
            payload={
                "entry": entry.to_payload(),
                "stopped_entry": stopped.to_payload() if stopped else None,
            },
            log_extra={
                "entry_id": entry.id,
                "stopped_entry_id": stopped.id if stopped else None,
                "attempts": attempt,
            },
        )
        return entry

    def import_closed(
        self,
        owner_id: int,
        project_id: Any,
        start: InstantInput,
        end: InstantInput,
    ) -> TimeEntry:
        """Insert a finished interval without touching the running entry."""

        project_id = parse_identifier(project_id, "project_id")
        start_at = parse_instant(start, "start")
        end_at = parse_instant(end, "end")
        _validate_interval(start_at, end_at)

        with self._transaction() as tx:
            if tx.get_project(owner_id, project_id) is None:
                raise _project_not_found(project_id)
            entry = tx.insert_entry(
                owner_id=owner_id,
                project_id=project_id,
                start=start_at,
                end=end_at,
            )

        self._record(
            owner_id,
            ChangeEventType.ENTRY_UPDATED,
            action="imported",
            payload={"action": "imported", "entries": [entry.to_payload()]},
            log_extra={"entry_id": entry.id},
        )
        return entry

    def stop_entry(
        self,
        owner_id: int,
        entry_id: Any,
        *,
        at: InstantInput | None = None,
    ) -> TimeEntry:
        """Close an open entry; fails once the entry is already closed."""

        entry_id = parse_identifier(entry_id, "entry_id")
        stopped_at = self._instant_or_now(at, "at")

        with self._transaction() as tx:
            current = tx.get_entry(owner_id, entry_id)
            if current is None or current.end is not None:
                raise _entry_not_found(entry_id, "Time entry not found or already stopped")
            _validate_interval(current.start, stopped_at)
            stopped = tx.close_open_entry(owner_id, entry_id, stopped_at)
            if stopped is None:
                raise _entry_not_found(entry_id, "Time entry not found or already stopped")

        self._record(
            owner_id,
            ChangeEventType.ENTRY_STOPPED,
            action="stopped",
            payload={"entry": stopped.to_payload()},
            log_extra={"entry_id": entry_id},
        )
        return stopped

    def edit_entry(self, owner_id: int, entry_id: Any, patch: EntryPatch) -> TimeEntry:
        """Apply a typed patch to one entry."""

        entry_id = parse_identifier(entry_id, "entry_id")
        if patch.is_empty:
            raise ValidationError(
                "Either start, end or project_id must be provided",
                details={"fields": ["start", "end", "project_id"]},
            )

        with self._transaction() as tx:
            current = tx.get_entry(owner_id, entry_id)
            if current is None:
                raise _entry_not_found(entry_id)
            if patch.changes_project:
                if tx.get_project(owner_id, patch.project_id) is None:
                    raise _project_not_found(patch.project_id)
            updated = patch.apply(current)
            _validate_interval(updated.start, updated.end)
            self._ensure_can_reopen(tx, current, updated)
            stored = tx.save_entry(updated)

        self._record(
            owner_id,
            ChangeEventType.ENTRY_UPDATED,
            action="edited",
            payload={"action": "edited", "entries": [stored.to_payload()]},
            log_extra={"entry_id": entry_id},
        )
        return stored

    def shift_start(
        self,
        owner_id: int,
        entry_id: Any,
        delta_minutes: Any,
        *,
        linked_previous_entry_id: Any = None,
    ) -> List[TimeEntry]:
        """Move an entry's start earlier, optionally pulling the prior entry's end along.

        Returns the shifted entry first, followed by the linked entry when
        one was given.
        """

        entry_id = parse_identifier(entry_id, "entry_id")
        delta = _parse_shift(delta_minutes)
        previous_id = (
            parse_identifier(linked_previous_entry_id, "linked_previous_entry_id")
            if linked_previous_entry_id is not None
            else None
        )
        if previous_id == entry_id:
            raise ValidationError(
                "An entry cannot be linked to itself",
                details={"field": "linked_previous_entry_id"},
            )

        with self._transaction() as tx:
            current = tx.get_entry(owner_id, entry_id)
            if current is None:
                raise _entry_not_found(entry_id)
            shifted = current.with_bounds(
                start=_shifted_back(current.start, delta, "delta_minutes"),
                end=current.end,
            )
            _validate_interval(shifted.start, shifted.end)

            previous_shifted: Optional[TimeEntry] = None
            if previous_id is not None:
                previous = tx.get_entry(owner_id, previous_id)
                if previous is None:
                    raise _entry_not_found(previous_id)
                if previous.end is None:
                    raise ValidationError(
                        "The linked previous entry is still running",
                        details={"field": "linked_previous_entry_id"},
                    )
                previous_shifted = previous.with_bounds(
                    start=previous.start,
                    end=_shifted_back(
                        previous.end, delta, "linked_previous_entry_id"
                    ),
                )
                _validate_interval(
                    previous_shifted.start,
                    previous_shifted.end,
                    field="linked_previous_entry_id",
                )

            stored = [tx.save_entry(shifted)]
            if previous_shifted is not None:
                stored.append(tx.save_entry(previous_shifted))

        self._record(
            owner_id,
            ChangeEventType.ENTRY_UPDATED,
            action="shifted",
            payload={
                "action": "shifted",
                "entries": [entry.to_payload() for entry in stored],
            },
            log_extra={
                "entry_id": entry_id,
                "linked_previous_entry_id": previous_id,
                "delta_seconds": int(delta.total_seconds()),
            },
        )
        return stored

    def edit_linked(
        self,
        owner_id: int,
        entry_id: Any,
        new_start: InstantInput,
        new_end: Union[InstantInput, None, UnsetType] = UNSET,
        *,
        next_entry_id: Any = None,
        previous_entry_id: Any = None,
    ) -> List[TimeEntry]:
        """Move one entry's bounds and keep the adjacent rows contiguous.

        Neighbours follow the history listing's newest-first order:
        ``next_entry_id`` is the row below (the chronologically earlier
        entry, whose end follows a start change) and ``previous_entry_id``
        the row above (the later entry, whose start follows an end change).
        Returns the edited entry first, then any adjusted neighbours.
        """

        entry_id = parse_identifier(entry_id, "entry_id")
        start_at = parse_instant(new_start, "start")
        end_at: Union[datetime, None, UnsetType] = new_end
        if new_end is not UNSET and new_end is not None:
            end_at = parse_instant(new_end, "end")
        next_id = (
            parse_identifier(next_entry_id, "next_entry_id")
            if next_entry_id is not None
            else None
        )
        previous_id = (
            parse_identifier(previous_entry_id, "previous_entry_id")
            if previous_entry_id is not None
            else None
        )
        linked_ids = [linked for linked in (next_id, previous_id) if linked is not None]
        if entry_id in linked_ids or len(set(linked_ids)) != len(linked_ids):
            raise ValidationError(
                "Linked entries must be distinct from each other and the edited entry",
                details={"fields": ["next_entry_id", "previous_entry_id"]},
            )

        with self._transaction() as tx:
            current = tx.get_entry(owner_id, entry_id)
            if current is None:
                raise _entry_not_found(entry_id)
            updated = current.with_bounds(
                start=start_at,
                end=current.end if isinstance(end_at, UnsetType) else end_at,
            )
            _validate_interval(updated.start, updated.end)

            neighbours: List[TimeEntry] = []
            if next_id is not None and updated.start != current.start:
                earlier = tx.get_entry(owner_id, next_id)
                if earlier is None:
                    raise _entry_not_found(next_id)
                if earlier.start >= updated.start:
                    raise ConflictError(
                        "The next entry would end before it starts",
                        details={"entry_id": next_id, "field": "next_entry_id"},
                    )
                neighbours.append(
                    earlier.with_bounds(start=earlier.start, end=updated.start)
                )
            if (
                previous_id is not None
                and updated.end is not None
                and updated.end != current.end
            ):
                later = tx.get_entry(owner_id, previous_id)
                if later is None:
                    raise _entry_not_found(previous_id)
                if later.end is not None and updated.end >= later.end:
                    raise ConflictError(
                        "The previous entry would end before it starts",
                        details={"entry_id": previous_id, "field": "previous_entry_id"},
                    )
                neighbours.append(later.with_bounds(start=updated.end, end=later.end))

            # Neighbours first: a cascade may close the entry that blocks a reopen.
            adjusted = [tx.save_entry(neighbour) for neighbour in neighbours]
            self._ensure_can_reopen(tx, current, updated)
            stored = [tx.save_entry(updated), *adjusted]

        self._record(
            owner_id,
            ChangeEventType.ENTRY_UPDATED,
            action="linked_edited",
            payload={
                "action": "linked_edited",
                "entries": [entry.to_payload() for entry in stored],
            },
            log_extra={
                "entry_id": entry_id,
                "next_entry_id": next_id,
                "previous_entry_id": previous_id,
                "cascaded": len(stored) - 1,
            },
        )
        return stored

    def delete_entry(self, owner_id: int, entry_id: Any) -> TimeEntry:
        """Remove one entry; neighbours are left untouched."""

        entry_id = parse_identifier(entry_id, "entry_id")
        with self._transaction() as tx:
            removed = tx.delete_entry(owner_id, entry_id)
            if removed is None:
                raise _entry_not_found(entry_id)

        self._record(
            owner_id,
            ChangeEventType.ENTRY_DELETED,
            action="deleted",
            payload={"id": removed.id, "entry": removed.to_payload()},
            log_extra={"entry_id": entry_id},
        )
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_entries(self, owner_id: int, *, window: str = "week") -> List[TimeEntry]:
        if window not in LIST_WINDOWS:
            raise ValidationError(
                f"window must be one of {', '.join(LIST_WINDOWS)}",
                details={"field": "window", "value": window},
            )
        since = None
        if window == "week":
            since = self._clock() - timedelta(days=self._list_window_days)
        try:
            return self._ledger.list_entries(owner_id, since=since)
        except SQLAlchemyError as exc:
            raise _internal_error(exc, "list_entries") from exc

    def current_open_entry(self, owner_id: int) -> Optional[TimeEntry]:
        try:
            return self._ledger.current_open_entry(owner_id)
        except SQLAlchemyError as exc:
            raise _internal_error(exc, "current_open_entry") from exc

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @contextmanager
    def _transaction(
        self, *, translate_conflicts: bool = True
    ) -> Iterator[LedgerTransaction]:
        try:
            with self._ledger.transaction() as tx:
                yield tx
        except TimeEntryError:
            raise
        except OpenEntryConstraintViolation as exc:
            if not translate_conflicts:
                raise
            raise ConflictError(
                "Owner already has a running entry",
                details={"owner_id": exc.owner_id},
            ) from exc
        except SQLAlchemyError as exc:
            raise _internal_error(exc, "transaction") from exc

    @staticmethod
    def _ensure_can_reopen(
        tx: LedgerTransaction, current: TimeEntry, updated: TimeEntry
    ) -> None:
        if updated.end is not None or current.end is None:
            return
        running = tx.get_open_entry(current.owner_id)
        if running is not None and running.id != current.id:
            raise ConflictError(
                "Owner already has a running entry",
                details={"entry_id": current.id, "running_entry_id": running.id},
            )

    def _instant_or_now(self, value: InstantInput | None, field: str) -> datetime:
        if value is None:
            return self._clock()
        return parse_instant(value, field)

    def _record(
        self,
        owner_id: int,
        event_type: ChangeEventType,
        *,
        action: str,
        payload: Dict[str, Any],
        log_extra: Dict[str, Any],
    ) -> None:
        logger.info(
            f"time_entry_{action}",
            extra={"owner_id": owner_id, **log_extra},
        )
        self._safe_metrics_increment(f"time_entries_{action}_total")
        try:
            self._notifier.publish(owner_id, event_type, payload)
        except Exception:
            logger.exception(
                "change_event_publish_failed",
                extra={"owner_id": owner_id, "event_type": event_type.value},
            )

    def _safe_metrics_increment(self, metric: str, value: int = 1) -> None:
        try:
            self._metrics.increment(metric, value)
        except Exception:  # pragma: no cover
            logger.exception(
                "metrics_increment_failed",
                extra={"metric": metric, "value": value},
            )


def _validate_interval(
    start: datetime, end: Optional[datetime], *, field: str = "end"
) -> None:
    if end is not None and start >= end:
        raise ValidationError(
            "start must be before end",
            details={
                "field": field,
                "start": start.isoformat(),
                "end": end.isoformat(),
            },
        )


def _parse_shift(delta_minutes: Any) -> timedelta:
    if isinstance(delta_minutes, bool) or delta_minutes is None:
        raise ValidationError(
            "delta_minutes must be a positive number",
            details={"field": "delta_minutes"},
        )
    try:
        minutes = float(delta_minutes)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            "delta_minutes must be a positive number",
            details={"field": "delta_minutes"},
        ) from exc
    if not math.isfinite(minutes) or minutes <= 0:
        raise ValidationError(
            "delta_minutes must be a positive number",
            details={"field": "delta_minutes", "value": delta_minutes},
        )
    try:
        return timedelta(minutes=minutes)
    except OverflowError as exc:
        raise ValidationError(
            "delta_minutes is too large",
            details={"field": "delta_minutes", "value": delta_minutes},
        ) from exc


def _shifted_back(instant: datetime, delta: timedelta, field: str) -> datetime:
    try:
        return instant - delta
    except OverflowError as exc:
        raise ValidationError(
            "Shift moves the entry outside the supported date range",
            details={"field": field, "delta_seconds": delta.total_seconds()},
        ) from exc


def _entry_not_found(entry_id: int, message: str = "Time entry not found") -> NotFoundError:
    return NotFoundError(message, details={"entry_id": entry_id})


def _project_not_found(project_id: Any) -> NotFoundError:
    return NotFoundError("Project not found", details={"project_id": project_id})


def _internal_error(exc: SQLAlchemyError, operation: str) -> InternalError:
    logger.error(
        "time_entry_storage_failure",
        exc_info=exc,
        extra={"operation": operation},
    )
    return InternalError(
        "Storage failure", details={"operation": operation, "reason": str(exc)}
    )
