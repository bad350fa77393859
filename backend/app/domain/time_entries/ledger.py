"""Entry ledger adapters: durable time-entry storage with transaction scopes."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from itertools import count
from threading import RLock
from typing import (
    Any,
    ContextManager,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
)

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from ...infra.db import get_engine
from ...infra.logging import get_logger
from . import schema
from .types import ConflictError, NotFoundError, Project, TimeEntry, utcnow

__all__ = [
    "EntryLedger",
    "InMemoryEntryLedger",
    "LedgerTransaction",
    "OpenEntryConstraintViolation",
    "SqlEntryLedger",
    "build_entry_ledger",
]

logger = get_logger(__name__)


class OpenEntryConstraintViolation(Exception):
    """Storage rejected a write that would leave two open entries for an owner."""

    def __init__(self, owner_id: Optional[int] = None) -> None:
        super().__init__(
            f"owner {owner_id} already has an open entry"
            if owner_id is not None
            else "owner already has an open entry"
        )
        self.owner_id = owner_id


class LedgerTransaction(Protocol):  # pragma: no cover - interface only
    """Handle valid only inside :meth:`EntryLedger.transaction`."""

    def get_project(self, owner_id: int, project_id: int) -> Optional[Project]: ...

    def get_entry(self, owner_id: int, entry_id: int) -> Optional[TimeEntry]: ...

    def get_open_entry(self, owner_id: int) -> Optional[TimeEntry]: ...

    def list_open_entries(self, owner_id: int) -> List[TimeEntry]: ...

    def owners_with_multiple_open_entries(self) -> List[int]: ...

    def insert_entry(
        self,
        *,
        owner_id: int,
        project_id: int,
        start: datetime,
        end: Optional[datetime],
    ) -> TimeEntry: ...

    def save_entry(self, entry: TimeEntry) -> TimeEntry: ...

    def close_open_entry(
        self, owner_id: int, entry_id: int, at: datetime
    ) -> Optional[TimeEntry]: ...

    def delete_entry(self, owner_id: int, entry_id: int) -> Optional[TimeEntry]: ...


class EntryLedger(Protocol):  # pragma: no cover - interface only
    """Persistence abstraction consumed by :class:`TimeEntryService`."""

    def transaction(self) -> ContextManager[LedgerTransaction]: ...

    def list_entries(
        self, owner_id: int, *, since: Optional[datetime] = None
    ) -> List[TimeEntry]: ...

    def current_open_entry(self, owner_id: int) -> Optional[TimeEntry]: ...

    def create_owner(self, api_key: str) -> int: ...

    def find_owner_by_api_key(self, api_key: str) -> Optional[int]: ...

    def create_project(
        self,
        owner_id: int,
        name: str,
        *,
        target_hours: float = 0.0,
        color: Optional[str] = None,
        visible: bool = True,
    ) -> Project: ...

    def create_schema(self) -> None: ...

    def enable_open_entry_constraint(self) -> None: ...


def _newest_first(entries: List[TimeEntry]) -> List[TimeEntry]:
    return sorted(entries, key=lambda entry: (entry.start, entry.id), reverse=True)


class _InMemoryTransaction(LedgerTransaction):
    def __init__(self, ledger: "InMemoryEntryLedger") -> None:
        self._ledger = ledger
        self._entries: Dict[int, TimeEntry] = dict(ledger._entries)

    def get_project(self, owner_id: int, project_id: int) -> Optional[Project]:
        project = self._ledger._projects.get(project_id)
        if project is None or project.owner_id != owner_id:
            return None
        return project

    def get_entry(self, owner_id: int, entry_id: int) -> Optional[TimeEntry]:
        entry = self._entries.get(entry_id)
        if entry is None or entry.owner_id != owner_id:
            return None
        return self._ledger._with_project_name(entry)

    def get_open_entry(self, owner_id: int) -> Optional[TimeEntry]:
        open_entries = self.list_open_entries(owner_id)
        return open_entries[0] if open_entries else None

    def list_open_entries(self, owner_id: int) -> List[TimeEntry]:
        return _newest_first(
            [
                self._ledger._with_project_name(entry)
                for entry in self._entries.values()
                if entry.owner_id == owner_id and entry.end is None
            ]
        )

    def owners_with_multiple_open_entries(self) -> List[int]:
        counts: Dict[int, int] = {}
        for entry in self._entries.values():
            if entry.end is None:
                counts[entry.owner_id] = counts.get(entry.owner_id, 0) + 1
        return sorted(owner for owner, total in counts.items() if total > 1)

    def insert_entry(
        self,
        *,
        owner_id: int,
        project_id: int,
        start: datetime,
        end: Optional[datetime],
    ) -> TimeEntry:
        entry = TimeEntry(
            id=self._ledger._allocate_id(),
            owner_id=owner_id,
            project_id=project_id,
            start=start,
            end=end,
            created_at=utcnow(),
        )
        self._write(entry)
        return self._ledger._with_project_name(entry)

    def save_entry(self, entry: TimeEntry) -> TimeEntry:
        current = self._entries.get(entry.id)
        if current is None or current.owner_id != entry.owner_id:
            raise KeyError(f"Time entry {entry.id} not found")
        stored = replace(
            current, project_id=entry.project_id, start=entry.start, end=entry.end
        )
        self._write(stored)
        return self._ledger._with_project_name(stored)

    def close_open_entry(
        self, owner_id: int, entry_id: int, at: datetime
    ) -> Optional[TimeEntry]:
        current = self._entries.get(entry_id)
        if current is None or current.owner_id != owner_id or current.end is not None:
            return None
        stored = replace(current, end=at)
        self._write(stored)
        return self._ledger._with_project_name(stored)

    def delete_entry(self, owner_id: int, entry_id: int) -> Optional[TimeEntry]:
        current = self._entries.get(entry_id)
        if current is None or current.owner_id != owner_id:
            return None
        del self._entries[entry_id]
        return self._ledger._with_project_name(current)

    def _write(self, entry: TimeEntry) -> None:
        if self._ledger._enforce_single_open and entry.end is None:
            for other in self._entries.values():
                if (
                    other.id != entry.id
                    and other.owner_id == entry.owner_id
                    and other.end is None
                ):
                    raise OpenEntryConstraintViolation(entry.owner_id)
        self._entries[entry.id] = entry


class InMemoryEntryLedger(EntryLedger):
    """In-memory ledger used for tests and local development.

    Transactions run one at a time under a lock and work on a private copy
    that replaces the committed state only when the scope exits cleanly.
    """

    def __init__(self, *, enforce_single_open: bool = True) -> None:
        self._lock = RLock()
        self._entries: Dict[int, TimeEntry] = {}
        self._projects: Dict[int, Project] = {}
        self._owners: Dict[str, int] = {}
        self._entry_ids = count(1)
        self._project_ids = count(1)
        self._owner_ids = count(1)
        self._enforce_single_open = enforce_single_open

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        with self._lock:
            tx = _InMemoryTransaction(self)
            yield tx
            self._entries = tx._entries

    def list_entries(
        self, owner_id: int, *, since: Optional[datetime] = None
    ) -> List[TimeEntry]:
        with self._lock:
            entries = [
                self._with_project_name(entry)
                for entry in self._entries.values()
                if entry.owner_id == owner_id
                and (since is None or entry.start >= since)
            ]
        return _newest_first(entries)

    def current_open_entry(self, owner_id: int) -> Optional[TimeEntry]:
        with self._lock:
            open_entries = [
                self._with_project_name(entry)
                for entry in self._entries.values()
                if entry.owner_id == owner_id and entry.end is None
            ]
        ordered = _newest_first(open_entries)
        return ordered[0] if ordered else None

    def create_owner(self, api_key: str) -> int:
        with self._lock:
            if api_key in self._owners:
                raise ConflictError(
                    "API key already registered", details={"field": "api_key"}
                )
            owner_id = next(self._owner_ids)
            self._owners[api_key] = owner_id
            return owner_id

    def find_owner_by_api_key(self, api_key: str) -> Optional[int]:
        with self._lock:
            return self._owners.get(api_key)

    def create_project(
        self,
        owner_id: int,
        name: str,
        *,
        target_hours: float = 0.0,
        color: Optional[str] = None,
        visible: bool = True,
    ) -> Project:
        with self._lock:
            if owner_id not in self._owners.values():
                raise NotFoundError(
                    f"Owner {owner_id} not found", details={"owner_id": owner_id}
                )
            for project in self._projects.values():
                if project.owner_id == owner_id and project.name == name:
                    raise ConflictError(
                        "Project with this name already exists",
                        details={"name": name},
                    )
            project = Project(
                id=next(self._project_ids),
                owner_id=owner_id,
                name=name,
                target_hours=float(target_hours),
                color=color,
                visible=visible,
            )
            self._projects[project.id] = project
            return project

    def create_schema(self) -> None:
        return None

    def enable_open_entry_constraint(self) -> None:
        with self._lock:
            self._enforce_single_open = True

    def _allocate_id(self) -> int:
        return next(self._entry_ids)

    def _with_project_name(self, entry: TimeEntry) -> TimeEntry:
        project = self._projects.get(entry.project_id)
        return replace(entry, project_name=project.name if project else None)


class _SqlLedgerTransaction(LedgerTransaction):
    def __init__(self, conn: Connection) -> None:
        self._conn = conn

    def get_project(self, owner_id: int, project_id: int) -> Optional[Project]:
        table = schema.projects
        row = (
            self._conn.execute(
                select(table).where(
                    table.c.id == project_id, table.c.owner_id == owner_id
                )
            )
            .mappings()
            .first()
        )
        return _row_to_project(row) if row is not None else None

    def get_entry(self, owner_id: int, entry_id: int) -> Optional[TimeEntry]:
        stmt = (
            _entry_select()
            .where(
                schema.time_entries.c.id == entry_id,
                schema.time_entries.c.owner_id == owner_id,
            )
            .with_for_update(of=schema.time_entries)
        )
        row = self._conn.execute(stmt).mappings().first()
        return _row_to_entry(row) if row is not None else None

    def get_open_entry(self, owner_id: int) -> Optional[TimeEntry]:
        open_entries = self.list_open_entries(owner_id)
        return open_entries[0] if open_entries else None

    def list_open_entries(self, owner_id: int) -> List[TimeEntry]:
        table = schema.time_entries
        stmt = (
            _entry_select()
            .where(table.c.owner_id == owner_id, table.c.end_time.is_(None))
            .order_by(table.c.start_time.desc(), table.c.id.desc())
            .with_for_update(of=table)
        )
        return [_row_to_entry(row) for row in self._conn.execute(stmt).mappings()]

    def owners_with_multiple_open_entries(self) -> List[int]:
        table = schema.time_entries
        stmt = (
            select(table.c.owner_id)
            .where(table.c.end_time.is_(None))
            .group_by(table.c.owner_id)
            .having(func.count() > 1)
            .order_by(table.c.owner_id)
        )
        return [int(owner_id) for owner_id in self._conn.execute(stmt).scalars()]

    def insert_entry(
        self,
        *,
        owner_id: int,
        project_id: int,
        start: datetime,
        end: Optional[datetime],
    ) -> TimeEntry:
        result = self._conn.execute(
            insert(schema.time_entries).values(
                owner_id=owner_id,
                project_id=project_id,
                start_time=start,
                end_time=end,
                created_at=utcnow(),
            )
        )
        entry_id = int(result.inserted_primary_key[0])
        entry = self.get_entry(owner_id, entry_id)
        if entry is None:  # pragma: no cover
            raise RuntimeError("failed to insert time entry")
        return entry

    def save_entry(self, entry: TimeEntry) -> TimeEntry:
        table = schema.time_entries
        result = self._conn.execute(
            update(table)
            .where(table.c.id == entry.id, table.c.owner_id == entry.owner_id)
            .values(
                project_id=entry.project_id,
                start_time=entry.start,
                end_time=entry.end,
            )
        )
        if result.rowcount == 0:
            raise KeyError(f"Time entry {entry.id} not found")
        stored = self.get_entry(entry.owner_id, entry.id)
        if stored is None:  # pragma: no cover
            raise RuntimeError(f"failed to reload time entry {entry.id}")
        return stored

    def close_open_entry(
        self, owner_id: int, entry_id: int, at: datetime
    ) -> Optional[TimeEntry]:
        table = schema.time_entries
        result = self._conn.execute(
            update(table)
            .where(
                table.c.id == entry_id,
                table.c.owner_id == owner_id,
                table.c.end_time.is_(None),
            )
            .values(end_time=at)
        )
        if result.rowcount == 0:
            return None
        return self.get_entry(owner_id, entry_id)

    def delete_entry(self, owner_id: int, entry_id: int) -> Optional[TimeEntry]:
        entry = self.get_entry(owner_id, entry_id)
        if entry is None:
            return None
        table = schema.time_entries
        self._conn.execute(
            delete(table).where(table.c.id == entry_id, table.c.owner_id == owner_id)
        )
        return entry


class SqlEntryLedger(EntryLedger):
    """SQLAlchemy-backed ledger (PostgreSQL in deployments, SQLite in tests)."""

    def __init__(self, engine: Optional[Engine] = None) -> None:
        self._engine = engine or get_engine()

    @property
    def engine(self) -> Engine:
        return self._engine

    @contextmanager
    def transaction(self) -> Iterator[LedgerTransaction]:
        try:
            with self._engine.begin() as conn:
                yield _SqlLedgerTransaction(conn)
        except IntegrityError as exc:
            if _is_open_entry_violation(exc):
                raise OpenEntryConstraintViolation() from exc
            raise

    def list_entries(
        self, owner_id: int, *, since: Optional[datetime] = None
    ) -> List[TimeEntry]:
        table = schema.time_entries
        stmt = _entry_select().where(table.c.owner_id == owner_id)
        if since is not None:
            stmt = stmt.where(table.c.start_time >= since)
        stmt = stmt.order_by(table.c.start_time.desc(), table.c.id.desc())
        with self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [_row_to_entry(row) for row in rows]

    def current_open_entry(self, owner_id: int) -> Optional[TimeEntry]:
        table = schema.time_entries
        stmt = (
            _entry_select()
            .where(table.c.owner_id == owner_id, table.c.end_time.is_(None))
            .order_by(table.c.start_time.desc(), table.c.id.desc())
            .limit(1)
        )
        with self._engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return _row_to_entry(row) if row is not None else None

    def create_owner(self, api_key: str) -> int:
        stmt = insert(schema.owners).values(api_key=api_key, created_at=utcnow())
        try:
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
        except IntegrityError as exc:
            raise ConflictError(
                "API key already registered", details={"field": "api_key"}
            ) from exc
        return int(result.inserted_primary_key[0])

    def find_owner_by_api_key(self, api_key: str) -> Optional[int]:
        table = schema.owners
        with self._engine.connect() as conn:
            owner_id = conn.execute(
                select(table.c.id).where(table.c.api_key == api_key)
            ).scalar_one_or_none()
        return int(owner_id) if owner_id is not None else None

    def create_project(
        self,
        owner_id: int,
        name: str,
        *,
        target_hours: float = 0.0,
        color: Optional[str] = None,
        visible: bool = True,
    ) -> Project:
        stmt = insert(schema.projects).values(
            owner_id=owner_id,
            name=name,
            target_hours=float(target_hours),
            color=color,
            visible=visible,
            created_at=utcnow(),
        )
        try:
            with self._engine.begin() as conn:
                result = conn.execute(stmt)
        except IntegrityError as exc:
            raise ConflictError(
                "Project with this name already exists", details={"name": name}
            ) from exc
        return Project(
            id=int(result.inserted_primary_key[0]),
            owner_id=owner_id,
            name=name,
            target_hours=float(target_hours),
            color=color,
            visible=visible,
        )

    def create_schema(self) -> None:
        schema.metadata.create_all(self._engine)

    def enable_open_entry_constraint(self) -> None:
        schema.open_entry_index.create(bind=self._engine, checkfirst=True)
        logger.info(
            "open_entry_constraint_enabled",
            extra={"index": schema.OPEN_ENTRY_INDEX_NAME},
        )


def build_entry_ledger(*, prefer_sql: bool = True) -> EntryLedger:
    """Factory that returns the desired ledger implementation."""

    if prefer_sql:
        return SqlEntryLedger()
    return InMemoryEntryLedger()


def _entry_select():
    entries = schema.time_entries
    projects = schema.projects
    return select(
        entries.c.id,
        entries.c.owner_id,
        entries.c.project_id,
        entries.c.start_time,
        entries.c.end_time,
        entries.c.created_at,
        projects.c.name.label("project_name"),
    ).select_from(entries.join(projects, entries.c.project_id == projects.c.id))


def _row_to_entry(row: Mapping[str, Any]) -> TimeEntry:
    return TimeEntry(
        id=int(row["id"]),
        owner_id=int(row["owner_id"]),
        project_id=int(row["project_id"]),
        start=row["start_time"],
        end=row["end_time"],
        project_name=row.get("project_name"),
        created_at=row.get("created_at"),
    )


def _row_to_project(row: Mapping[str, Any]) -> Project:
    return Project(
        id=int(row["id"]),
        owner_id=int(row["owner_id"]),
        name=row["name"],
        target_hours=float(row["target_hours"] or 0.0),
        color=row.get("color"),
        visible=bool(row["visible"]),
    )


def _is_open_entry_violation(exc: IntegrityError) -> bool:
    message = str(exc.orig)
    return (
        schema.OPEN_ENTRY_INDEX_NAME in message
        or "time_entries.owner_id" in message
    )
