"""SQLAlchemy Core table definitions for the entry ledger."""

from __future__ import annotations

from sqlalchemy import (
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
    func,
    true,
)

from ...infra.db.types import UTCDateTime

OPEN_ENTRY_INDEX_NAME = "uq_time_entries_open_owner"

metadata = MetaData()

owners = Table(
    "owners",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("api_key", String(128), nullable=False, unique=True),
    Column("created_at", UTCDateTime(), nullable=False, server_default=func.now()),
    sqlite_autoincrement=True,
)

projects = Table(
    "projects",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "owner_id",
        Integer,
        ForeignKey("owners.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("name", String(255), nullable=False),
    Column("target_hours", Float, nullable=False, server_default="0"),
    Column("color", String(16), nullable=True),
    Column("visible", Boolean, nullable=False, server_default=true()),
    Column("created_at", UTCDateTime(), nullable=False, server_default=func.now()),
    UniqueConstraint("owner_id", "name", name="uq_projects_owner_name"),
    sqlite_autoincrement=True,
)

time_entries = Table(
    "time_entries",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column(
        "owner_id",
        Integer,
        ForeignKey("owners.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column(
        "project_id",
        Integer,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
    ),
    Column("start_time", UTCDateTime(), nullable=False),
    Column("end_time", UTCDateTime(), nullable=True),
    Column("created_at", UTCDateTime(), nullable=False, server_default=func.now()),
    Index("ix_time_entries_owner_start", "owner_id", "start_time"),
    sqlite_autoincrement=True,
)

open_entry_index = Index(
    OPEN_ENTRY_INDEX_NAME,
    time_entries.c.owner_id,
    unique=True,
    postgresql_where=time_entries.c.end_time.is_(None),
    sqlite_where=time_entries.c.end_time.is_(None),
)
# Detached so create_all() never builds it ahead of reconciliation.
time_entries.indexes.discard(open_entry_index)
