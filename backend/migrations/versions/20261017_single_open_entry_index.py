"""Repair duplicate open entries, then enforce one open entry per owner.

Revision ID: 20261017_single_open_entry
Revises: 20261017_time_entry_tables
Create Date: 2026-10-17
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261017_single_open_entry"
down_revision = "20261017_time_entry_tables"
branch_labels = None
depends_on = None

INDEX_NAME = "uq_time_entries_open_owner"

# Open entries sharing the kept entry's start cannot be closed at that start
# (end must follow start), so they are deleted first.
REMOVE_SAME_START_DUPLICATES = sa.text(
    """
    DELETE FROM time_entries
    WHERE end_time IS NULL
      AND start_time = (
        SELECT MAX(kept.start_time) FROM time_entries AS kept
        WHERE kept.owner_id = time_entries.owner_id AND kept.end_time IS NULL
      )
      AND id < (
        SELECT MAX(kept.id) FROM time_entries AS kept
        WHERE kept.owner_id = time_entries.owner_id
          AND kept.end_time IS NULL
          AND kept.start_time = time_entries.start_time
      )
    """
)

# Keeps each owner's latest-started open entry (highest id on ties) and
# closes the others at its start. The kept row is never updated, so the
# correlated lookups return the same row for every candidate.
RECONCILE_OPEN_ENTRIES = sa.text(
    """
    UPDATE time_entries
    SET end_time = (
        SELECT kept.start_time FROM time_entries AS kept
        WHERE kept.owner_id = time_entries.owner_id AND kept.end_time IS NULL
        ORDER BY kept.start_time DESC, kept.id DESC
        LIMIT 1
    )
    WHERE end_time IS NULL
      AND id <> (
        SELECT kept.id FROM time_entries AS kept
        WHERE kept.owner_id = time_entries.owner_id AND kept.end_time IS NULL
        ORDER BY kept.start_time DESC, kept.id DESC
        LIMIT 1
      )
    """
)


def upgrade() -> None:
    op.execute(REMOVE_SAME_START_DUPLICATES)
    op.execute(RECONCILE_OPEN_ENTRIES)
    op.create_index(
        INDEX_NAME,
        "time_entries",
        ["owner_id"],
        unique=True,
        postgresql_where=sa.text("end_time IS NULL"),
        sqlite_where=sa.text("end_time IS NULL"),
    )


def downgrade() -> None:
    op.drop_index(INDEX_NAME, table_name="time_entries")
