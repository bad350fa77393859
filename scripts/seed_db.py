"""Seed script for the time-entry ledger.

Creates the schema, one owner with a fresh API key and a few projects so
local API calls have something to start entries against.
"""

from __future__ import annotations

import argparse
from typing import List

from backend.app.domain.identity import generate_api_key
from backend.app.domain.time_entries import (
    Project,
    SqlEntryLedger,
    bootstrap_ledger,
)

SEED_PROJECTS = [
    {"name": "Client work", "target_hours": 20.0, "color": "#3b82f6"},
    {"name": "Internal", "target_hours": 8.0, "color": "#10b981"},
    {"name": "Learning", "target_hours": 4.0, "color": "#f59e0b"},
]


def seed_owner(ledger: SqlEntryLedger, api_key: str) -> tuple[int, List[Project]]:
    """Create an owner plus the sample projects; returns the owner id."""

    owner_id = ledger.create_owner(api_key)
    projects = [
        ledger.create_project(
            owner_id,
            spec["name"],
            target_hours=spec["target_hours"],
            color=spec["color"],
        )
        for spec in SEED_PROJECTS
    ]
    return owner_id, projects


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--api-key",
        default=None,
        help="API key to register (defaults to a random 64-character hex key).",
    )
    args = parser.parse_args()

    ledger = SqlEntryLedger()
    bootstrap_ledger(ledger)
    api_key = args.api_key or generate_api_key()
    owner_id, projects = seed_owner(ledger, api_key)
    print(f"Seeded owner {owner_id} with {len(projects)} projects.")
    print(f"API key: {api_key}")


if __name__ == "__main__":
    main()
