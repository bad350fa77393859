"""Close duplicate open entries and enable the one-open-entry index.

Safe to run repeatedly; a second run closes nothing.
"""

from __future__ import annotations

import argparse

from backend.app.config import load_settings
from backend.app.domain.time_entries import (
    SqlEntryLedger,
    bootstrap_ledger,
    reconcile_open_entries,
)
from backend.app.infra.db import build_engine
from backend.app.infra.logging import configure_logging


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override the database URL from the active config profile.",
    )
    parser.add_argument(
        "--skip-index",
        action="store_true",
        help="Only close duplicates; do not create the unique index.",
    )
    args = parser.parse_args()

    settings = load_settings()
    configure_logging(settings.logging)
    ledger = SqlEntryLedger(build_engine(args.database_url or settings.database_url))
    if args.skip_index:
        report = reconcile_open_entries(ledger)
    else:
        report = bootstrap_ledger(ledger)
    print(
        f"Closed {report.closed_count} and removed {report.removed_count} "
        f"duplicate open entries across {len(report.owners)} owners."
    )


if __name__ == "__main__":
    main()
