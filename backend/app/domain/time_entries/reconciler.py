"""One-shot repair of owners holding several open entries.

Runs before the ledger's one-open-entry-per-owner index exists. For each
affected owner the open entry with the latest start (highest id on ties) is
kept. Every other open entry is closed at the kept entry's start; duplicates
starting at that same instant are removed instead, since an entry never ends
at its own start.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from ...infra.logging import get_logger
from ...infra.metrics import MetricsClient, get_metrics_client
from .ledger import EntryLedger

logger = get_logger(__name__)


@dataclass
class ReconciliationReport:
    owners: List[int] = field(default_factory=list)
    closed_entry_ids: List[int] = field(default_factory=list)
    removed_entry_ids: List[int] = field(default_factory=list)
    kept_entry_ids: Dict[int, int] = field(default_factory=dict)

    @property
    def closed_count(self) -> int:
        return len(self.closed_entry_ids)

    @property
    def removed_count(self) -> int:
        return len(self.removed_entry_ids)


def reconcile_open_entries(
    ledger: EntryLedger,
    *,
    metrics: MetricsClient | None = None,
) -> ReconciliationReport:
    """Leave exactly one open entry (the most recently started) per owner."""

    report = ReconciliationReport()
    with ledger.transaction() as tx:
        for owner_id in tx.owners_with_multiple_open_entries():
            open_entries = tx.list_open_entries(owner_id)
            kept, *stale = open_entries
            report.owners.append(owner_id)
            report.kept_entry_ids[owner_id] = kept.id
            for entry in stale:
                if entry.start >= kept.start:
                    logger.warning(
                        "reconcile_duplicate_entry_removed",
                        extra={
                            "owner_id": owner_id,
                            "entry_id": entry.id,
                            "kept_entry_id": kept.id,
                        },
                    )
                    tx.delete_entry(owner_id, entry.id)
                    report.removed_entry_ids.append(entry.id)
                    continue
                tx.save_entry(entry.with_bounds(start=entry.start, end=kept.start))
                report.closed_entry_ids.append(entry.id)

    logger.info(
        "open_entries_reconciled",
        extra={
            "closed": report.closed_count,
            "owners": len(report.owners),
            "closed_entry_ids": report.closed_entry_ids,
            "removed": report.removed_count,
            "removed_entry_ids": report.removed_entry_ids,
        },
    )
    sink = metrics or get_metrics_client()
    sink.gauge("time_entries_reconciled_closed", report.closed_count)
    sink.gauge("time_entries_reconciled_removed", report.removed_count)
    return report


def bootstrap_ledger(
    ledger: EntryLedger,
    *,
    metrics: MetricsClient | None = None,
) -> ReconciliationReport:
    """Create tables, repair legacy data, then switch on the open-entry index."""

    ledger.create_schema()
    report = reconcile_open_entries(ledger, metrics=metrics)
    ledger.enable_open_entry_constraint()
    return report
