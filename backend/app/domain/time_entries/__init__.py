"""Time-entry domain package."""

from .ledger import (
    EntryLedger,
    InMemoryEntryLedger,
    LedgerTransaction,
    OpenEntryConstraintViolation,
    SqlEntryLedger,
    build_entry_ledger,
)
from .reconciler import ReconciliationReport, bootstrap_ledger, reconcile_open_entries
from .service import TimeEntryService
from .types import (
    UNSET,
    ConflictError,
    EntryPatch,
    InternalError,
    NotFoundError,
    Project,
    TimeEntry,
    TimeEntryError,
    ValidationError,
    format_instant,
    parse_instant,
)

__all__ = [
    "UNSET",
    "ConflictError",
    "EntryLedger",
    "EntryPatch",
    "InMemoryEntryLedger",
    "InternalError",
    "LedgerTransaction",
    "NotFoundError",
    "OpenEntryConstraintViolation",
    "Project",
    "ReconciliationReport",
    "SqlEntryLedger",
    "TimeEntry",
    "TimeEntryError",
    "TimeEntryService",
    "ValidationError",
    "bootstrap_ledger",
    "build_entry_ledger",
    "format_instant",
    "parse_instant",
    "reconcile_open_entries",
]
