"""Shared time-entry domain types."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from http import HTTPStatus
from typing import Any, Dict, Mapping, Optional, Union

OPEN_ENTRY_DURATION = -1


def utcnow() -> datetime:
    """UTC timestamp helper shared across implementations."""

    return datetime.now(timezone.utc)


class UnsetType(Enum):
    UNSET = "UNSET"

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET = UnsetType.UNSET
"""Marks a patch field that was not supplied (distinct from ``None``)."""


@dataclass(frozen=True)
class Project:
    """Project row used for ownership checks and display names."""

    id: int
    owner_id: int
    name: str
    target_hours: float = 0.0
    color: Optional[str] = None
    visible: bool = True


@dataclass(frozen=True)
class TimeEntry:
    """One interval of tracked work; ``end is None`` means still running."""

    id: int
    owner_id: int
    project_id: int
    start: datetime
    end: Optional[datetime] = None
    project_name: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.end is None

    @property
    def duration_seconds(self) -> int:
        if self.end is None:
            return OPEN_ENTRY_DURATION
        return int((self.end - self.start).total_seconds())

    def with_bounds(
        self, *, start: datetime, end: Optional[datetime]
    ) -> "TimeEntry":
        return replace(self, start=start, end=end)

    def to_payload(self) -> Dict[str, Any]:
        """Boundary representation shared by events and the HTTP layer."""

        return {
            "id": self.id,
            "project_id": self.project_id,
            "start": format_instant(self.start),
            "stop": format_instant(self.end) if self.end is not None else None,
            "name": self.project_name,
            "duration": self.duration_seconds,
        }


@dataclass(frozen=True)
class EntryPatch:
    """Typed edit request; each field is ``UNSET``, ``None`` or a value.

    ``end=None`` reopens the entry. ``start`` and ``project_id`` cannot be
    cleared.
    """

    start: Union[datetime, UnsetType] = UNSET
    end: Union[datetime, None, UnsetType] = UNSET
    project_id: Union[int, UnsetType] = UNSET

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "EntryPatch":
        """Build a patch from a request body; absent keys stay ``UNSET``."""

        start: Union[datetime, UnsetType] = UNSET
        end: Union[datetime, None, UnsetType] = UNSET
        project_id: Union[int, UnsetType] = UNSET
        if "start" in data:
            if data["start"] is None:
                raise ValidationError(
                    "start cannot be cleared", details={"field": "start"}
                )
            start = parse_instant(data["start"], "start")
        if "end" in data:
            end = None if data["end"] is None else parse_instant(data["end"], "end")
        if "project_id" in data:
            project_id = parse_identifier(data["project_id"], "project_id")
        return cls(start=start, end=end, project_id=project_id)

    @property
    def is_empty(self) -> bool:
        return (
            self.start is UNSET and self.end is UNSET and self.project_id is UNSET
        )

    @property
    def changes_project(self) -> bool:
        return self.project_id is not UNSET

    @property
    def reopens(self) -> bool:
        return self.end is None

    def apply(self, entry: TimeEntry) -> TimeEntry:
        """Return ``entry`` with every supplied field replaced."""

        return replace(
            entry,
            start=entry.start if self.start is UNSET else self.start,
            end=entry.end if self.end is UNSET else self.end,
            project_id=(
                entry.project_id if self.project_id is UNSET else self.project_id
            ),
        )


class TimeEntryError(Exception):
    """Domain exception propagated to API handlers."""

    status_code: HTTPStatus = HTTPStatus.INTERNAL_SERVER_ERROR
    error_code: str = "TE-ERROR"

    def __init__(
        self,
        message: str,
        *,
        details: Dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(TimeEntryError):
    """Malformed timestamp, inverted interval, bad shift amount, missing field."""

    status_code = HTTPStatus.UNPROCESSABLE_ENTITY
    error_code = "TE-VALIDATION"


class NotFoundError(TimeEntryError):
    """Entry, project or owner missing or not owned by the caller."""

    status_code = HTTPStatus.NOT_FOUND
    error_code = "TE-NOT-FOUND"


class ConflictError(TimeEntryError):
    """Would break the single-open-entry rule or a linked boundary."""

    status_code = HTTPStatus.CONFLICT
    error_code = "TE-CONFLICT"


class InternalError(TimeEntryError):
    """Storage failure unrelated to business rules."""

    status_code = HTTPStatus.INTERNAL_SERVER_ERROR
    error_code = "TE-INTERNAL"


def parse_instant(value: Any, field_name: str) -> datetime:
    """Coerce an ISO-8601 string or datetime into an aware UTC datetime."""

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = f"{text[:-1]}+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(
                f"Invalid {field_name} format. Must be ISO date string.",
                details={"field": field_name, "value": value},
            ) from exc
    else:
        raise ValidationError(
            f"Invalid {field_name} format. Must be ISO date string.",
            details={"field": field_name, "value": value},
        )
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except OverflowError as exc:
        raise ValidationError(
            f"Invalid {field_name}: outside the supported date range",
            details={"field": field_name, "value": str(value)},
        ) from exc


def parse_identifier(value: Any, field_name: str) -> int:
    """Accept ints or digit strings, mirroring path/body id handling."""

    if isinstance(value, bool):
        raise ValidationError(
            f"{field_name} must be an integer", details={"field": field_name}
        )
    try:
        identifier = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(
            f"{field_name} must be an integer", details={"field": field_name}
        ) from exc
    if identifier <= 0:
        raise ValidationError(
            f"{field_name} must be positive", details={"field": field_name}
        )
    return identifier


def format_instant(value: datetime) -> str:
    """ISO-8601 with millisecond precision and a ``Z`` suffix."""

    return (
        value.astimezone(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z")
    )
