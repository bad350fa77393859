"""Value types, typed patches and timestamp parsing."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from backend.app.domain.time_entries import (
    UNSET,
    EntryPatch,
    TimeEntry,
    ValidationError,
    format_instant,
    parse_instant,
)
from tests.helpers.factories import at

pytestmark = [pytest.mark.entries]


@pytest.mark.parametrize(
    "value",
    [
        "2024-03-04T09:00:00Z",
        "2024-03-04T09:00:00.000z",
        "2024-03-04T10:00:00+01:00",
        "2024-03-04T09:00:00",
        datetime(2024, 3, 4, 9, 0),
        datetime(2024, 3, 4, 4, 0, tzinfo=timezone(timedelta(hours=-5))),
    ],
)
def test_parse_instant_normalises_to_utc(value) -> None:
    parsed = parse_instant(value, "start")

    assert parsed == at(0)
    assert parsed.tzinfo == timezone.utc


@pytest.mark.parametrize("value", ["", "  ", "next tuesday", None, 12345])
def test_parse_instant_rejects_garbage(value) -> None:
    with pytest.raises(ValidationError) as exc:
        parse_instant(value, "end")

    assert exc.value.details["field"] == "end"
    assert exc.value.error_code == "TE-VALIDATION"


@pytest.mark.parametrize(
    "value", ["0001-01-01T00:00:00+01:00", "9999-12-31T23:30:00-01:00"]
)
def test_parse_instant_rejects_instants_outside_utc_range(value) -> None:
    with pytest.raises(ValidationError) as exc:
        parse_instant(value, "start")

    assert exc.value.details == {"field": "start", "value": value}


def test_format_instant_uses_millisecond_z_form() -> None:
    value = datetime(2024, 3, 4, 10, 0, 0, 123456, tzinfo=timezone(timedelta(hours=1)))

    assert format_instant(value) == "2024-03-04T09:00:00.123Z"


def test_payload_reports_open_duration_as_minus_one() -> None:
    running = TimeEntry(id=1, owner_id=1, project_id=2, start=at(0), project_name="Alpha")
    closed = running.with_bounds(start=at(0), end=at(90))

    assert running.to_payload() == {
        "id": 1,
        "project_id": 2,
        "start": "2024-03-04T09:00:00.000Z",
        "stop": None,
        "name": "Alpha",
        "duration": -1,
    }
    assert closed.to_payload()["duration"] == 5400
    assert closed.to_payload()["stop"] == "2024-03-04T10:30:00.000Z"


def test_patch_from_mapping_distinguishes_absent_and_null() -> None:
    untouched = EntryPatch.from_mapping({"start": "2024-03-04T09:00:00Z"})
    reopen = EntryPatch.from_mapping({"end": None})

    assert untouched.end is UNSET
    assert untouched.project_id is UNSET
    assert not untouched.is_empty
    assert reopen.end is None
    assert reopen.reopens
    assert EntryPatch.from_mapping({}).is_empty


def test_patch_apply_replaces_supplied_fields() -> None:
    entry = TimeEntry(id=1, owner_id=1, project_id=2, start=at(0), end=at(30))

    updated = EntryPatch(end=None, project_id=5).apply(entry)

    assert updated.start == at(0)
    assert updated.end is None
    assert updated.project_id == 5
    assert EntryPatch(project_id=5).changes_project


@pytest.mark.parametrize(
    "data",
    [{"start": None}, {"project_id": "x"}, {"project_id": 0}, {"end": "soon"}],
)
def test_patch_from_mapping_validates_values(data) -> None:
    with pytest.raises(ValidationError):
        EntryPatch.from_mapping(data)
