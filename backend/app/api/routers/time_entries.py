"""Time-entry endpoints: a thin adapter over :class:`TimeEntryService`."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Path, Query
from pydantic import BaseModel, Field, model_validator

from ...api.dependencies import get_owner_id, get_time_entry_service
from ...domain.time_entries import (
    UNSET,
    EntryPatch,
    TimeEntry,
    TimeEntryError,
    TimeEntryService,
)


class TimeEntryRecord(BaseModel):
    """API representation for a time entry."""

    id: int
    project_id: int
    start: str
    stop: str | None = None
    name: str | None = None
    duration: int


class TimeEntryBatch(BaseModel):
    """Entries touched by a multi-row edit, edited entry first."""

    items: list[TimeEntryRecord] = Field(default_factory=list)


class StartEntryRequest(BaseModel):
    """Request body for POST /api/time-entries."""

    project_id: int = Field(gt=0)
    start: str | None = None


class ImportEntryRequest(BaseModel):
    """Request body for POST /api/time-entries/import."""

    project_id: int = Field(gt=0)
    start: str
    end: str


class StopEntryRequest(BaseModel):
    """Optional body for PATCH /api/time-entries/{id}/stop."""

    end: str | None = None


class EditEntryRequest(BaseModel):
    """Request body for PUT /api/time-entries/{id}.

    Only the fields present in the body are applied; ``end_time: null``
    reopens the entry.
    """

    start_time: str | None = None
    end_time: str | None = None
    project_id: int | None = None

    @model_validator(mode="after")
    def _validate_mutation(self) -> "EditEntryRequest":
        if not self.model_fields_set:
            raise ValueError("Either start_time, end_time or project_id must be provided")
        return self

    def to_patch(self) -> EntryPatch:
        fields = self.model_fields_set
        data: dict[str, Any] = {}
        if "start_time" in fields:
            data["start"] = self.start_time
        if "end_time" in fields:
            data["end"] = self.end_time
        if "project_id" in fields:
            data["project_id"] = self.project_id
        return EntryPatch.from_mapping(data)


class ShiftStartRequest(BaseModel):
    """Request body for POST /api/time-entries/{id}/shift-start."""

    delta_minutes: float
    linked_previous_entry_id: int | None = None


class LinkedEditRequest(BaseModel):
    """Request body for PUT /api/time-entries/{id}/linked."""

    start_time: str
    end_time: str | None = None
    next_entry_id: int | None = None
    previous_entry_id: int | None = None


router = APIRouter(prefix="/api/time-entries", tags=["time-entries"])

EntryId = Annotated[int, Path(..., ge=1)]
Window = Annotated[str, Query(pattern="^(week|all)$")]


def _to_record(entry: TimeEntry) -> TimeEntryRecord:
    return TimeEntryRecord(**entry.to_payload())


def _handle_service_error(exc: TimeEntryError) -> HTTPException:
    return HTTPException(
        status_code=int(exc.status_code),
        detail={
            "error_code": exc.error_code,
            "message": exc.message,
            "details": exc.details,
        },
    )


@router.get(
    "/current",
    response_model=TimeEntryRecord | None,
    summary="Current Running Entry",
)
def get_current_entry(
    owner_id: int = Depends(get_owner_id),
    service: TimeEntryService = Depends(get_time_entry_service),
) -> TimeEntryRecord | None:
    try:
        entry = service.current_open_entry(owner_id)
    except TimeEntryError as exc:
        raise _handle_service_error(exc) from exc
    return _to_record(entry) if entry is not None else None


@router.get(
    "",
    response_model=list[TimeEntryRecord],
    summary="List Time Entries",
)
def list_entries(
    window: Window = "week",
    owner_id: int = Depends(get_owner_id),
    service: TimeEntryService = Depends(get_time_entry_service),
) -> list[TimeEntryRecord]:
    try:
        entries = service.list_entries(owner_id, window=window)
    except TimeEntryError as exc:
        raise _handle_service_error(exc) from exc
    return [_to_record(entry) for entry in entries]


@router.post(
    "",
    response_model=TimeEntryRecord,
    summary="Start Time Entry",
)
def start_entry(
    payload: StartEntryRequest,
    owner_id: int = Depends(get_owner_id),
    service: TimeEntryService = Depends(get_time_entry_service),
) -> TimeEntryRecord:
    try:
        entry = service.start_entry(owner_id, payload.project_id, at=payload.start)
    except TimeEntryError as exc:
        raise _handle_service_error(exc) from exc
    return _to_record(entry)


@router.post(
    "/import",
    response_model=TimeEntryRecord,
    summary="Import Closed Entry",
)
def import_entry(
    payload: ImportEntryRequest,
    owner_id: int = Depends(get_owner_id),
    service: TimeEntryService = Depends(get_time_entry_service),
) -> TimeEntryRecord:
    try:
        entry = service.import_closed(
            owner_id, payload.project_id, payload.start, payload.end
        )
    except TimeEntryError as exc:
        raise _handle_service_error(exc) from exc
    return _to_record(entry)


@router.patch(
    "/{entry_id}/stop",
    response_model=TimeEntryRecord,
    summary="Stop Time Entry",
)
def stop_entry(
    entry_id: EntryId,
    payload: StopEntryRequest | None = None,
    owner_id: int = Depends(get_owner_id),
    service: TimeEntryService = Depends(get_time_entry_service),
) -> TimeEntryRecord:
    at = payload.end if payload is not None else None
    try:
        entry = service.stop_entry(owner_id, entry_id, at=at)
    except TimeEntryError as exc:
        raise _handle_service_error(exc) from exc
    return _to_record(entry)


@router.put(
    "/{entry_id}",
    response_model=TimeEntryRecord,
    summary="Edit Time Entry",
)
def edit_entry(
    entry_id: EntryId,
    payload: EditEntryRequest,
    owner_id: int = Depends(get_owner_id),
    service: TimeEntryService = Depends(get_time_entry_service),
) -> TimeEntryRecord:
    try:
        entry = service.edit_entry(owner_id, entry_id, payload.to_patch())
    except TimeEntryError as exc:
        raise _handle_service_error(exc) from exc
    return _to_record(entry)


@router.post(
    "/{entry_id}/shift-start",
    response_model=TimeEntryBatch,
    summary="Shift Entry Start",
)
def shift_start(
    entry_id: EntryId,
    payload: ShiftStartRequest,
    owner_id: int = Depends(get_owner_id),
    service: TimeEntryService = Depends(get_time_entry_service),
) -> TimeEntryBatch:
    try:
        entries = service.shift_start(
            owner_id,
            entry_id,
            payload.delta_minutes,
            linked_previous_entry_id=payload.linked_previous_entry_id,
        )
    except TimeEntryError as exc:
        raise _handle_service_error(exc) from exc
    return TimeEntryBatch(items=[_to_record(entry) for entry in entries])


@router.put(
    "/{entry_id}/linked",
    response_model=TimeEntryBatch,
    summary="Edit Entry With Linked Neighbours",
)
def edit_linked(
    entry_id: EntryId,
    payload: LinkedEditRequest,
    owner_id: int = Depends(get_owner_id),
    service: TimeEntryService = Depends(get_time_entry_service),
) -> TimeEntryBatch:
    new_end: Any = UNSET
    if "end_time" in payload.model_fields_set:
        new_end = payload.end_time
    try:
        entries = service.edit_linked(
            owner_id,
            entry_id,
            payload.start_time,
            new_end,
            next_entry_id=payload.next_entry_id,
            previous_entry_id=payload.previous_entry_id,
        )
    except TimeEntryError as exc:
        raise _handle_service_error(exc) from exc
    return TimeEntryBatch(items=[_to_record(entry) for entry in entries])


@router.delete(
    "/{entry_id}",
    response_model=TimeEntryRecord,
    summary="Delete Time Entry",
)
def delete_entry(
    entry_id: EntryId,
    owner_id: int = Depends(get_owner_id),
    service: TimeEntryService = Depends(get_time_entry_service),
) -> TimeEntryRecord:
    try:
        entry = service.delete_entry(owner_id, entry_id)
    except TimeEntryError as exc:
        raise _handle_service_error(exc) from exc
    return _to_record(entry)
