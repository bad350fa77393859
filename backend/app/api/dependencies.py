"""Shared API dependencies."""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, Request, status

from ..config import Settings, load_settings
from ..domain.identity import IdentityResolver, LedgerIdentityResolver
from ..domain.time_entries import (
    EntryLedger,
    TimeEntryService,
    build_entry_ledger,
)
from ..infra.events import RegistryChangeNotifier

__all__ = [
    "API_KEY_HEADER",
    "API_KEY_QUERY_PARAM",
    "extract_credential",
    "get_change_notifier",
    "get_entry_ledger",
    "get_identity_resolver",
    "get_owner_id",
    "get_settings",
    "get_time_entry_service",
]

API_KEY_HEADER = "x-api-key"
API_KEY_QUERY_PARAM = "api_key"
BEARER_PREFIX = "bearer "


@lru_cache()
def _settings_singleton() -> Settings:
    return load_settings()


def get_settings() -> Settings:
    """Return the settings loaded for this process."""

    return _settings_singleton()


@lru_cache()
def _entry_ledger_singleton() -> EntryLedger:
    return build_entry_ledger()


def get_entry_ledger() -> EntryLedger:
    """Return the process-wide entry ledger instance."""

    return _entry_ledger_singleton()


@lru_cache()
def _change_notifier_singleton() -> RegistryChangeNotifier:
    return RegistryChangeNotifier(
        listener_queue_size=get_settings().notifier.listener_queue_size
    )


def get_change_notifier() -> RegistryChangeNotifier:
    """Return the notifier that live listeners subscribe to."""

    return _change_notifier_singleton()


@lru_cache()
def _time_entry_service_singleton() -> TimeEntryService:
    settings = get_settings()
    return TimeEntryService(
        ledger=get_entry_ledger(),
        notifier=get_change_notifier(),
        max_start_attempts=settings.entries.max_start_attempts,
        list_window_days=settings.entries.list_window_days,
    )


def get_time_entry_service() -> TimeEntryService:
    """Return the time-entry service singleton."""

    return _time_entry_service_singleton()


@lru_cache()
def _identity_resolver_singleton() -> IdentityResolver:
    return LedgerIdentityResolver(get_entry_ledger())


def get_identity_resolver() -> IdentityResolver:
    """Return the identity resolver singleton."""

    return _identity_resolver_singleton()


def extract_credential(request: Request) -> Optional[str]:
    """Bearer token first, then the API key header, then the query string."""

    authorization = (request.headers.get("authorization") or "").strip()
    if authorization.lower().startswith(BEARER_PREFIX):
        token = authorization[len(BEARER_PREFIX) :].strip()
        if token:
            return token
    header_value = (request.headers.get(API_KEY_HEADER) or "").strip()
    if header_value:
        return header_value
    query_value = (request.query_params.get(API_KEY_QUERY_PARAM) or "").strip()
    return query_value or None


def get_owner_id(
    request: Request,
    resolver: IdentityResolver = Depends(get_identity_resolver),
) -> int:
    """Resolve the calling owner or reject the request with 401."""

    owner_id = resolver.resolve(extract_credential(request))
    if owner_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error_code": "TE-UNAUTHORIZED",
                "message": "Invalid or missing API key",
                "details": {},
            },
        )
    return owner_id
