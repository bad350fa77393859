"""Credential to owner resolution for the HTTP adapter."""

from __future__ import annotations

import secrets
from typing import Dict, Mapping, Optional, Protocol

from ..infra.logging import get_logger
from .time_entries.ledger import EntryLedger

logger = get_logger(__name__)


class IdentityResolver(Protocol):  # pragma: no cover - interface only
    def resolve(self, credential: Optional[str]) -> Optional[int]: ...


class LedgerIdentityResolver(IdentityResolver):
    """Looks API keys up in the ledger's ``owners`` table."""

    def __init__(self, ledger: EntryLedger) -> None:
        self._ledger = ledger

    def resolve(self, credential: Optional[str]) -> Optional[int]:
        if not credential or not credential.strip():
            return None
        owner_id = self._ledger.find_owner_by_api_key(credential.strip())
        if owner_id is None:
            logger.info("identity_unresolved", extra={"reason": "unknown_key"})
        return owner_id


class StaticIdentityResolver(IdentityResolver):
    """Fixed key to owner mapping for tests and local tooling."""

    def __init__(self, owners: Mapping[str, int] | None = None) -> None:
        self._owners: Dict[str, int] = dict(owners or {})

    def resolve(self, credential: Optional[str]) -> Optional[int]:
        if not credential:
            return None
        return self._owners.get(credential.strip())


def generate_api_key() -> str:
    """Random 256-bit key rendered as 64 hex characters."""

    return secrets.token_hex(32)
