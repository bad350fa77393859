import pytest
from fastapi import HTTPException
from starlette.requests import Request

from backend.app.api.dependencies import extract_credential, get_owner_id
from backend.app.domain.identity import (
    LedgerIdentityResolver,
    StaticIdentityResolver,
    generate_api_key,
)
from backend.app.domain.time_entries import InMemoryEntryLedger

pytestmark = [pytest.mark.api]


def _make_request(
    headers: dict[str, str] | None = None, query_string: bytes = b""
) -> Request:
    header_list = [
        (key.lower().encode("latin-1"), value.encode("latin-1"))
        for key, value in (headers or {}).items()
    ]
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "query_string": query_string,
        "headers": header_list,
        "client": ("test", 1234),
        "server": ("testserver", 80),
        "scheme": "http",
    }
    return Request(scope)


def test_extract_credential_prefers_bearer_then_header_then_query() -> None:
    request = _make_request(
        {"Authorization": "Bearer  token-a ", "X-API-Key": "token-b"},
        query_string=b"api_key=token-c",
    )
    assert extract_credential(request) == "token-a"

    request = _make_request({"X-API-Key": " token-b "}, query_string=b"api_key=token-c")
    assert extract_credential(request) == "token-b"

    request = _make_request(query_string=b"api_key=token-c")
    assert extract_credential(request) == "token-c"


def test_extract_credential_ignores_other_schemes() -> None:
    request = _make_request({"Authorization": "Basic Zm9vOmJhcg=="})

    assert extract_credential(request) is None


def test_get_owner_id_rejects_unknown_key() -> None:
    resolver = StaticIdentityResolver({"known": 7})

    with pytest.raises(HTTPException) as exc:
        get_owner_id(_make_request({"X-API-Key": "unknown"}), resolver)

    assert exc.value.status_code == 401
    assert exc.value.detail["error_code"] == "TE-UNAUTHORIZED"
    assert get_owner_id(_make_request({"X-API-Key": "known"}), resolver) == 7


def test_ledger_identity_resolver_looks_up_owners() -> None:
    ledger = InMemoryEntryLedger()
    api_key = generate_api_key()
    owner_id = ledger.create_owner(api_key)
    resolver = LedgerIdentityResolver(ledger)

    assert len(api_key) == 64
    assert resolver.resolve(api_key) == owner_id
    assert resolver.resolve(f"  {api_key}  ") == owner_id
    assert resolver.resolve("nope") is None
    assert resolver.resolve("") is None
    assert resolver.resolve(None) is None
