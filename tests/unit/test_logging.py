"""Structured logging helpers."""

from __future__ import annotations

import io
import json
import logging

import pytest

from backend.app.infra.logging import (
    LOGGER_NAMESPACE,
    configure_logging,
    get_logger,
    reset_logging,
)

pytestmark = [pytest.mark.logging]


@pytest.fixture(autouse=True)
def _reset():
    reset_logging()
    yield
    reset_logging()


def test_get_logger_nests_module_names_under_namespace() -> None:
    logger = get_logger("backend.app.domain.time_entries.service")

    assert logger.name == f"{LOGGER_NAMESPACE}.domain.time_entries.service"


def test_json_lines_include_extra_fields() -> None:
    stream = io.StringIO()
    configure_logging({"level": "DEBUG"}, handler=logging.StreamHandler(stream))

    get_logger("tests.logging").info(
        "time_entry_started", extra={"owner_id": 3, "entry_id": 11}
    )

    payload = json.loads(stream.getvalue().strip())
    assert payload["event"] == "time_entry_started"
    assert payload["level"] == "INFO"
    assert payload["owner_id"] == 3
    assert payload["entry_id"] == 11
    assert payload["logger"] == f"{LOGGER_NAMESPACE}.tests.logging"


def test_configure_logging_is_idempotent_and_honours_level() -> None:
    first = io.StringIO()
    second = io.StringIO()
    configure_logging({"level": "WARNING"}, handler=logging.StreamHandler(first))
    configure_logging({"level": "DEBUG"}, handler=logging.StreamHandler(second))

    logger = get_logger("tests.idempotent")
    logger.info("ignored_event")
    logger.warning("kept_event")

    lines = [line for line in first.getvalue().splitlines() if line]
    assert len(lines) == 1
    assert json.loads(lines[0])["event"] == "kept_event"
    assert second.getvalue() == ""


def test_exceptions_are_serialised() -> None:
    stream = io.StringIO()
    configure_logging({}, handler=logging.StreamHandler(stream))

    try:
        raise ValueError("broken clock")
    except ValueError:
        get_logger("tests.errors").exception("change_listener_failed")

    payload = json.loads(stream.getvalue().strip())
    assert payload["exc_type"] == "ValueError"
    assert payload["exc_message"] == "broken clock"
    assert "Traceback" in payload["traceback"]
