"""Tests for logging setup and formatters."""

from __future__ import annotations

import io
import json
import logging
from collections.abc import Iterator
from typing import Any

import pytest

from infra.config import clear_settings_cache
from infra.logging_config import (
    JsonFormatter,
    StructuredLogger,
    TextFormatter,
    clear_log_context,
    get_log_context,
    set_log_context,
    setup_logging,
)


@pytest.fixture
def clean_root(monkeypatch: Any, tmp_path) -> Iterator[logging.Logger]:
    monkeypatch.chdir(tmp_path)
    for key in ("STREAMTAB_LOG_LEVEL", "STREAMTAB_LOG_JSON", "STREAMTAB_LOG_OVERRIDE"):
        monkeypatch.delenv(key, raising=False)
    clear_settings_cache()
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield root
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    clear_log_context()
    clear_settings_cache()


def _record(msg: str = "hello", **extra: Any) -> logging.LogRecord:
    record = logging.LogRecord("streamtab.test", logging.INFO, __file__, 10, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extras_and_context() -> None:
    set_log_context(tabname="t", max_rows=5)
    try:
        line = JsonFormatter(extra_fields={"component": "stage"}).format(_record(rows=3))
    finally:
        clear_log_context()

    payload = json.loads(line)
    assert payload["message"] == "hello"
    assert payload["level"] == "INFO"
    assert payload["rows"] == 3
    assert payload["component"] == "stage"
    assert payload["tabname"] == "t"
    assert payload["max_rows"] == 5
    assert payload["timestamp"].endswith("Z")


def test_json_formatter_does_not_let_extras_overwrite_core_fields() -> None:
    payload = json.loads(JsonFormatter().format(_record(level="bogus")))
    assert payload["level"] == "INFO"


def test_text_formatter_layout() -> None:
    line = TextFormatter().format(_record("table_materialized rows=5"))
    assert "| INFO | streamtab.test | table_materialized rows=5" in line


def test_log_context_helpers() -> None:
    clear_log_context()
    set_log_context(a=1)
    set_log_context(b=2)
    assert get_log_context() == {"a": 1, "b": 2}
    clear_log_context()
    assert get_log_context() == {}


def test_setup_logging_writes_json_to_given_stream(clean_root: logging.Logger) -> None:
    stream = io.StringIO()
    setup_logging(level="INFO", json_logs=True, override_root_handlers=True, stream=stream)

    StructuredLogger("streamtab.test").info("query_executed", rows=2, columns=1)

    payload = json.loads(stream.getvalue().strip().splitlines()[-1])
    assert payload["event"] == "query_executed"
    assert payload["message"] == "query_executed rows=2 columns=1"
    assert payload["rows"] == 2


def test_setup_logging_defaults_to_warning(clean_root: logging.Logger) -> None:
    stream = io.StringIO()
    setup_logging(override_root_handlers=True, stream=stream)

    log = StructuredLogger("streamtab.test")
    log.info("hidden")
    log.warning("shown", reason="x")

    out = stream.getvalue()
    assert clean_root.level == logging.WARNING
    assert "hidden" not in out
    assert "shown reason=x" in out


def test_setup_logging_keeps_existing_handlers_without_override(clean_root: logging.Logger) -> None:
    sentinel = logging.NullHandler()
    clean_root.handlers[:] = [sentinel]

    setup_logging(level="DEBUG", stream=io.StringIO())

    assert clean_root.handlers == [sentinel]
    assert clean_root.level == logging.DEBUG
