"""Unit tests for centralized configuration parsing and validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from contracts.errors import ConfigError
from infra.config import (
    Settings,
    StageConfig,
    clear_settings_cache,
    default_query,
    get_settings,
)


def test_settings_defaults() -> None:
    settings = Settings.from_env(env={}, env_file=".missing.env")

    assert settings.stream.batch_size == 1024
    assert settings.stream.compression is None
    assert settings.table.max_rows == 1024
    assert settings.table.tabname == "t"
    assert settings.table.overflow == "truncate"
    assert settings.query.threads == 4
    assert settings.logging.level == "WARNING"


def test_settings_reads_flat_env_keys() -> None:
    """Flat STREAMTAB_* keys should map to nested settings models."""
    env = {
        "STREAMTAB_BATCH_SIZE": "64",
        "STREAMTAB_COMPRESSION": "ZSTD",
        "STREAMTAB_MAX_ROWS": "500",
        "STREAMTAB_TABNAME": " file_stats ",
        "STREAMTAB_OVERFLOW": "Reject",
        "STREAMTAB_THREADS": "2",
        "STREAMTAB_LOG_LEVEL": "debug",
        "STREAMTAB_LOG_JSON": "1",
    }
    settings = Settings.from_env(env=env, env_file=".missing.env")

    assert settings.stream.batch_size == 64
    assert settings.stream.compression == "zstd"
    assert settings.table.max_rows == 500
    assert settings.table.tabname == "file_stats"
    assert settings.table.overflow == "reject"
    assert settings.query.threads == 2
    assert settings.logging.level == "DEBUG"
    assert settings.logging.json_logs is True


def test_nested_keys_win_over_flat_keys() -> None:
    """Nested env keys should be supported with `__` delimiter."""
    env = {"TABLE__MAX_ROWS": "7", "STREAMTAB_MAX_ROWS": "9", "QUERY__ROWS_PER_BATCH": "3"}
    settings = Settings.from_env(env=env, env_file=".missing.env")

    assert settings.table.max_rows == 7
    assert settings.query.rows_per_batch == 3


def test_dotenv_file_is_read_and_env_overrides_it(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# stage defaults\nSTREAMTAB_MAX_ROWS=12\nSTREAMTAB_TABNAME='dotenv_table'\nnot a pair\n",
        encoding="utf-8",
    )

    from_file = Settings.from_env(env={}, env_file=str(env_file))
    overridden = Settings.from_env(env={"STREAMTAB_MAX_ROWS": "3"}, env_file=str(env_file))

    assert from_file.table.max_rows == 12
    assert from_file.table.tabname == "dotenv_table"
    assert overridden.table.max_rows == 3


@pytest.mark.parametrize(
    "env",
    [
        {"STREAMTAB_MAX_ROWS": "0"},
        {"STREAMTAB_MAX_ROWS": "lots"},
        {"STREAMTAB_BATCH_SIZE": "-1"},
        {"STREAMTAB_OVERFLOW": "drop"},
        {"STREAMTAB_COMPRESSION": "gzip"},
        {"STREAMTAB_THREADS": "0"},
    ],
)
def test_invalid_settings_raise_config_error(env: dict[str, str]) -> None:
    with pytest.raises(ConfigError):
        Settings.from_env(env=env, env_file=".missing.env")


def test_invalid_log_level_falls_back_to_warning() -> None:
    settings = Settings.from_env(env={"STREAMTAB_LOG_LEVEL": "chatty"}, env_file=".missing.env")
    assert settings.logging.level == "WARNING"


def test_stage_config_applies_cli_overrides() -> None:
    settings = Settings.from_env(env={"STREAMTAB_MAX_ROWS": "50"}, env_file=".missing.env")

    cfg = StageConfig.build(settings, batch_size=8, tabname="file_stats", threads=1)

    assert cfg.stream.batch_size == 8
    assert cfg.table.max_rows == 50
    assert cfg.table.tabname == "file_stats"
    assert cfg.query.threads == 1
    assert cfg.sql == 'SELECT * FROM "file_stats"'


@pytest.mark.parametrize(
    "overrides",
    [{"max_rows": 0}, {"batch_size": 0}, {"tabname": ""}, {"overflow": "drop"}, {"sql": ""}],
)
def test_stage_config_rejects_invalid_overrides(overrides: dict[str, Any]) -> None:
    settings = Settings.from_env(env={}, env_file=".missing.env")
    with pytest.raises(ConfigError):
        StageConfig.build(settings, **overrides)


def test_default_query_quotes_table_name() -> None:
    assert default_query("t") == 'SELECT * FROM "t"'
    assert default_query('we"ird') == 'SELECT * FROM "we""ird"'


def test_get_settings_reload_rebuilds_cache(monkeypatch: Any, tmp_path: Path) -> None:
    """Reload should rebuild cached settings from current process env."""
    monkeypatch.chdir(tmp_path)
    clear_settings_cache()
    monkeypatch.setenv("STREAMTAB_MAX_ROWS", "10")
    first = get_settings(reload=True)

    monkeypatch.setenv("STREAMTAB_MAX_ROWS", "20")
    cached = get_settings()
    second = get_settings(reload=True)

    assert first.table.max_rows == 10
    assert cached is first
    assert second.table.max_rows == 20
    clear_settings_cache()
