"""Centralized stage configuration with schema validation.

Settings come from an optional local ``.env`` file, then the process
environment (which wins). Both nested names (``TABLE__MAX_ROWS``) and flat
names (``STREAMTAB_MAX_ROWS``) are accepted. CLI flags override settings via
``StageConfig.build``; any invalid value surfaces as ``ConfigError`` before
the stage touches its input.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from threading import Lock
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from contracts.errors import ConfigError

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class StreamSettings(BaseModel):
    """Encoder settings."""

    model_config = ConfigDict(frozen=True)

    batch_size: int = Field(default=1024, ge=1, description="Maximum rows per emitted batch")
    compression: Literal["lz4", "zstd"] | None = Field(default=None)

    @field_validator("compression", mode="before")
    @classmethod
    def _normalize_compression(cls, value: object) -> object:
        if value is None:
            return None
        text = str(value).strip().lower()
        if text in {"", "none", "off"}:
            return None
        return text


class TableSettings(BaseModel):
    """Materialization settings."""

    model_config = ConfigDict(frozen=True)

    max_rows: int = Field(default=1024, ge=1, description="Row cap of the materialized table")
    tabname: str = Field(default="t", min_length=1)
    overflow: Literal["truncate", "reject"] = Field(default="truncate")

    @field_validator("tabname", mode="before")
    @classmethod
    def _normalize_tabname(cls, value: object) -> str:
        return str(value or "").strip()

    @field_validator("overflow", mode="before")
    @classmethod
    def _normalize_overflow(cls, value: object) -> str:
        return str(value or "truncate").strip().lower()


class QuerySettings(BaseModel):
    """DuckDB execution settings."""

    model_config = ConfigDict(frozen=True)

    threads: int = Field(default=4, ge=1, le=256)
    rows_per_batch: int = Field(default=1024, ge=1)


class LoggingSettings(BaseModel):
    """Repository-wide logging settings."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="WARNING")
    json_logs: bool = Field(default=False)
    override_root_handlers: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        text = str(value or "").strip().upper()
        if text in _LOG_LEVELS:
            return text
        return "WARNING"


class Settings(BaseModel):
    """Top-level settings model."""

    model_config = ConfigDict(frozen=True)

    stream: StreamSettings = Field(default_factory=StreamSettings)
    table: TableSettings = Field(default_factory=TableSettings)
    query: QuerySettings = Field(default_factory=QuerySettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_env(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        env_file: str = ".env",
    ) -> Settings:
        """Build settings from `.env` then environment variables."""
        runtime_env = os.environ if env is None else env
        merged_env = _merge_env(_load_dotenv(Path(env_file)), runtime_env)
        payload = _build_payload(merged_env)
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise ConfigError(f"Invalid settings: {exc}") from exc


def _load_dotenv(path: Path) -> dict[str, str]:
    """Parse a minimal `.env` file format."""
    if not path.exists() or not path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        key_clean = key.strip()
        value = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key_clean:
            values[key_clean] = value
    return values


def _merge_env(dotenv_values: Mapping[str, str], runtime_env: Mapping[str, str]) -> dict[str, str]:
    """Return env map where process env overrides `.env` values."""
    merged = {str(k): str(v) for k, v in dotenv_values.items()}
    for key, value in runtime_env.items():
        merged[str(key)] = str(value)
    return merged


def _first_non_empty(env: Mapping[str, str], *keys: str) -> str | None:
    """Return the first non-empty value for the provided keys."""
    for key in keys:
        value = str(env.get(key, "")).strip()
        if value:
            return value
    return None


def _build_payload(env: Mapping[str, str]) -> dict[str, object]:
    """Build nested settings payload from env values."""
    stream = {
        "batch_size": _first_non_empty(env, "STREAM__BATCH_SIZE", "STREAMTAB_BATCH_SIZE"),
        "compression": _first_non_empty(env, "STREAM__COMPRESSION", "STREAMTAB_COMPRESSION"),
    }
    table = {
        "max_rows": _first_non_empty(env, "TABLE__MAX_ROWS", "STREAMTAB_MAX_ROWS"),
        "tabname": _first_non_empty(env, "TABLE__TABNAME", "STREAMTAB_TABNAME"),
        "overflow": _first_non_empty(env, "TABLE__OVERFLOW", "STREAMTAB_OVERFLOW"),
    }
    query = {
        "threads": _first_non_empty(env, "QUERY__THREADS", "STREAMTAB_THREADS"),
        "rows_per_batch": _first_non_empty(env, "QUERY__ROWS_PER_BATCH", "STREAMTAB_ROWS_PER_BATCH"),
    }
    logging_settings = {
        "level": _first_non_empty(env, "LOGGING__LEVEL", "STREAMTAB_LOG_LEVEL"),
        "json_logs": _first_non_empty(env, "LOGGING__JSON_LOGS", "STREAMTAB_LOG_JSON"),
        "override_root_handlers": _first_non_empty(
            env, "LOGGING__OVERRIDE_ROOT_HANDLERS", "STREAMTAB_LOG_OVERRIDE"
        ),
    }
    return {
        "stream": {k: v for k, v in stream.items() if v is not None},
        "table": {k: v for k, v in table.items() if v is not None},
        "query": {k: v for k, v in query.items() if v is not None},
        "logging": {k: v for k, v in logging_settings.items() if v is not None},
    }


class StageConfig(BaseModel):
    """Effective configuration of one query stage run (settings + CLI overrides)."""

    model_config = ConfigDict(frozen=True)

    stream: StreamSettings
    table: TableSettings
    query: QuerySettings
    sql: str = Field(min_length=1)

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        batch_size: int | None = None,
        max_rows: int | None = None,
        tabname: str | None = None,
        overflow: str | None = None,
        threads: int | None = None,
        sql: str | None = None,
    ) -> StageConfig:
        """Apply CLI overrides on top of *settings*; raises ConfigError when invalid."""
        stream: dict[str, Any] = settings.stream.model_dump()
        table: dict[str, Any] = settings.table.model_dump()
        query: dict[str, Any] = settings.query.model_dump()

        if batch_size is not None:
            stream["batch_size"] = batch_size
        if max_rows is not None:
            table["max_rows"] = max_rows
        if tabname is not None:
            table["tabname"] = tabname
        if overflow is not None:
            table["overflow"] = overflow
        if threads is not None:
            query["threads"] = threads

        try:
            table_cfg = TableSettings.model_validate(table)
            return cls(
                stream=StreamSettings.model_validate(stream),
                table=table_cfg,
                query=QuerySettings.model_validate(query),
                sql=sql if sql is not None else default_query(table_cfg.tabname),
            )
        except ValidationError as exc:
            raise ConfigError(_summarize(exc)) from exc


def default_query(tabname: str) -> str:
    """Query used when no --sql is given: the whole table, in stream order."""
    return 'SELECT * FROM "' + tabname.replace('"', '""') + '"'


def _summarize(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or str(exc)


_SETTINGS_LOCK = Lock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, reload: bool = False) -> Settings:
    """Return cached settings, optionally forcing reload from env."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        if reload or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings.from_env()
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear in-process settings cache."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


__all__ = [
    "LoggingSettings",
    "QuerySettings",
    "Settings",
    "StageConfig",
    "StreamSettings",
    "TableSettings",
    "get_settings",
    "clear_settings_cache",
    "default_query",
    "ValidationError",
]
