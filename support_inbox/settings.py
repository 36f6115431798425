"""Runtime settings storage with environment fallback.

Operators manage API keys and proxy toggles from the dashboard, which stores
them in the ``settings`` key/value table. Deployments without a database (or
with a key left blank) fall back to environment variables.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Optional, Protocol

import psycopg
from psycopg.rows import dict_row

logger = logging.getLogger(__name__)


class SettingsStore(Protocol):
    """Key/value lookup used by the provider gateway and the WhatsApp sender."""

    def get(self, key: str) -> Optional[str]: ...

    def get_many(self, keys: list[str]) -> dict[str, str]: ...


class InMemorySettingsStore:
    """Dictionary-backed store (tests and single-process deployments)."""

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values = dict(values or {})

    def get(self, key: str) -> Optional[str]:
        value = self._values.get(key)
        return value or None

    def get_many(self, keys: list[str]) -> dict[str, str]:
        return {k: self._values[k] for k in keys if self._values.get(k)}

    def set(self, key: str, value: str) -> None:
        self._values[key] = value


class PostgresSettingsStore:
    """Read settings from the ``settings`` table."""

    def __init__(self, dsn: str) -> None:
        self._dsn = dsn

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        with psycopg.connect(self._dsn) as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                yield cur

    def get(self, key: str) -> Optional[str]:
        with self._cursor() as cur:
            cur.execute("SELECT value FROM settings WHERE key = %s", (key,))
            row = cur.fetchone()
        if not row:
            return None
        return row.get("value") or None

    def get_many(self, keys: list[str]) -> dict[str, str]:
        if not keys:
            return {}
        with self._cursor() as cur:
            cur.execute(
                "SELECT key, value FROM settings WHERE key = ANY(%s)", (list(keys),)
            )
            rows = cur.fetchall()
        return {row["key"]: row["value"] for row in rows if row.get("value")}


def resolve_setting(
    store: SettingsStore | None, key: str, env_var: str | None = None
) -> Optional[str]:
    """Return ``key`` from ``store`` or, failing that, from ``env_var``.

    A store that cannot be reached is treated like an empty one so a database
    outage does not hide credentials that are also present in the environment.
    """

    if store is not None:
        try:
            value = store.get(key)
        except psycopg.Error:
            logger.warning("Settings store unavailable while reading %s", key)
            value = None
        if value:
            return value
    if env_var:
        return os.getenv(env_var) or None
    return None


def is_enabled(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


def create_settings_store(dsn: str | None = None) -> SettingsStore:
    """Return a PostgreSQL store when ``DATABASE_URL`` is set, else in-memory."""

    dsn = dsn or os.getenv("DATABASE_URL")
    if dsn:
        return PostgresSettingsStore(dsn)
    return InMemorySettingsStore()
