from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable

Migration = Callable[[Any], None]


def apply_migrations(conn) -> None:
    logger = logging.getLogger("scourwatch.migrations")
    conn.execute("BEGIN IMMEDIATE")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, datetime.now(tz=timezone.utc).isoformat()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS kv_store (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id TEXT PRIMARY KEY,
            name TEXT NULL,
            url TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'rss',
            enabled INTEGER NOT NULL DEFAULT 1,
            trust_score REAL NOT NULL DEFAULT 0.5,
            last_scoured_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _migration_alerts(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS alerts (
            id TEXT PRIMARY KEY,
            source_id TEXT NULL,
            title TEXT NOT NULL,
            url TEXT NULL,
            summary TEXT NULL,
            country TEXT NULL,
            confidence REAL NOT NULL,
            status TEXT NOT NULL DEFAULT 'draft',
            published_at TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_alerts_created_at ON alerts (created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_sources_enabled_type ON sources (enabled, type)"
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("0001_initial_schema", _migration_initial_schema),
        ("0002_alerts", _migration_alerts),
    ]
