from __future__ import annotations

import json
import uuid
from typing import Any, Iterable

from .db import DBConn, connect_db
from .models import CandidateAlert, Source
from .utils import json_dumps, utc_now_iso


def init_db(path: str | None = None) -> DBConn:
    if path is None:
        from .config import get_state_db_path

        path = get_state_db_path()
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), utc_now_iso()),
    )
    conn.commit()


def kv_get(conn: Any, key: str) -> str | None:
    row = conn.execute("SELECT value FROM kv_store WHERE key = ?", (key,)).fetchone()
    return row[0] if row else None


def kv_set(conn: Any, key: str, value: str) -> None:
    conn.execute(
        """
        INSERT INTO kv_store (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, value, utc_now_iso()),
    )
    conn.commit()


def kv_delete(conn: Any, key: str) -> bool:
    cursor = conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
    conn.commit()
    return cursor.rowcount == 1


def kv_list_keys(conn: Any, prefix: str = "") -> list[str]:
    cursor = conn.execute("SELECT key FROM kv_store ORDER BY key")
    return [row[0] for row in cursor.fetchall() if row[0].startswith(prefix)]


def upsert_source(conn: Any, source_dict: dict[str, object]) -> Source:
    source = _source_from_dict(source_dict)
    cursor = conn.execute("SELECT created_at FROM sources WHERE id = ?", (source.id,))
    row = cursor.fetchone()
    created_at = row[0] if row else utc_now_iso()
    conn.execute(
        """
        INSERT INTO sources
            (id, name, url, type, enabled, trust_score, last_scoured_at, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name=excluded.name,
            url=excluded.url,
            type=excluded.type,
            enabled=excluded.enabled,
            trust_score=excluded.trust_score,
            updated_at=excluded.updated_at
        """,
        (
            source.id,
            source.name,
            source.url,
            source.type,
            1 if source.enabled else 0,
            source.trust_score,
            source.last_scoured_at,
            created_at,
            utc_now_iso(),
        ),
    )
    conn.commit()
    return source


def get_source(conn: Any, source_id: str) -> Source | None:
    cursor = conn.execute(
        """
        SELECT id, name, url, type, enabled, trust_score, last_scoured_at
        FROM sources
        WHERE id = ?
        """,
        (source_id,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    return _row_to_source(row)


def list_sources(conn: Any, enabled_only: bool = True) -> list[Source]:
    if enabled_only:
        cursor = conn.execute(
            """
            SELECT id, name, url, type, enabled, trust_score, last_scoured_at
            FROM sources
            WHERE enabled = 1
            ORDER BY id
            """
        )
    else:
        cursor = conn.execute(
            """
            SELECT id, name, url, type, enabled, trust_score, last_scoured_at
            FROM sources
            ORDER BY id
            """
        )
    return [_row_to_source(row) for row in cursor.fetchall()]


def update_source_fields(conn: Any, source_id: str, fields: dict[str, object]) -> bool:
    allowed = {"enabled", "trust_score", "last_scoured_at", "name", "url", "type"}
    unknown = set(fields) - allowed
    if unknown:
        raise ValueError("unsupported source fields: " + ", ".join(sorted(unknown)))
    if not fields:
        return get_source(conn, source_id) is not None
    assignments = []
    params: list[object] = []
    for key in sorted(fields):
        value = fields[key]
        if key == "enabled":
            value = 1 if value else 0
        assignments.append(f"{key} = ?")
        params.append(value)
    assignments.append("updated_at = ?")
    params.append(utc_now_iso())
    params.append(source_id)
    cursor = conn.execute(
        f"UPDATE sources SET {', '.join(assignments)} WHERE id = ?",
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def alert_exists(conn: Any, alert_id: str, since_iso: str | None = None) -> bool:
    if since_iso:
        row = conn.execute(
            "SELECT 1 FROM alerts WHERE id = ? AND created_at >= ?",
            (alert_id, since_iso),
        ).fetchone()
    else:
        row = conn.execute("SELECT 1 FROM alerts WHERE id = ?", (alert_id,)).fetchone()
    return row is not None


def insert_alert(conn: Any, alert_id: str, candidate: CandidateAlert) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO alerts
            (id, source_id, title, url, summary, country, confidence, status,
             published_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            source_id=excluded.source_id,
            title=excluded.title,
            summary=excluded.summary,
            confidence=excluded.confidence,
            created_at=excluded.created_at
        """,
        (
            alert_id,
            candidate.source_id,
            candidate.title,
            candidate.url,
            candidate.summary,
            candidate.country,
            candidate.confidence,
            "draft",
            candidate.published_at,
            now,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def import_sources(conn: Any, items: Iterable[dict[str, object]]) -> int:
    count = 0
    for item in items:
        upsert_source(conn, item)
        count += 1
    return count


def _row_to_source(row: tuple) -> Source:
    source_id, name, url, source_type, enabled, trust_score, last_scoured_at = row
    return Source(
        id=source_id,
        name=name,
        url=url,
        type=source_type,
        enabled=bool(enabled),
        trust_score=float(trust_score),
        last_scoured_at=last_scoured_at,
    )


def _source_from_dict(source_dict: dict[str, object]) -> Source:
    source_id = str(source_dict.get("id") or "").strip()
    if not source_id:
        raise ValueError("source id is required")
    url = str(source_dict.get("url") or "").strip()
    if not url:
        raise ValueError(f"source {source_id} url is required")
    trust_score = float(source_dict.get("trust_score", 0.5))
    if not 0 <= trust_score <= 1:
        raise ValueError(f"source {source_id} trust_score must be between 0 and 1")
    name = source_dict.get("name")
    return Source(
        id=source_id,
        name=str(name) if name else None,
        url=url,
        type=str(source_dict.get("type") or "rss"),
        enabled=bool(source_dict.get("enabled", True)),
        trust_score=trust_score,
        last_scoured_at=source_dict.get("last_scoured_at"),
    )


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
