from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Protocol

import yaml

from ..models import Source
from ..storage import (
    get_source,
    import_sources,
    init_db,
    list_sources,
    update_source_fields,
)

PATCHABLE_FIELDS = ("enabled", "trust_score", "last_scoured_at")


class SourceNotFound(LookupError):
    pass


class SourceRegistry(Protocol):
    def list_sources(self, enabled_only: bool = True) -> list[Source]: ...

    def patch_source(self, source_id: str, fields: dict[str, object]) -> Source: ...


class MemorySourceRegistry:
    def __init__(self, sources: list[Source] | None = None) -> None:
        self._sources: dict[str, Source] = {source.id: source for source in sources or []}
        self._lock = threading.Lock()

    def list_sources(self, enabled_only: bool = True) -> list[Source]:
        with self._lock:
            sources = sorted(self._sources.values(), key=lambda item: item.id)
        if enabled_only:
            return [source for source in sources if source.enabled]
        return sources

    def get(self, source_id: str) -> Source | None:
        with self._lock:
            return self._sources.get(source_id)

    def add(self, source: Source) -> None:
        with self._lock:
            self._sources[source.id] = source

    def patch_source(self, source_id: str, fields: dict[str, object]) -> Source:
        _check_fields(fields)
        with self._lock:
            current = self._sources.get(source_id)
            if current is None:
                raise SourceNotFound(source_id)
            updated = replace(current, **fields)
            self._sources[source_id] = updated
            return updated


class DBSourceRegistry:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def list_sources(self, enabled_only: bool = True) -> list[Source]:
        with init_db(self.db_path) as conn:
            return list_sources(conn, enabled_only=enabled_only)

    def get(self, source_id: str) -> Source | None:
        with init_db(self.db_path) as conn:
            return get_source(conn, source_id)

    def patch_source(self, source_id: str, fields: dict[str, object]) -> Source:
        _check_fields(fields)
        with init_db(self.db_path) as conn:
            if not update_source_fields(conn, source_id, fields):
                raise SourceNotFound(source_id)
            source = get_source(conn, source_id)
        if source is None:
            raise SourceNotFound(source_id)
        return source


def resolve_sources(registry: SourceRegistry, source_ids: list[str] | None) -> list[Source]:
    if not source_ids:
        return registry.list_sources(enabled_only=True)
    known = {source.id: source for source in registry.list_sources(enabled_only=False)}
    missing = [source_id for source_id in source_ids if source_id not in known]
    if missing:
        raise ValueError("unknown source ids: " + ", ".join(missing))
    seen: set[str] = set()
    resolved = []
    for source_id in source_ids:
        if source_id in seen:
            continue
        seen.add(source_id)
        resolved.append(known[source_id])
    return resolved


def load_sources_file(path: str) -> list[dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    items = raw.get("sources") if isinstance(raw, dict) else raw
    if not isinstance(items, list):
        raise ValueError(f"{path} must contain a list of sources")
    for item in items:
        if not isinstance(item, dict):
            raise ValueError(f"{path} source entries must be mappings")
    return items


def import_sources_file(db_path: str, path: str) -> int:
    items = load_sources_file(path)
    with init_db(db_path) as conn:
        return import_sources(conn, items)


def _check_fields(fields: dict[str, object]) -> None:
    unknown = [key for key in fields if key not in PATCHABLE_FIELDS]
    if unknown:
        raise ValueError("unsupported source fields: " + ", ".join(sorted(unknown)))
    if "trust_score" in fields:
        score = fields["trust_score"]
        if not isinstance(score, (int, float)) or not 0 <= float(score) <= 1:
            raise ValueError("trust_score must be between 0 and 1")
