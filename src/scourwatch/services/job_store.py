from __future__ import annotations

import json
import logging
import threading
from typing import Any, Protocol

from ..models import ACTIVE_STATUSES, Job
from ..storage import init_db, kv_delete, kv_get, kv_list_keys, kv_set
from ..utils import json_dumps, log_event

JOB_KEY_PREFIX = "scour-job-"


def job_key(job_id: str) -> str:
    return f"{JOB_KEY_PREFIX}{job_id}"


class JobStore(Protocol):
    def get(self, key: str) -> dict[str, Any] | None: ...

    def set(self, key: str, document: dict[str, Any]) -> None: ...

    def delete(self, key: str) -> bool: ...

    def list_keys(self, prefix: str = "") -> list[str]: ...


class MemoryJobStore:
    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, document: dict[str, Any]) -> None:
        raw = json_dumps(document)
        with self._lock:
            self._data[key] = raw

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def list_keys(self, prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(key for key in self._data if key.startswith(prefix))


class DBJobStore:
    """Job documents in the kv_store table; one connection per call."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    def get(self, key: str) -> dict[str, Any] | None:
        with init_db(self.db_path) as conn:
            raw = kv_get(conn, key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            log_event(
                logging.getLogger("scourwatch.job_store"),
                logging.WARNING,
                "job_document_invalid",
                key=key,
            )
            return None

    def set(self, key: str, document: dict[str, Any]) -> None:
        with init_db(self.db_path) as conn:
            kv_set(conn, key, json_dumps(document))

    def delete(self, key: str) -> bool:
        with init_db(self.db_path) as conn:
            return kv_delete(conn, key)

    def list_keys(self, prefix: str = "") -> list[str]:
        with init_db(self.db_path) as conn:
            return kv_list_keys(conn, prefix)


def load_job(store: JobStore, job_id: str) -> Job | None:
    key = job_key(job_id)
    document = store.get(key)
    if document is None:
        return None
    return _parse_job(key, document)


def _parse_job(key: str, document: dict[str, Any]) -> Job | None:
    try:
        return Job.from_document(document)
    except (AttributeError, KeyError, TypeError, ValueError) as exc:
        log_event(
            logging.getLogger("scourwatch.job_store"),
            logging.WARNING,
            "job_document_invalid",
            key=key,
            error=str(exc),
        )
        return None


def save_job(store: JobStore, job: Job) -> None:
    store.set(job_key(job.id), job.to_document())


def list_jobs(store: JobStore) -> list[Job]:
    jobs = []
    for key in store.list_keys(JOB_KEY_PREFIX):
        document = store.get(key)
        if document is None:
            continue
        job = _parse_job(key, document)
        if job is not None:
            jobs.append(job)
    return jobs


def list_active_jobs(store: JobStore) -> list[Job]:
    return [job for job in list_jobs(store) if job.is_active]


def clear_active_jobs(store: JobStore) -> list[str]:
    """Delete every queued or running document, including ones that no longer parse."""
    cleared = []
    for key in store.list_keys(JOB_KEY_PREFIX):
        document = store.get(key)
        if not isinstance(document, dict) or document.get("status") not in ACTIVE_STATUSES:
            continue
        if store.delete(key):
            cleared.append(key[len(JOB_KEY_PREFIX):])
    return cleared
