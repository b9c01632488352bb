from __future__ import annotations

import threading
from typing import Protocol

from ..config import UrlNormalizationConfig
from ..models import CandidateAlert
from ..storage import alert_exists, init_db, insert_alert
from ..utils import normalize_url, stable_id_from_url, utc_now_iso_offset


class AlertSink(Protocol):
    def is_duplicate(self, candidate: CandidateAlert) -> bool: ...

    def save(self, candidate: CandidateAlert) -> str: ...


def alert_fingerprint(
    candidate: CandidateAlert, url_normalization: UrlNormalizationConfig | None = None
) -> str:
    if candidate.url:
        if url_normalization is not None:
            url = normalize_url(
                candidate.url,
                strip_tracking_params=url_normalization.strip_tracking_params,
                tracking_params=url_normalization.tracking_params,
            )
        else:
            url = normalize_url(candidate.url, strip_tracking_params=False, tracking_params=[])
        return stable_id_from_url(url)
    key = f"{candidate.title.strip().lower()}|{(candidate.country or '').strip().lower()}"
    return stable_id_from_url(key)


class MemoryAlertSink:
    def __init__(self, url_normalization: UrlNormalizationConfig | None = None) -> None:
        self.url_normalization = url_normalization
        self.saved: dict[str, CandidateAlert] = {}
        self._lock = threading.Lock()

    def is_duplicate(self, candidate: CandidateAlert) -> bool:
        with self._lock:
            return alert_fingerprint(candidate, self.url_normalization) in self.saved

    def save(self, candidate: CandidateAlert) -> str:
        alert_id = alert_fingerprint(candidate, self.url_normalization)
        with self._lock:
            self.saved[alert_id] = candidate
        return alert_id


class DBAlertSink:
    def __init__(
        self,
        db_path: str,
        *,
        window_days: int = 14,
        enabled: bool = True,
        url_normalization: UrlNormalizationConfig | None = None,
    ) -> None:
        self.db_path = db_path
        self.window_days = window_days
        self.enabled = enabled
        self.url_normalization = url_normalization

    def is_duplicate(self, candidate: CandidateAlert) -> bool:
        if not self.enabled:
            return False
        alert_id = alert_fingerprint(candidate, self.url_normalization)
        since = utc_now_iso_offset(seconds=-self.window_days * 86400)
        with init_db(self.db_path) as conn:
            return alert_exists(conn, alert_id, since)

    def save(self, candidate: CandidateAlert) -> str:
        alert_id = alert_fingerprint(candidate, self.url_normalization)
        with init_db(self.db_path) as conn:
            insert_alert(conn, alert_id, candidate)
        return alert_id
