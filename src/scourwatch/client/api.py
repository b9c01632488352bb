from __future__ import annotations

import json
import logging
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from ..utils import json_dumps, log_event


class ScourApiError(RuntimeError):
    def __init__(self, message: str, status: int | None = None, detail: Any = None) -> None:
        super().__init__(message)
        self.status = status
        self.detail = detail


class ScourClient:
    """Thin HTTP client for the scour endpoints of the ScourWatch API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 8.0,
        run_timeout_s: float = 900.0,
        admin_token: str | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.run_timeout_s = run_timeout_s
        self.admin_token = admin_token
        self.logger = logger or logging.getLogger("scourwatch.client")

    def run(
        self,
        *,
        source_ids: list[str] | None = None,
        early_signals: bool = False,
        job_id: str | None = None,
        batch_offset: int | None = None,
        batch_size: int | None = None,
        wait: bool | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"earlySignalsOnly": early_signals}
        if source_ids:
            body["sourceIds"] = list(source_ids)
        if job_id:
            body["jobId"] = job_id
        if batch_offset is not None:
            body["batchOffset"] = batch_offset
        if batch_size is not None:
            body["batchSize"] = batch_size
        if wait is not None:
            body["wait"] = wait
        return self._request("POST", "/scour/run", body=body, timeout=self.run_timeout_s)

    def status(self, job_id: str) -> dict[str, Any]:
        payload = self._request("GET", "/scour/status", params={"jobId": job_id})
        job = payload.get("job")
        if not isinstance(job, dict):
            raise ScourApiError("status response missing job", detail=payload)
        return job

    def logs(self, job_id: str, limit: int = 50) -> list[dict[str, Any]]:
        payload = self._request("GET", "/scour/logs", params={"jobId": job_id, "limit": limit})
        return list(payload.get("logs") or [])

    def force_stop(self) -> dict[str, Any]:
        return self._request("POST", "/force-stop-scour", body={})

    def list_sources(self) -> list[dict[str, Any]]:
        payload = self._request("GET", "/sources")
        if not isinstance(payload, list):
            raise ScourApiError("sources response must be a list", detail=payload)
        return payload

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        url = self.base_url + path
        if params:
            url += "?" + urlencode(params)
        headers = {"Accept": "application/json", "User-Agent": "ScourWatch/1.0"}
        data = None
        if body is not None:
            data = json_dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if self.admin_token:
            headers["X-Admin-Token"] = self.admin_token
        request = Request(url, data=data, headers=headers, method=method)
        try:
            with urlopen(request, timeout=timeout or self.timeout_s) as response:
                raw = response.read().decode("utf-8", errors="replace")
        except HTTPError as exc:
            detail = _error_detail(exc)
            log_event(
                self.logger,
                logging.DEBUG,
                "api_http_error",
                method=method,
                path=path,
                status=exc.code,
            )
            raise ScourApiError(
                f"{method} {path} failed with HTTP {exc.code}", status=exc.code, detail=detail
            ) from exc
        except URLError as exc:
            raise ScourApiError(f"{method} {path} failed: {exc.reason}") from exc
        except TimeoutError as exc:
            raise ScourApiError(f"{method} {path} timed out") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ScourApiError(f"{method} {path} returned invalid JSON") from exc


def _error_detail(exc: HTTPError) -> Any:
    try:
        raw = exc.read().decode("utf-8", errors="replace")
    except OSError:
        return None
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return raw or None
    if isinstance(payload, dict) and "detail" in payload:
        return payload["detail"]
    return payload
