from __future__ import annotations

import json
from urllib.error import HTTPError, URLError
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from .config import EarlySignalsConfig
from .models import EARLY_SIGNALS_SOURCE_ID, CandidateAlert


class SearxngError(RuntimeError):
    pass


def searxng_search(
    query: str,
    *,
    url: str,
    timeout_s: int = 10,
    categories: str | None = None,
    language: str | None = None,
    time_range: str | None = None,
    safesearch: int = 0,
    max_results: int = 10,
) -> list[dict[str, object]]:
    if not url:
        raise SearxngError("early_signals.searxng_url not set")
    params = {
        "q": query,
        "format": "json",
        "safesearch": str(safesearch),
    }
    if categories:
        params["categories"] = categories
    if language:
        params["language"] = language
    if time_range:
        params["time_range"] = time_range
    req_url = url.rstrip("/") + "/search?" + urlencode(params)
    request = Request(req_url, headers={"User-Agent": "ScourWatch/1.0"})
    try:
        with urlopen(request, timeout=timeout_s) as response:
            body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        raise SearxngError(f"Searxng HTTP error {exc.code}") from exc
    except URLError as exc:
        raise SearxngError(f"Searxng connection error: {exc}") from exc
    except TimeoutError as exc:
        raise SearxngError(f"Searxng timeout after {timeout_s}s") from exc
    try:
        data = json.loads(body)
    except json.JSONDecodeError as exc:
        raise SearxngError("Searxng returned invalid JSON") from exc
    results = []
    for item in data.get("results", [])[: max_results or 10]:
        results.append(
            {
                "url": item.get("url"),
                "title": item.get("title"),
                "snippet": item.get("content") or item.get("snippet"),
                "engine": item.get("engine"),
                "published_at": item.get("publishedDate"),
            }
        )
    return results


class SearxngSearchClient:
    def __init__(self, config: EarlySignalsConfig) -> None:
        self.config = config

    def search(self, query: str) -> list[CandidateAlert]:
        results = searxng_search(
            query,
            url=self.config.searxng_url,
            timeout_s=self.config.timeout_seconds,
            categories="news",
            time_range="week",
            max_results=self.config.max_results,
        )
        candidates = []
        for item in results:
            title = str(item.get("title") or "").strip()
            if not title:
                continue
            url = item.get("url")
            candidates.append(
                CandidateAlert(
                    title=title,
                    url=str(url) if url else None,
                    summary=str(item.get("snippet") or "") or None,
                    source_id=EARLY_SIGNALS_SOURCE_ID,
                    confidence=self.config.base_confidence if url else 0.0,
                    published_at=str(item["published_at"]) if item.get("published_at") else None,
                )
            )
        return candidates
