from __future__ import annotations

import logging
import re
import time
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import urljoin
from urllib.request import Request, urlopen

import feedparser
from bs4 import BeautifulSoup

from .config import HttpConfig
from .models import CandidateAlert, Source
from .utils import log_event, utc_now_iso

PAGE_TYPES = ("html", "page", "web")


class IngestError(RuntimeError):
    pass


def _fetch_url(
    url: str,
    headers: dict[str, str],
    timeout: int,
    max_retries: int,
    backoff_seconds: int,
) -> tuple[int | None, bytes | None, str | None]:
    attempt = 0
    while attempt <= max_retries:
        try:
            request = Request(url, headers=headers)
            with urlopen(request, timeout=timeout) as response:
                status = response.getcode()
                content = response.read()
            return status, content, None
        except HTTPError as exc:
            return exc.code, None, str(exc)
        except URLError as exc:
            if attempt >= max_retries:
                return None, None, str(exc)
            time.sleep(backoff_seconds * (attempt + 1))
            attempt += 1
        except TimeoutError as exc:
            if attempt >= max_retries:
                return None, None, f"timeout: {exc}"
            time.sleep(backoff_seconds * (attempt + 1))
            attempt += 1
    return None, None, "Unknown fetch error"


class SourceExtractor:
    def __init__(self, http: HttpConfig, logger: logging.Logger | None = None) -> None:
        self.http = http
        self.logger = logger or logging.getLogger("scourwatch.ingest")

    def extract(self, source: Source) -> list[CandidateAlert]:
        status, content, error = _fetch_url(
            source.url,
            headers={"User-Agent": self.http.user_agent},
            timeout=self.http.timeout_seconds,
            max_retries=self.http.max_retries,
            backoff_seconds=self.http.backoff_seconds,
        )
        if error or content is None:
            log_event(
                self.logger,
                logging.WARNING,
                "source_fetch_failed",
                source_id=source.id,
                http_status=status,
                error=error,
            )
            if status:
                raise IngestError(f"HTTP {status} fetching {source.url}")
            raise IngestError(error or f"empty response from {source.url}")
        if source.type in PAGE_TYPES:
            candidates = parse_page(content, source)
        else:
            candidates = parse_feed(content, source)
        log_event(
            self.logger,
            logging.DEBUG,
            "source_parsed",
            source_id=source.id,
            candidates=len(candidates),
        )
        return candidates


def parse_feed(content: bytes | str, source: Source) -> list[CandidateAlert]:
    parsed = feedparser.parse(content)
    entries = list(parsed.entries or [])
    if getattr(parsed, "bozo", False) and not entries:
        raise IngestError(f"feed parse error: {parsed.get('bozo_exception')}")
    fetched_at = utc_now_iso()
    candidates = []
    for entry in entries:
        title = (entry.get("title") or "").strip()
        link = entry.get("link") or entry.get("id")
        if not title:
            continue
        candidates.append(
            CandidateAlert(
                title=title,
                url=link,
                summary=_clean_summary(entry.get("summary") or entry.get("description")),
                source_id=source.id,
                confidence=source.trust_score,
                published_at=_entry_published_at(entry) or fetched_at,
            )
        )
    return candidates


def parse_page(content: bytes | str, source: Source) -> list[CandidateAlert]:
    html = content.decode("utf-8", errors="replace") if isinstance(content, bytes) else content
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "aside"]):
        tag.decompose()
    candidates = []
    seen: set[str] = set()
    for article in soup.find_all("article"):
        heading = article.find(["h1", "h2", "h3"])
        if heading is None:
            continue
        title = _normalize_text(heading.get_text(" ", strip=True))
        anchor = heading.find("a", href=True) or article.find("a", href=True)
        url = urljoin(source.url, anchor["href"]) if anchor else None
        key = url or title
        if not title or key in seen:
            continue
        seen.add(key)
        summary_tag = article.find("p")
        candidates.append(
            CandidateAlert(
                title=title,
                url=url,
                summary=_normalize_text(summary_tag.get_text(" ", strip=True)) if summary_tag else None,
                source_id=source.id,
                confidence=source.trust_score,
            )
        )
    if candidates:
        return candidates
    title_tag = soup.find("title")
    if title_tag and title_tag.get_text(strip=True):
        candidates.append(
            CandidateAlert(
                title=_normalize_text(title_tag.get_text(" ", strip=True)),
                url=source.url,
                summary=None,
                source_id=source.id,
                confidence=source.trust_score,
            )
        )
    return candidates


def _entry_published_at(entry: Any) -> str | None:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    return time.strftime("%Y-%m-%dT%H:%M:%S+00:00", parsed)


def _clean_summary(value: str | None) -> str | None:
    if not value:
        return None
    text = BeautifulSoup(value, "html.parser").get_text(" ", strip=True)
    return _normalize_text(text) or None


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
