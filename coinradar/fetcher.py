"""HTTP page fetcher with retry, backoff and User-Agent rotation.

:func:`fetch` never raises for network outcomes: every terminal result comes
back as a :class:`FetchResult` so callers can record a page status.
"""
from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from coinradar.config import Settings, get_settings
from coinradar.models import PageStatus

log = logging.getLogger(__name__)

USER_AGENTS: tuple[str, ...] = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 (KHTML, like Gecko) "
    "Version/17.4 Safari/605.1.15",
    "Mozilla/5.0 (X11; Linux x86_64; rv:125.0) Gecko/20100101 Firefox/125.0",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/124.0.0.0 Safari/537.36 Edg/124.0.0.0",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/123.0.0.0 Safari/537.36",
)

STEALTH_HEADERS: dict[str, str] = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
    "Accept-Encoding": "gzip, deflate",
    "Upgrade-Insecure-Requests": "1",
    "Sec-Fetch-Dest": "document",
    "Sec-Fetch-Mode": "navigate",
    "Sec-Fetch-Site": "none",
    "Sec-Fetch-User": "?1",
    "Cache-Control": "max-age=0",
}

_RETRYABLE_STATUS = {429, 500, 502, 503, 504}

MIN_CONTENT_CHARS = 50
SUFFICIENT_CONTENT_CHARS = 200


@dataclass
class FetchResult:
    url: str
    status_code: int | None = None
    body: str = ""
    content_type: str = ""
    error: str | None = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code is not None and 200 <= self.status_code < 300

    @property
    def is_pdf(self) -> bool:
        return "application/pdf" in self.content_type or self.url.lower().split("?")[0].endswith(".pdf")

    @property
    def is_textual(self) -> bool:
        ct = self.content_type.lower()
        return not ct or "html" in ct or ct.startswith("text/") or "xml" in ct


def browser_headers(user_agent: str | None = None) -> dict[str, str]:
    return {**STEALTH_HEADERS, "User-Agent": user_agent or random.choice(USER_AGENTS)}


def _next_user_agent(current: str) -> str:
    choices = [ua for ua in USER_AGENTS if ua != current]
    return random.choice(choices or list(USER_AGENTS))


def _backoff_delay(attempt: int) -> float:
    return 2 ** attempt + random.uniform(0, 1)


@asynccontextmanager
async def open_client(config: Settings | None = None) -> AsyncIterator[httpx.AsyncClient]:
    config = config or get_settings()
    async with httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(config.request_timeout_seconds),
    ) as client:
        yield client


async def fetch(
    url: str,
    headers: dict[str, str] | None = None,
    *,
    client: httpx.AsyncClient | None = None,
    max_attempts: int | None = None,
) -> FetchResult:
    """GET *url* with up to ``max_attempts`` tries.

    429, 5xx and transport errors back off exponentially, 403 retries with a
    different User-Agent, other 4xx stop immediately.
    """
    if client is None:
        async with open_client() as own_client:
            return await fetch(url, headers, client=own_client, max_attempts=max_attempts)

    attempts = max_attempts or get_settings().max_fetch_attempts
    request_headers = browser_headers()
    if headers:
        request_headers.update(headers)
    result = FetchResult(url=url)

    for attempt in range(1, attempts + 1):
        result.attempts = attempt
        try:
            resp = await client.get(url, headers=request_headers)
        except httpx.HTTPError as exc:
            result.status_code = None
            result.error = f"{type(exc).__name__}: {exc}"
            log.warning("Fetch failed (%s/%s) %s: %s", attempt, attempts, url, result.error)
            if attempt < attempts:
                await asyncio.sleep(_backoff_delay(attempt))
            continue

        result.status_code = resp.status_code
        result.content_type = resp.headers.get("content-type", "")
        if 200 <= resp.status_code < 300:
            result.body = resp.text
            result.error = None
            return result

        result.error = f"HTTP {resp.status_code}"
        if resp.status_code == 403:
            request_headers["User-Agent"] = _next_user_agent(request_headers["User-Agent"])
            log.info("403 from %s, rotating User-Agent (%s/%s)", url, attempt, attempts)
        elif resp.status_code in _RETRYABLE_STATUS:
            log.warning("HTTP %s from %s (%s/%s)", resp.status_code, url, attempt, attempts)
        else:
            log.warning("HTTP %s from %s, not retrying", resp.status_code, url)
            return result
        if attempt < attempts:
            await asyncio.sleep(_backoff_delay(attempt))

    return result


def page_status_for(result: FetchResult, text: str = "", is_js_heavy: bool = False) -> PageStatus:
    """Map a fetch outcome plus its extracted text onto a page status."""
    if result.status_code in (403, 429) and not result.ok:
        return PageStatus.BLOCKED
    if not result.ok:
        return PageStatus.FAILED
    if result.is_pdf:
        return PageStatus.PDF_DETECTED
    if not result.is_textual:
        return PageStatus.INVALID_CONTENT
    length = len(text.strip())
    if length < MIN_CONTENT_CHARS:
        return PageStatus.JS_EMPTY if is_js_heavy else PageStatus.EMPTY
    if length < SUFFICIENT_CONTENT_CHARS:
        return PageStatus.INSUFFICIENT_CONTENT
    return PageStatus.FETCHED
