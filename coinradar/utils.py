"""Shared utility functions used across coinradar modules."""
from __future__ import annotations

import hashlib
import json
import re
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urljoin, urlparse

_MISSING = object()

_WS_RE = re.compile(r"\s+")


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def utcnow() -> datetime:
    """Naive UTC timestamp, the form SQLite round-trips unchanged."""
    return datetime.now(UTC).replace(tzinfo=None)


def normalize_whitespace(text: str) -> str:
    return _WS_RE.sub(" ", text.replace("\xa0", " ")).strip()


def content_hash(text: str) -> str:
    """First 16 hex chars of the SHA-256 of the lower-cased, trimmed text."""
    return hashlib.sha256(text.strip().lower().encode("utf-8")).hexdigest()[:16]


def host_of(url: str) -> str:
    """Lower-cased hostname without a leading ``www.``; empty on garbage input."""
    try:
        host = (urlparse(url).hostname or "").lower()
    except ValueError:
        return ""
    return host.removeprefix("www.")


def is_allowed_domain(url: str, allowed: list[str]) -> bool:
    host = host_of(url)
    if not host:
        return False
    return any(a and (host == a or host.endswith(f".{a}") or a in host) for a in allowed)


def absolutize(base_url: str, maybe_relative_url: str | None) -> str:
    if not maybe_relative_url:
        return ""
    return urljoin(base_url, maybe_relative_url.strip())
