"""Discovery of newly listed coins from the public listings page.

Three parsing strategies are tried in order and the first one that returns
anything wins. The listings site changes its markup often, so the last
strategy only relies on the shape of detail URLs.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from urllib.parse import urlparse

import httpx
from lxml import etree, html as lxml_html

from coinradar.config import Settings
from coinradar.fetcher import fetch
from coinradar.schemas import RunSettings
from coinradar.utils import absolutize, is_allowed_domain, normalize_whitespace

log = logging.getLogger(__name__)

MAX_LISTINGS = 50
NONTRIVIAL_HTML_CHARS = 5_000

_DETAIL_PATH_RE = re.compile(r"^/([a-z]{2}(?:-[a-z]{2,4})?)/coins/([a-z0-9][a-z0-9-]*)/?$")
_DETAIL_HREF_RE = re.compile(r"""href=["']((?:https?://(?:www\.)?coingecko\.com)?/[a-z]{2}(?:-[a-z]{2,4})?/coins/[a-z0-9][a-z0-9-]*)/?["']""")
_SYMBOL_RE = re.compile(r"^[A-Z0-9][A-Z0-9.$-]{0,14}$")
_NAME_SYMBOL_RE = re.compile(r"^\s*(.+?)\s*\(([A-Za-z0-9.$-]{1,15})\)")
_TITLE_PRICE_RE = re.compile(r"^\s*(.+?)\s+Price:?\s+\(?([A-Z0-9.$-]{1,15})\)?\b")
_H1_PRICE_RE = re.compile(r"^\s*(.+?)\s+([A-Z0-9]{2,10})\s+Price\b")

IGNORED_SLUGS: frozenset[str] = frozenset({
    "all", "categories", "compare", "high-volume", "most-visited", "new",
    "recently_added", "top-gainers-losers", "trending", "watchlist",
})


@dataclass(frozen=True)
class Listing:
    name: str
    symbol: str
    detail_url: str


# ---------------------------------------------------------------------------
# Detail URL helpers
# ---------------------------------------------------------------------------


def _detail_parts(url: str) -> tuple[str, str] | None:
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return None
    host = (parsed.hostname or "").lower()
    if parsed.scheme not in ("http", "https") or host not in ("coingecko.com", "www.coingecko.com"):
        return None
    m = _DETAIL_PATH_RE.match(parsed.path.lower())
    if not m or m.group(2) in IGNORED_SLUGS:
        return None
    return m.group(1), m.group(2)


def is_detail_url(url: str) -> bool:
    return _detail_parts(url) is not None


def normalize_detail_url(url: str) -> str:
    """Canonical ``https://www.coingecko.com/<lang>/coins/<slug>`` form.

    Raises ValueError for anything that is not a coin detail URL.
    """
    parts = _detail_parts(url)
    if parts is None:
        raise ValueError(f"Not a coin detail URL: {url!r}")
    lang, slug = parts
    return f"https://www.coingecko.com/{lang}/coins/{slug}"


def slug_of(detail_url: str) -> str:
    parts = _detail_parts(detail_url)
    return parts[1] if parts else ""


def identity_from_slug(slug: str) -> tuple[str, str]:
    words = [w for w in slug.split("-") if w]
    name = " ".join(w.capitalize() for w in words) or slug
    symbol = (words[0] if words else slug).upper()[:10]
    return name, symbol


def provisional_identity(raw_html: str, url: str) -> tuple[str, str]:
    """Best-effort (name, symbol) from a detail page, falling back to the URL slug."""
    candidates: list[str] = []
    if raw_html:
        try:
            tree = lxml_html.fromstring(raw_html)
        except (etree.ParserError, etree.XMLSyntaxError, ValueError):
            tree = None
        if tree is not None:
            candidates.extend(normalize_whitespace(h.text_content()) for h in tree.xpath("//h1"))
            candidates.extend(normalize_whitespace(t) for t in tree.xpath("//title/text()"))
    for text in candidates:
        m = _NAME_SYMBOL_RE.match(text) or _TITLE_PRICE_RE.match(text) or _H1_PRICE_RE.match(text)
        if m:
            return m.group(1).strip(), m.group(2).upper()
    return identity_from_slug(slug_of(url))


# ---------------------------------------------------------------------------
# Listing parsers
# ---------------------------------------------------------------------------


class ListingParser:
    name = "base"

    def parse(self, raw_html: str, page_url: str) -> list[Listing]:
        raise NotImplementedError


def _detail_anchors(tree, page_url: str) -> list[tuple[object, str]]:
    out = []
    for a in tree.xpath(".//a[@href]"):
        url = absolutize(page_url, a.get("href"))
        if is_detail_url(url):
            out.append((a, normalize_detail_url(url)))
    return out


def _split_name_symbol(text: str) -> tuple[str, str]:
    m = _NAME_SYMBOL_RE.match(text)
    if m:
        return m.group(1).strip(), m.group(2).upper()
    words = text.split()
    if len(words) >= 2 and _SYMBOL_RE.match(words[-1]) and not words[-1].isdigit():
        return " ".join(words[:-1]), words[-1]
    return text, ""


class AnchorListingParser(ListingParser):
    """Detail links whose own text carries the coin name."""

    name = "anchor"

    def parse(self, raw_html: str, page_url: str) -> list[Listing]:
        tree = lxml_html.fromstring(raw_html)
        listings: list[Listing] = []
        for a, url in _detail_anchors(tree, page_url):
            text = normalize_whitespace(a.text_content())
            if not text or len(text) > 120:
                continue
            name, symbol = _split_name_symbol(text)
            if not name:
                continue
            if not symbol:
                symbol = identity_from_slug(slug_of(url))[1]
            listings.append(Listing(name=name, symbol=symbol, detail_url=url))
        return listings


class TableRowListingParser(ListingParser):
    """Table rows carrying a name, a symbol cell and a detail link."""

    name = "table_row"

    _SYMBOL_XPATH = (
        ".//*[contains(@class,'uppercase') or contains(@class,'symbol') or contains(@class,'ticker')]"
    )

    def parse(self, raw_html: str, page_url: str) -> list[Listing]:
        tree = lxml_html.fromstring(raw_html)
        listings: list[Listing] = []
        for row in tree.xpath("//tr"):
            anchors = _detail_anchors(row, page_url)
            if not anchors:
                continue
            anchor, url = anchors[0]
            symbol = ""
            for node in row.xpath(self._SYMBOL_XPATH):
                candidate = normalize_whitespace(node.text_content()).upper()
                if _SYMBOL_RE.match(candidate):
                    symbol = candidate
                    break
            titles = row.xpath(".//*[@title]/@title")
            name = normalize_whitespace(titles[0]) if titles else ""
            if not name:
                name = _split_name_symbol(normalize_whitespace(anchor.text_content()))[0]
            if name and symbol:
                listings.append(Listing(name=name, symbol=symbol, detail_url=url))
        return listings


class UrlPatternListingParser(ListingParser):
    """Last resort: any detail URL in the markup, identity derived from the slug."""

    name = "url_pattern"

    def parse(self, raw_html: str, page_url: str) -> list[Listing]:
        listings: list[Listing] = []
        for href in _DETAIL_HREF_RE.findall(raw_html):
            url = absolutize(page_url, href)
            if not is_detail_url(url):
                continue
            url = normalize_detail_url(url)
            name, symbol = identity_from_slug(slug_of(url))
            listings.append(Listing(name=name, symbol=symbol, detail_url=url))
        return listings


LISTING_PARSERS: tuple[ListingParser, ...] = (
    AnchorListingParser(),
    TableRowListingParser(),
    UrlPatternListingParser(),
)


def _dedupe(listings: list[Listing]) -> list[Listing]:
    unique: dict[str, Listing] = {}
    for item in listings:
        unique.setdefault(item.detail_url, item)
    return list(unique.values())[:MAX_LISTINGS]


def parse_listings(raw_html: str, page_url: str) -> list[Listing]:
    for parser in LISTING_PARSERS:
        try:
            found = _dedupe(parser.parse(raw_html, page_url))
        except (etree.ParserError, etree.XMLSyntaxError, ValueError) as exc:
            log.warning("Listing parser %s failed: %s", parser.name, exc)
            continue
        if found:
            log.info("Listing parser %s found %d coin(s)", parser.name, len(found))
            return found
    return []


# ---------------------------------------------------------------------------
# Discovery entrypoint
# ---------------------------------------------------------------------------


async def discover(
    run_settings: RunSettings,
    config: Settings,
    *,
    client: httpx.AsyncClient | None = None,
) -> list[Listing]:
    """Fetch and parse the listings page. Never raises; failures yield ``[]``."""
    if run_settings.hybrid_mode:
        log.info("Hybrid mode enabled, skipping web discovery")
        return []
    if not is_allowed_domain(config.listings_url, run_settings.allow_domains):
        log.info("Listings domain %s not in allowed domains, skipping discovery", config.listings_domain)
        return []

    attempts = max(1, config.discovery_attempts)
    for attempt in range(1, attempts + 1):
        try:
            result = await fetch(config.listings_url, client=client)
            if not result.ok:
                log.warning("Listings fetch failed: %s", result.error)
                return []
            listings = parse_listings(result.body, config.listings_url)
        except Exception:
            log.exception("Discovery failed")
            return []
        if listings:
            return listings
        if len(result.body) < NONTRIVIAL_HTML_CHARS:
            log.warning("Listings page too small to parse (%d chars)", len(result.body))
            return []
        log.warning("No listings parsed from %d chars of HTML (%s/%s)", len(result.body), attempt, attempts)
        if attempt < attempts:
            await asyncio.sleep(config.discovery_backoff_seconds * attempt)
    return []
