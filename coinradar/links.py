"""Official-link resolution from a coin's detail page."""
from __future__ import annotations

import json
import logging
import re
from typing import Any
from urllib.parse import urlparse

from lxml import etree, html as lxml_html

from coinradar.utils import absolutize, host_of, normalize_whitespace

log = logging.getLogger(__name__)

LINK_TYPES: tuple[str, ...] = ("website", "docs", "github", "blog", "twitter")
FETCHABLE_LINK_TYPES: tuple[str, ...] = ("website", "docs", "github", "blog")

_MEDIA_EXTENSIONS = (
    ".png", ".jpg", ".jpeg", ".gif", ".svg", ".webp", ".ico", ".bmp",
    ".mp4", ".webm", ".mov", ".avi", ".mp3", ".wav",
    ".zip", ".tar", ".gz", ".rar", ".7z", ".exe", ".dmg", ".apk",
    ".css", ".js", ".json", ".xml", ".woff", ".woff2", ".ttf",
)
_TRACKING_HOSTS = (
    "doubleclick.net", "googlesyndication.com", "googleadservices.com",
    "google-analytics.com", "googletagmanager.com", "facebook.net",
    "adservice.google.com", "scorecardresearch.com", "hotjar.com",
    "segment.io", "mixpanel.com", "amplitude.com", "adnxs.com",
    "taboola.com", "outbrain.com", "bit.ly",
)
_POST_PATH_RE = re.compile(
    r"/status(?:es)?/\d+|/comments/|/posts?/|/p/[^/]+|/reel/|/watch\b|/shorts/",
    re.IGNORECASE,
)
_TELEGRAM_POST_RE = re.compile(r"^/[^/]+/\d+/?$")
_SOCIAL_HOSTS = ("twitter.com", "x.com")
_TWITTER_RESERVED = {"intent", "share", "home", "search", "i", "hashtag", "explore", "coingecko"}
_COMMUNITY_HOSTS = (
    "t.me", "telegram.me", "discord.gg", "discord.com", "reddit.com", "youtube.com",
    "facebook.com", "instagram.com", "linkedin.com", "tiktok.com",
)


def is_valid_link(url: str) -> bool:
    """Reject non-HTTP URLs, media files, social posts, trackers and listing-site self links."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return False
    host = host_of(url)
    path = parsed.path.lower()
    if "coingecko" in host:
        return False
    if path.endswith(_MEDIA_EXTENSIONS):
        return False
    if any(host == t or host.endswith("." + t) for t in _TRACKING_HOSTS):
        return False
    if _POST_PATH_RE.search(path) or ("youtube" in host and "v=" in parsed.query):
        return False
    if host in ("t.me", "telegram.me") and _TELEGRAM_POST_RE.match(path):
        return False
    return True


def _twitter_profile(url: str) -> bool:
    host = host_of(url)
    if host not in _SOCIAL_HOSTS:
        return False
    segments = [s for s in urlparse(url).path.split("/") if s]
    return len(segments) == 1 and segments[0].lower() not in _TWITTER_RESERVED


def classify_link(url: str, anchor_text: str = "") -> str | None:
    """Link type for *url* given its anchor text, ``None`` when it fits none."""
    host = host_of(url)
    path = urlparse(url).path.lower()
    text = anchor_text.lower()
    if host == "github.com" or host.endswith(".github.com"):
        return "github"
    if host in _SOCIAL_HOSTS:
        return "twitter" if _twitter_profile(url) else None
    if host.endswith("medium.com") or host.startswith("blog.") or "/blog" in path or "blog" in text:
        return "blog"
    if (
        host.startswith("docs.") or "gitbook" in host or "whitepaper" in path or path.endswith(".pdf")
        or any(w in text for w in ("docs", "documentation", "whitepaper", "white paper"))
    ):
        return "docs"
    if "website" in text or "homepage" in text or "official site" in text:
        return "website"
    return None


# ---------------------------------------------------------------------------
# Link parsers
# ---------------------------------------------------------------------------


class PatternLinkParser:
    """Anchor href patterns plus the anchor's text context."""

    name = "pattern"

    def parse(self, tree, page_url: str) -> dict[str, str]:
        links: dict[str, str] = {}
        for a in tree.xpath("//a[@href]"):
            url = absolutize(page_url, a.get("href"))
            if not is_valid_link(url):
                continue
            context = " ".join(
                filter(None, [a.text_content(), a.get("title") or "", a.get("aria-label") or ""])
            )
            parent = a.getparent()
            if parent is not None and len(normalize_whitespace(context)) < 3:
                context = f"{context} {parent.text_content()}"
            link_type = classify_link(url, normalize_whitespace(context))
            if link_type and link_type not in links:
                links[link_type] = url
        return links


class StructuredDataLinkParser:
    """JSON-LD ``url``/``sameAs``, ``og:url`` and canonical link tags."""

    name = "structured"

    def _json_ld_urls(self, tree) -> list[str]:
        urls: list[str] = []
        for raw in tree.xpath("//script[@type='application/ld+json']/text()"):
            try:
                data: Any = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                continue
            for node in data if isinstance(data, list) else [data]:
                if not isinstance(node, dict):
                    continue
                if isinstance(node.get("url"), str):
                    urls.append(node["url"])
                same_as = node.get("sameAs")
                if isinstance(same_as, str):
                    urls.append(same_as)
                elif isinstance(same_as, list):
                    urls.extend(u for u in same_as if isinstance(u, str))
        return urls

    def parse(self, tree, page_url: str) -> dict[str, str]:
        candidates = self._json_ld_urls(tree)
        candidates.extend(tree.xpath("//meta[@property='og:url']/@content"))
        candidates.extend(tree.xpath("//link[@rel='canonical']/@href"))
        links: dict[str, str] = {}
        for raw in candidates:
            url = absolutize(page_url, raw)
            if not is_valid_link(url):
                continue
            link_type = classify_link(url)
            if link_type is None:
                if any(host_of(url).endswith(h) for h in _SOCIAL_HOSTS + _COMMUNITY_HOSTS):
                    continue
                link_type = "website"
            links.setdefault(link_type, url)
        return links


def resolve_links(raw_html: str, page_url: str) -> dict[str, str]:
    """Typed official links found on a detail page."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError) as exc:
        log.warning("Could not parse detail page %s: %s", page_url, exc)
        return {}
    links = PatternLinkParser().parse(tree, page_url)
    for link_type, url in StructuredDataLinkParser().parse(tree, page_url).items():
        links.setdefault(link_type, url)
    return {t: links[t] for t in LINK_TYPES if t in links}
