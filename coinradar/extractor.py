"""Main-content extraction from fetched HTML."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from lxml import etree, html as lxml_html
from readability import Document

from coinradar.utils import content_hash, normalize_whitespace

log = logging.getLogger(__name__)

MAX_CONTENT_CHARS = 200_000
EXCERPT_CHARS = 1_000
_MIN_READABLE_CHARS = 100

_NOISE_XPATH = (
    "//script | //style | //noscript | //nav | //header | //footer"
    " | //aside | //form | //comment()"
)
_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_RE = re.compile(r"<(script|style|noscript)\b.*?</\1\s*>", re.DOTALL | re.IGNORECASE)
_SCRIPT_TAG_RE = re.compile(r"<script\b", re.IGNORECASE)

_SPA_MARKERS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"""<div[^>]+id=["'](?:root|app|__next|__nuxt|___gatsby)["'][^>]*>\s*</div>""",
        r"data-reactroot",
        r"ng-version=",
        r"__NEXT_DATA__",
        r"window\.__NUXT__",
        r"/_next/static/",
        r"/_nuxt/",
        r"data-server-rendered",
        r"webpackJsonp",
    )
)
_PLACEHOLDER_PHRASES: tuple[str, ...] = (
    "enable javascript",
    "javascript is required",
    "javascript to run this app",
    "you need to enable javascript",
    "loading...",
    "please wait while",
)


@dataclass
class Extraction:
    text: str
    is_js_heavy: bool
    method: str

    @property
    def hash(self) -> str:
        return content_hash(self.text)

    @property
    def excerpt(self) -> str:
        return excerpt(self.text)


def excerpt(text: str) -> str:
    return text[:EXCERPT_CHARS]


# ---------------------------------------------------------------------------
# Extraction passes
# ---------------------------------------------------------------------------


def _readability_text(raw_html: str) -> str:
    try:
        summary = Document(raw_html).summary(html_partial=True)
        return normalize_whitespace(lxml_html.fromstring(summary).text_content())
    except (ValueError, etree.LxmlError) as exc:
        log.debug("Readability failed: %s", exc)
        return ""


def _lxml_text(raw_html: str) -> str | None:
    """Strip boilerplate elements and return the remaining text, ``None`` if unparseable."""
    try:
        tree = lxml_html.fromstring(raw_html)
    except (etree.ParserError, etree.XMLSyntaxError, ValueError):
        return None
    for node in tree.xpath(_NOISE_XPATH):
        if node.getparent() is not None:
            node.drop_tree()
    return normalize_whitespace(tree.text_content())


def _regex_text(raw_html: str) -> str:
    return normalize_whitespace(_TAG_RE.sub(" ", _BLOCK_RE.sub(" ", raw_html)))


def detect_js_heavy(raw_html: str, text: str) -> bool:
    """True when the page looks like a client-rendered app shell."""
    if any(p.search(raw_html) for p in _SPA_MARKERS):
        return True
    if len(_SCRIPT_TAG_RE.findall(raw_html)) > 5 and len(text) < 500:
        return True
    lowered = text.lower()
    return any(phrase in lowered for phrase in _PLACEHOLDER_PHRASES)


def extract(raw_html: str, url: str = "") -> Extraction:
    """Extract readable text from *raw_html*.

    Readability first; if that yields under 100 chars, a manual lxml pass;
    if lxml cannot parse the document, a regex tag strip.
    """
    if not raw_html or not raw_html.strip():
        return Extraction(text="", is_js_heavy=False, method="empty")

    text = _readability_text(raw_html)
    method = "readability"
    if len(text) < _MIN_READABLE_CHARS:
        fallback = _lxml_text(raw_html)
        fallback_method = "lxml"
        if fallback is None:
            fallback, fallback_method = _regex_text(raw_html), "regex"
        if fallback:
            text, method = fallback, fallback_method

    text = text[:MAX_CONTENT_CHARS]
    js_heavy = detect_js_heavy(raw_html, text)
    log.debug("Extracted %d chars from %s via %s (js_heavy=%s)", len(text), url or "<html>", method, js_heavy)
    return Extraction(text=text, is_js_heavy=js_heavy, method=method)
