"""Engine-specific result-URL extraction from search result pages.

Each engine has a prioritized list of CSS selectors covering its past and
current layouts. When none of them yields a usable link, a generic scan over
every anchor on the page is used instead.
"""

from __future__ import annotations

import base64
import binascii
import re
from urllib.parse import parse_qs, quote_plus, unquote, urlparse

from bs4 import BeautifulSoup

from deepcite.tools.web_utils import canonicalize_url, is_blocked_url, is_valid_url

MAX_RESULTS_PER_ENGINE = 10
MAX_GENERIC_RESULTS = 8

SEARCH_URL_TEMPLATES = {
    "duckduckgo": "https://html.duckduckgo.com/html/?q={query}",
    "bing": "https://www.bing.com/search?q={query}",
    "brave": "https://search.brave.com/search?q={query}",
    "yahoo": "https://search.yahoo.com/search?p={query}",
    "google": "https://www.google.com/search?hl=en&q={query}",
    "scholar": "https://scholar.google.com/scholar?hl=en&q={query}",
}

# Merge order when several engines return the same rank.
ENGINE_PRIORITY = ("duckduckgo", "bing", "brave", "yahoo", "google", "scholar")

ENGINE_DOMAINS = {
    "duckduckgo": "duckduckgo.com",
    "bing": "bing.com",
    "brave": "brave.com",
    "yahoo": "yahoo.com",
    "google": "google.com",
    "scholar": "scholar.google.com",
}

ENGINE_SELECTORS: dict[str, tuple[str, ...]] = {
    "google": ("div.g a[href]", "div.yuRUbf a[href]", "[data-href]"),
    "yahoo": ("div.compTitle a[href]", "h3.title a[href]"),
    "scholar": ("h3.gs_rt a[href]", "div.gs_or_ggsm a[href]", "a[data-clk]", "div.gs_ri a[href]"),
    "duckduckgo": ("a.result__a", "a.result__url", "[data-result] a[href]", "a.result-link"),
    "brave": ("a.result-header", "div.snippet a.heading-serpresult", "a.snippet-title", "article a[href]"),
    "bing": ("li.b_algo h2 a", "div.b_title a", "a.tilk"),
}

_YAHOO_RU = re.compile(r"/RU=([^/]+)/", re.IGNORECASE)


def build_search_url(engine: str, query: str) -> str:
    template = SEARCH_URL_TEMPLATES.get(engine)
    if template is None:
        raise ValueError(f"Unsupported search engine: {engine}")
    return template.format(query=quote_plus(query))


def decode_redirect(href: str) -> str:
    """Unwrap tracking redirects that carry the destination URL inside them."""
    if not href:
        return ""
    if href.startswith("//"):
        href = "https:" + href

    try:
        parsed = urlparse(href)
    except ValueError:
        return href
    params = parse_qs(parsed.query)
    host = (parsed.hostname or "").lower()

    # DuckDuckGo: /l/?uddg=<percent-encoded url>
    if "uddg" in params:
        return params["uddg"][0]

    # Bing: /ck/a?...&u=a1<base64url>
    if "bing.com" in host and "u" in params:
        encoded = params["u"][0]
        if encoded.startswith("a1"):
            payload = encoded[2:]
            payload += "=" * (-len(payload) % 4)
            try:
                return base64.urlsafe_b64decode(payload).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError, ValueError):
                return href

    # Yahoo: .../RU=<percent-encoded url>/RK=...
    if "yahoo.com" in host:
        match = _YAHOO_RU.search(href)
        if match:
            return unquote(match.group(1))

    # Google: /url?q=<url>
    if parsed.path == "/url" and "q" in params:
        return params["q"][0]

    return href


def _anchor_href(node) -> str:
    href = node.get("href") or node.get("data-href") or ""
    if not href and node.name != "a":
        inner = node.find("a", href=True)
        href = inner.get("href", "") if inner else ""
    return str(href).strip()


def is_result_url(url: str, engine: str | None = None) -> bool:
    if not is_valid_url(url) or is_blocked_url(url):
        return False
    if engine:
        own = ENGINE_DOMAINS.get(engine)
        if own and own in (urlparse(url).hostname or "").lower():
            return False
    return True


def _collect(urls: list[str], seen: set[str], candidates, engine: str | None, limit: int) -> None:
    for node in candidates:
        if len(urls) >= limit:
            return
        url = decode_redirect(_anchor_href(node))
        if not is_result_url(url, engine):
            continue
        key = canonicalize_url(url)
        if key in seen:
            continue
        seen.add(key)
        urls.append(url)


def extract_engine_urls(html: str, engine: str, max_results: int = MAX_RESULTS_PER_ENGINE) -> list[str]:
    soup = BeautifulSoup(html, "html.parser")
    urls: list[str] = []
    seen: set[str] = set()
    for selector in ENGINE_SELECTORS.get(engine, ()):
        _collect(urls, seen, soup.select(selector), engine, max_results)
        if len(urls) >= max_results:
            break
    return urls


def extract_generic_urls(html: str, engine: str | None = None, max_results: int = MAX_GENERIC_RESULTS) -> list[str]:
    soup = BeautifulSoup(html, "html.parser")
    urls: list[str] = []
    _collect(urls, set(), soup.find_all("a", href=True), engine, max_results)
    return urls


def extract_result_urls(html: str, engine: str) -> list[str]:
    """Engine patterns first, then the generic anchor scan if they found nothing."""
    urls = extract_engine_urls(html, engine)
    if not urls:
        urls = extract_generic_urls(html, engine)
    return urls
