from __future__ import annotations

import re
from urllib.parse import urlparse, urlsplit, urlunsplit

# Search-result pages, trackers and sites that never carry citable content.
BLOCKED_DOMAINS = (
    "duckduckgo.com",
    "brave.com",
    "bing.com",
    "google.com",
    "microsoft.com/bing",
    "yahoo.com",
    "facebook.com",
    "twitter.com",
    "instagram.com",
    "tiktok.com",
    "youtube.com/results",
    "reddit.com/search",
    "linkedin.com/search",
    "yimg.com",
    "yahoo.net",
    "gstatic.com",
    "googleapis.com",
    "yahoo.uservoice.com",
    "scout.yahoo.com",
    "scholar.google.com/scholar_url",
    "r.bing.com",
)


def is_valid_url(url: str) -> bool:
    """Basic URL validation: http(s) only, with a host."""
    if not url or "javascript:" in url.lower():
        return False
    try:
        result = urlparse(url)
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def is_blocked_url(url: str) -> bool:
    lowered = url.lower()
    return any(blocked in lowered for blocked in BLOCKED_DOMAINS)


def clean_content(text: str, max_length: int = 8000) -> str:
    """Collapse whitespace and trim to max length."""
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) > max_length:
        text = text[:max_length] + "..."
    return text


def extract_domain(url: str) -> str:
    """Lowercased host without a leading www."""
    try:
        host = (urlparse(url).hostname or "").lower().strip()
    except ValueError:
        return ""
    if host.startswith("www."):
        host = host[4:]
    return host


def canonicalize_url(url: str) -> str:
    """scheme://host/path?query with the host lowercased and no trailing slash or fragment."""
    try:
        parsed = urlsplit(url.strip())
    except ValueError:
        return url.lower().rstrip("/")
    if not parsed.scheme or not parsed.netloc:
        return url.lower().rstrip("/")
    canonical = urlunsplit((parsed.scheme.lower(), parsed.netloc.lower(), parsed.path, parsed.query, ""))
    return canonical.rstrip("/")
