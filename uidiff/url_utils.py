"""Shared URL utilities — validate page URLs and normalize them for deduplication."""

from __future__ import annotations

from urllib.parse import urlparse

PAGE_SCHEMES = ("http", "https", "file")


def normalize_url(url: str) -> str:
    """Normalize a URL for deduplication."""
    parsed = urlparse(url.strip())
    path = parsed.path.rstrip("/") or "/"
    query = ""
    if parsed.query:
        params = sorted(parsed.query.split("&"))
        query = "?" + "&".join(params)
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}{path}{query}"


def is_valid_page_url(url: str) -> bool:
    """True for absolute http(s) URLs with a host, or file:// URLs."""
    parsed = urlparse(url.strip())
    scheme = parsed.scheme.lower()
    if scheme not in PAGE_SCHEMES:
        return False
    return scheme == "file" or bool(parsed.netloc)
