"""
URL normalization and listing/product classification.

A pattern matches on registrable domain, not on path: the pattern's host loses
its leftmost label and any single-label subdomain of the remainder matches.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from functools import lru_cache
from urllib.parse import urljoin, urlsplit, urlunsplit

from app.domain.crawl import PageKind


def normalize_url(url: str, base_url: str | None = None) -> str | None:
    """
    Resolve `url` against `base_url` and return the dedup key, or None if unusable.

    Scheme and host are lowercased, the fragment is dropped and trailing
    slashes are stripped from the path. The query string is kept verbatim.
    """

    if not isinstance(url, str) or not url.strip():
        return None
    try:
        resolved = urljoin(base_url, url.strip()) if base_url else url.strip()
        parts = urlsplit(resolved)
        # Accessing .port validates the netloc; it raises on garbage like "host:abc".
        parts.port
    except ValueError:
        return None

    scheme = parts.scheme.lower()
    if scheme not in {"http", "https"} or not parts.hostname:
        return None

    path = parts.path.rstrip("/") or "/"
    return urlunsplit((scheme, parts.netloc.lower(), path, parts.query, ""))


@lru_cache(maxsize=1024)
def registrable_domain_regex(pattern: str) -> re.Pattern[str] | None:
    """
    Build the same-registrable-domain regex for one pattern URL.

    A one-label host (e.g. `localhost`) has no subdomain to strip; the regex
    then matches that bare host only. Returns None if the pattern has no host.
    """

    try:
        host = urlsplit(pattern.strip()).hostname
    except ValueError:
        return None
    if not host:
        return None

    labels = host.split(".")
    if len(labels) == 1:
        return re.compile(rf"^https?://{re.escape(host)}(?=[:/?#]|$)", re.IGNORECASE)

    remaining = ".".join(labels[1:])
    return re.compile(rf"^https?://[^.]+\.{re.escape(remaining)}", re.IGNORECASE)


def matches_any(url: str, patterns: Iterable[str]) -> bool:
    for pattern in patterns:
        regex = registrable_domain_regex(pattern)
        if regex is not None and regex.match(url):
            return True
    return False


def classify(
    url: str,
    base_url: str | None,
    listing_patterns: Iterable[str],
    product_patterns: Iterable[str],
) -> PageKind:
    normalized = normalize_url(url, base_url)
    if normalized is None:
        return PageKind.IGNORED
    if matches_any(normalized, listing_patterns):
        return PageKind.LISTING
    if matches_any(normalized, product_patterns):
        return PageKind.PRODUCT
    return PageKind.IGNORED
