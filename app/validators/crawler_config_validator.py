"""
app/validators/crawler_config_validator.py

Validation of submitted crawler configurations.

Accepts the JSON body of `POST /crawl` in camelCase or snake_case, with
selectors either nested under `selectors` or flat as `<name>Selector`.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from urllib.parse import urlparse

import soupsieve
from soupsieve import SelectorSyntaxError

from app import failure_codes
from app.crawler.drivers.base import is_xpath_selector
from app.crawler.errors import CrawlValidationError
from app.domain.crawl import DEFAULT_EAN_LABEL, DEFAULT_MAX_PAGES, CrawlerConfig

_START_URL_KEYS = ("startUrls", "start_urls", "urls")
_LISTING_PATTERN_KEYS = ("listingPatterns", "listing_patterns")
_PRODUCT_PATTERN_KEYS = ("productPatterns", "product_patterns")

# canonical selector name -> accepted spellings
_SELECTOR_KEYS: dict[str, tuple[str, ...]] = {
    "product_card": ("productCard", "product_card"),
    "pagination": ("pagination",),
    "product_link": ("productLink", "product_link"),
    "product_name": ("productName", "product_name"),
    "product_price": ("productPrice", "product_price"),
}


def validate_crawler_config(payload: Any) -> CrawlerConfig:
    """
    Validate a raw submission and return the immutable config.

    Raises CrawlValidationError with MISSING_CONFIG or INVALID_URLS.
    """

    if isinstance(payload, CrawlerConfig):
        payload = _config_as_mapping(payload)

    if not isinstance(payload, Mapping) or not payload:
        raise CrawlValidationError(
            "Crawler configuration is required",
            failure_codes.MISSING_CONFIG,
        )

    start_urls = _first_present(payload, _START_URL_KEYS)
    if not isinstance(start_urls, list) or not start_urls:
        raise CrawlValidationError(
            "At least one URL must be provided",
            failure_codes.INVALID_URLS,
        )

    invalid_urls = [url for url in start_urls if not _is_absolute_http_url(url)]
    if invalid_urls:
        raise CrawlValidationError(
            "Start URLs must be absolute http(s) URLs",
            failure_codes.INVALID_URLS,
            {"invalid_urls": [str(url) for url in invalid_urls]},
        )

    missing: list[str] = []
    listing_patterns = _string_list(_first_present(payload, _LISTING_PATTERN_KEYS))
    if not listing_patterns:
        missing.append("listingPatterns")
    product_patterns = _string_list(_first_present(payload, _PRODUCT_PATTERN_KEYS))
    if not product_patterns:
        missing.append("productPatterns")

    selectors: dict[str, str] = {}
    for name, spellings in _SELECTOR_KEYS.items():
        value = _selector_value(payload, spellings)
        if value is None:
            missing.append(f"selectors.{spellings[0]}")
        else:
            selectors[name] = value

    max_pages = _first_present(payload, ("maxPages", "max_pages"))
    if max_pages is None:
        max_pages = DEFAULT_MAX_PAGES
    elif isinstance(max_pages, bool) or not isinstance(max_pages, int) or max_pages < 1:
        missing.append("maxPages")

    if missing:
        raise CrawlValidationError(
            "Crawler configuration is missing required fields",
            failure_codes.MISSING_CONFIG,
            {"missing_fields": missing},
        )

    ean_label = _optional_str(_first_present(payload, ("eanLabel", "ean_label"))) or DEFAULT_EAN_LABEL
    consent_selector = _optional_str(_first_present(payload, ("consentSelector", "consent_selector")))

    invalid_selectors = [
        f"selectors.{_SELECTOR_KEYS[name][0]}"
        for name, value in selectors.items()
        if not _is_supported_selector(value)
    ]
    if consent_selector and not _is_supported_selector(consent_selector):
        invalid_selectors.append("consentSelector")
    if invalid_selectors:
        raise CrawlValidationError(
            "Crawler configuration has invalid CSS selectors",
            failure_codes.MISSING_CONFIG,
            {"invalid_selectors": invalid_selectors},
        )

    return CrawlerConfig(
        start_urls=tuple(url.strip() for url in start_urls),
        listing_patterns=tuple(listing_patterns),
        product_patterns=tuple(product_patterns),
        product_card_selector=selectors["product_card"],
        pagination_selector=selectors["pagination"],
        product_link_selector=selectors["product_link"],
        product_name_selector=selectors["product_name"],
        product_price_selector=selectors["product_price"],
        max_pages=max_pages,
        ean_label=ean_label,
        consent_selector=consent_selector,
    )


def _config_as_mapping(config: CrawlerConfig) -> dict[str, Any]:
    payload = config.to_payload()
    payload.update(payload.pop("selectors"))
    return payload


def _first_present(payload: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in payload and payload[key] is not None:
            return payload[key]
    return None


def _is_supported_selector(selector: str) -> bool:
    # XPath is left to drivers that support it.
    if is_xpath_selector(selector):
        return True
    try:
        soupsieve.compile(selector)
    except SelectorSyntaxError:
        return False
    return True


def _selector_value(payload: Mapping[str, Any], spellings: tuple[str, ...]) -> str | None:
    nested = payload.get("selectors")
    candidates: list[Any] = []
    if isinstance(nested, Mapping):
        candidates.extend(nested.get(key) for key in spellings)
    for key in spellings:
        candidates.append(payload.get(key))
        candidates.append(payload.get(f"{key}Selector"))
        candidates.append(payload.get(f"{key}_selector"))

    for candidate in candidates:
        value = _optional_str(candidate)
        if value:
            return value
    return None


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


def _optional_str(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _is_absolute_http_url(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    try:
        parsed = urlparse(value.strip())
    except ValueError:
        return False
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)
