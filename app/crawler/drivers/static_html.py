"""
Static HTML page driver backed by requests and BeautifulSoup.

Selectors are CSS. A click follows the clicked element's href, so pagination
works on sites whose "next" control is a link. Script-driven controls and
XPath selectors need a browser driver.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from urllib.parse import urljoin

import requests
from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from app.config import CrawlSessionSettings
from app.crawler.drivers.base import is_xpath_selector
from app.crawler.errors import NavigationError, PageActionError
from app.crawler.logging_utils import log_event

logger = logging.getLogger(__name__)

RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}


class StaticHtmlPageDriver:
    """
    One fetched document and the cursor URL it came from.
    """

    def __init__(
        self,
        *,
        settings: CrawlSessionSettings,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._settings = settings
        self._session = session or requests.Session()
        self._owns_session = session is None
        self._sleep = sleep
        self._headers = {"User-Agent": settings.user_agent}
        self._url = ""
        self._html = ""
        self._soup: BeautifulSoup | None = None

    def navigate(self, url: str) -> None:
        response = self._request_with_retry(url)
        self._url = response.url or url
        self._html = response.text
        self._soup = BeautifulSoup(response.text, "html.parser")

    def wait_for_selector(self, selector: str, timeout_seconds: float) -> bool:
        # A static document never changes after load.
        return self._select_one(selector) is not None

    def query_links(self, selector: str) -> list[str]:
        links: list[str] = []
        for element in self._select(selector):
            href = _element_href(element)
            if href:
                links.append(href)
        return links

    def read_text(self, selector: str) -> str | None:
        element = self._select_one(selector)
        if element is None:
            return None
        text = element.get_text(" ", strip=True)
        return text or None

    def read_attribute(self, selector: str, name: str) -> str | None:
        element = self._select_one(selector)
        if element is None:
            return None
        value = element.get(name)
        if isinstance(value, list):
            value = " ".join(value)
        return value.strip() if isinstance(value, str) and value.strip() else None

    def read_text_near_label(self, label: str) -> str | None:
        soup = self._require_document()
        for text_node in soup.find_all(string=lambda value: bool(value) and label in value):
            element = text_node.parent
            if not isinstance(element, Tag):
                continue

            # "EAN: 123" inside one element.
            value = _strip_label(element.get_text(" ", strip=True), label)
            if value:
                return value

            sibling = element.find_next_sibling()
            if sibling is not None:
                value = sibling.get_text(" ", strip=True)
                if value:
                    return value

            if isinstance(element.parent, Tag):
                value = _strip_label(element.parent.get_text(" ", strip=True), label)
                if value:
                    return value
        return None

    def exists(self, selector: str) -> bool:
        return self._select_one(selector) is not None

    def click(self, selector: str) -> None:
        element = self._select_one(selector)
        if element is None:
            raise PageActionError(f"No element matches {selector!r} on {self._url}")
        href = _element_href(element)
        if not href or href.startswith(("#", "javascript:")):
            raise PageActionError(
                f"Element {selector!r} on {self._url} is not a link; a browser driver is required"
            )
        self.navigate(urljoin(self._url, href))

    def current_url(self) -> str:
        return self._url

    def content(self) -> str:
        return self._html

    def close(self) -> None:
        if self._owns_session:
            self._session.close()

    def _require_document(self) -> BeautifulSoup:
        if self._soup is None:
            raise PageActionError("No document loaded; navigate first")
        return self._soup

    def _select(self, selector: str) -> list[Tag]:
        _reject_xpath(selector)
        document = self._require_document()
        try:
            return list(document.select(selector))
        except SelectorSyntaxError as exc:
            raise PageActionError(f"Invalid CSS selector {selector!r}: {exc}") from exc

    def _select_one(self, selector: str) -> Tag | None:
        _reject_xpath(selector)
        document = self._require_document()
        try:
            return document.select_one(selector)
        except SelectorSyntaxError as exc:
            raise PageActionError(f"Invalid CSS selector {selector!r}: {exc}") from exc

    def _request_with_retry(self, url: str) -> requests.Response:
        last_error: Exception | None = None

        for attempt in range(self._settings.http_max_retries + 1):
            try:
                response = self._session.get(
                    url,
                    headers=self._headers,
                    timeout=self._settings.http_timeout_seconds,
                    allow_redirects=True,
                )
                if response.status_code in RETRYABLE_STATUS_CODES:
                    raise requests.HTTPError(
                        f"Retryable status={response.status_code}",
                        response=response,
                    )
                response.raise_for_status()
                return response
            except (requests.Timeout, requests.ConnectionError, requests.HTTPError) as exc:
                last_error = exc
                if isinstance(exc, requests.HTTPError):
                    status_code = exc.response.status_code if exc.response is not None else None
                    if status_code not in RETRYABLE_STATUS_CODES:
                        raise NavigationError(f"Failed to load {url}: {exc}") from exc
            except requests.RequestException as exc:
                raise NavigationError(f"Failed to load {url}: {exc}") from exc

            if attempt >= self._settings.http_max_retries:
                break

            backoff_seconds = self._settings.http_backoff_initial_seconds * (
                self._settings.http_backoff_multiplier**attempt
            )
            log_event(
                logger,
                logging.DEBUG,
                "page_fetch_retry",
                url=url,
                attempt=attempt + 1,
                backoff_seconds=backoff_seconds,
            )
            self._sleep(backoff_seconds)

        raise NavigationError(f"Failed to load {url} after retries: {last_error}")


def _element_href(element: Tag) -> str | None:
    href = element.get("href")
    if not isinstance(href, str) or not href.strip():
        anchor = element.select_one("a[href]")
        href = anchor.get("href") if anchor is not None else None
    if isinstance(href, str) and href.strip():
        return href.strip()
    return None


def _strip_label(text: str, label: str) -> str | None:
    if label not in text:
        return None
    value = text.split(label, 1)[1].strip(" :# \t")
    return value or None


def _reject_xpath(selector: str) -> None:
    if is_xpath_selector(selector):
        raise PageActionError(f"XPath selector {selector!r} is not supported by the static driver")
