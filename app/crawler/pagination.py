"""
Per-listing pagination state machine.

OnPage(n) -> Advancing -> OnPage(n + 1) | Exhausted. Exhausted is terminal.
A failed advance logs ``listing_pagination_failed``; every other settle logs
``listing_exhausted`` with its reason.
"""

from __future__ import annotations

import logging
from enum import Enum

from app.crawler.classifier import normalize_url
from app.crawler.drivers.base import PageDriver
from app.crawler.errors import CrawlCancelledError, SelectorTimeoutError
from app.crawler.logging_utils import log_event, short_error

logger = logging.getLogger(__name__)

DEFAULT_CONSENT_SELECTORS: tuple[str, ...] = (
    "#onetrust-accept-btn-handler",
    "#CybotCookiebotDialogBodyLevelButtonLevelOptinAllowAll",
    "[data-testid='uc-accept-all-button']",
    "button#accept-cookies",
    "button[aria-label='Accept all']",
)


class PaginationState(str, Enum):
    ON_PAGE = "on_page"
    ADVANCING = "advancing"
    EXHAUSTED = "exhausted"


class PaginationController:
    """
    Tracks how far one listing has been paginated and how to get back there.

    `resume_url` is the URL observed after the last successful advance. When a
    click leaves the URL unchanged the listing paginates in place, and a fresh
    page context can only reach page n by replaying n - 1 clicks.
    """

    def __init__(
        self,
        *,
        listing_url: str,
        max_pages: int,
        pagination_selector: str,
        card_selector: str,
        selector_timeout_seconds: float,
        consent_selectors: tuple[str, ...] = DEFAULT_CONSENT_SELECTORS,
    ) -> None:
        self.listing_url = listing_url
        self.max_pages = max(1, max_pages)
        self.page_number = 1
        self.state = PaginationState.ON_PAGE
        self.resume_url: str | None = None
        self.in_place = False
        self._pagination_selector = pagination_selector
        self._card_selector = card_selector
        self._selector_timeout_seconds = selector_timeout_seconds
        self._consent_selectors = consent_selectors

    @property
    def exhausted(self) -> bool:
        return self.state is PaginationState.EXHAUSTED

    def restore(self, driver: PageDriver, page_number: int) -> None:
        """
        Bring `driver` to page `page_number` of this listing.

        Raises PageFailure when a navigation or a replayed click fails.
        """

        if page_number <= 1 or self.resume_url is None:
            driver.navigate(self.listing_url)
            return
        if not self.in_place:
            driver.navigate(self.resume_url)
            return

        driver.navigate(self.listing_url)
        for _ in range(page_number - 1):
            self._click_next(driver)

    def advance(self, driver: PageDriver) -> bool:
        """
        Try to move from OnPage(n) to OnPage(n + 1).

        Returns True when the next page was reached and a continuation should
        be scheduled. Failures settle the listing as Exhausted.
        """

        if self.state is not PaginationState.ON_PAGE:
            return False
        if self.page_number >= self.max_pages:
            self._settle("page_budget_reached")
            return False
        if not driver.exists(self._pagination_selector):
            self._settle("no_pagination_control")
            return False

        self.state = PaginationState.ADVANCING
        before = normalize_url(driver.current_url())
        try:
            self._click_next(driver)
        except CrawlCancelledError:
            raise
        except Exception as exc:
            log_event(
                logger,
                logging.WARNING,
                "listing_pagination_failed",
                listing_url=self.listing_url,
                page_number=self.page_number,
                error=short_error(exc),
            )
            self.state = PaginationState.EXHAUSTED
            return False

        after = driver.current_url()
        self.in_place = normalize_url(after) == before
        self.resume_url = after
        self.page_number += 1
        self.state = PaginationState.ON_PAGE
        log_event(
            logger,
            logging.DEBUG,
            "listing_page_advanced",
            listing_url=self.listing_url,
            page_number=self.page_number,
            in_place=self.in_place,
        )
        return True

    def settle_exhausted(self) -> None:
        self.state = PaginationState.EXHAUSTED

    def _click_next(self, driver: PageDriver) -> None:
        self._dismiss_consent(driver)
        driver.click(self._pagination_selector)
        if not driver.wait_for_selector(self._card_selector, self._selector_timeout_seconds):
            raise SelectorTimeoutError(
                f"Product cards did not reattach after paginating {self.listing_url}"
            )

    def _dismiss_consent(self, driver: PageDriver) -> None:
        # Best effort: a missing or unclickable overlay never blocks pagination.
        for selector in self._consent_selectors:
            try:
                if driver.exists(selector):
                    driver.click(selector)
                    return
            except Exception as exc:
                log_event(
                    logger,
                    logging.DEBUG,
                    "consent_dismiss_skipped",
                    selector=selector,
                    error=short_error(exc),
                )

    def _settle(self, reason: str) -> None:
        self.state = PaginationState.EXHAUSTED
        log_event(
            logger,
            logging.DEBUG,
            "listing_exhausted",
            listing_url=self.listing_url,
            page_number=self.page_number,
            reason=reason,
        )
