"""Exception taxonomy shared by the engine, adapters and API."""
from __future__ import annotations

from typing import Optional


class ScraperError(Exception):
    """Base class for all scraping errors.

    ``fatal`` errors abort the whole run; everything else is handled by the
    dispatcher's retry wrapper.
    """

    fatal = False
    retryable = True


class AuthError(ScraperError):
    """Login failed or no session could be established."""

    fatal = True
    retryable = False


class SessionExpiredError(ScraperError):
    """An authenticated page redirected back to the login form."""


class BlockedError(ScraperError):
    """Page is still blocked after the recovery attempt."""

    def __init__(self, url: str, marker: Optional[str] = None) -> None:
        self.url = url
        self.marker = marker
        detail = f" (marker={marker!r})" if marker else ""
        super().__init__(f"Blocked on {url}{detail}")


class ExtractionFieldMissing(ScraperError):
    """Expected field absent from a page. Logged, never raised to the dispatcher."""

    retryable = False

    def __init__(self, field: str, url: str) -> None:
        self.field = field
        self.url = url
        super().__init__(f"Field {field!r} missing on {url}")


class NavigationTimeout(ScraperError):
    """Navigation, selector wait or handler exceeded its timeout."""


class NetworkError(ScraperError):
    """Transport-level failure while loading a page or resource."""


class DedupServiceError(ScraperError):
    """The external existence check failed. Callers fail open."""


class BudgetExhausted(ScraperError):
    """Request ceiling reached. A normal stop condition for the run."""

    retryable = False


class QueueInitError(ScraperError):
    """The run could not be seeded (e.g. no valid start URLs)."""

    fatal = True
    retryable = False


class UnknownSiteError(ScraperError):
    """No adapter is registered for the requested site id."""

    fatal = True
    retryable = False

    def __init__(self, site_id: str) -> None:
        self.site_id = site_id
        super().__init__(f"Unknown site: {site_id}")
