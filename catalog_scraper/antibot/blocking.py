"""Block/challenge page detection with a single bounded recovery."""
from __future__ import annotations

import asyncio
import logging
import random
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional

from playwright.async_api import Page

from ..errors import BlockedError

LOGGER = logging.getLogger(__name__)

DEFAULT_BLOCK_MARKERS = (
    "access to this page has been denied",
    "access denied",
    "checking your browser",
    "just a moment",
    "verify you are human",
    "press & hold",
    "px-captcha",
    "complete the security check",
    "are you a robot",
)

DEFAULT_TITLE_MARKERS = ("just a moment", "access denied", "attention required", "blocked")


class BlockGuard:
    """Detects denial pages and performs one wait-and-reload recovery."""

    def __init__(
        self,
        *,
        markers: Iterable[str] = DEFAULT_BLOCK_MARKERS,
        title_markers: Iterable[str] = DEFAULT_TITLE_MARKERS,
        recovery_wait: tuple = (10.0, 15.0),
        screenshot_dir: Optional[Path] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ) -> None:
        self.markers = tuple(m.lower() for m in markers)
        self.title_markers = tuple(m.lower() for m in title_markers)
        self.recovery_wait = recovery_wait
        self.screenshot_dir = screenshot_dir
        self._sleep = sleep or asyncio.sleep

    async def detect(self, page: Page) -> Optional[str]:
        """Return the first block marker found on the page, if any."""
        title = (await page.title() or "").lower()
        for marker in self.title_markers:
            if marker in title:
                return marker
        content = (await page.content() or "").lower()
        for marker in self.markers:
            if marker in content:
                return marker
        return None

    async def ensure_not_blocked(self, page: Page, *, label: str = "page") -> None:
        """Raise :class:`BlockedError` if the page stays blocked after recovery."""
        marker = await self.detect(page)
        if marker is None:
            return

        wait = random.uniform(*self.recovery_wait)
        LOGGER.warning("Block marker %r on %s, waiting %.1fs and reloading", marker, page.url, wait)
        await self._sleep(wait)
        await page.reload(wait_until="domcontentloaded")

        marker = await self.detect(page)
        if marker is None:
            LOGGER.info("Recovered from block on %s", page.url)
            return

        await self._capture(page, label)
        raise BlockedError(page.url, marker)

    async def _capture(self, page: Page, label: str) -> None:
        if self.screenshot_dir is None:
            return
        self.screenshot_dir.mkdir(parents=True, exist_ok=True)
        path = self.screenshot_dir / f"blocked-{label.lower()}-{random.randint(0, 10**8):08d}.png"
        try:
            await page.screenshot(path=str(path), full_page=True)
            LOGGER.info("Saved block screenshot to %s", path)
        except Exception as exc:  # screenshot is diagnostic only
            LOGGER.warning("Failed to capture block screenshot: %s", exc)
