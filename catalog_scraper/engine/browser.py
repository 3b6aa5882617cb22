"""Playwright browser lifecycle for a run."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Optional

from playwright.async_api import BrowserContext, async_playwright

from ..antibot.fingerprint import STEALTH_LAUNCH_ARGS, DeviceFingerprint, create_stealth_context
from ..antibot.proxy import ProxyConfig

LOGGER = logging.getLogger(__name__)


class BrowserProvider:
    """Launches Chromium and yields one stealth context per run."""

    def __init__(
        self,
        *,
        headless: bool = True,
        proxy: Optional[ProxyConfig] = None,
        fingerprint: Optional[DeviceFingerprint] = None,
        navigation_timeout_ms: int = 60_000,
    ) -> None:
        self.headless = headless
        self.proxy = proxy
        self.fingerprint = fingerprint
        self.navigation_timeout_ms = navigation_timeout_ms

    @asynccontextmanager
    async def open(self, *, storage_state: Optional[Dict[str, Any]] = None) -> AsyncIterator[BrowserContext]:
        async with async_playwright() as playwright:
            launch_options: Dict[str, Any] = {"headless": self.headless, "args": STEALTH_LAUNCH_ARGS}
            if self.proxy:
                launch_options["proxy"] = self.proxy.to_playwright_dict()
            browser = await playwright.chromium.launch(**launch_options)
            LOGGER.info("Browser started (headless=%s, proxy=%s)", self.headless, bool(self.proxy))
            try:
                context = await create_stealth_context(
                    browser,
                    fingerprint=self.fingerprint,
                    storage_state=storage_state,
                )
                context.set_default_navigation_timeout(self.navigation_timeout_ms)
                yield context
                await context.close()
            finally:
                await browser.close()
                LOGGER.info("Browser closed")
