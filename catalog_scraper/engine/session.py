"""Login session lifecycle for one run: restore, probe, login, invalidate."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..antibot.behavior import HumanBehavior
from ..antibot.captcha import CaptchaSettings
from ..antibot.storage import SessionStore
from ..errors import AuthError
from ..models import Credentials, SessionState
from ..sites.base import SiteAdapter

LOGGER = logging.getLogger(__name__)


class SessionManager:
    """Owns the (site, identity) session for a run.

    Liveness probes are single-flight: concurrent callers await the same
    probe. Login and state writes are serialized by one lock. ``gate`` is
    set while the session is usable; non-login work waits on it.
    """

    def __init__(
        self,
        adapter: SiteAdapter,
        store: SessionStore,
        credentials: Optional[Credentials],
        *,
        behavior: HumanBehavior,
        captcha: CaptchaSettings,
        navigation_timeout_ms: int = 60_000,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.credentials = credentials
        self.behavior = behavior
        self.captcha = captcha
        self.navigation_timeout_ms = navigation_timeout_ms
        self.gate = asyncio.Event()
        self._write_lock = asyncio.Lock()
        self._probe: Optional[asyncio.Future] = None
        self.logins = 0
        if not adapter.requires_login:
            self.gate.set()

    @property
    def site_id(self) -> str:
        return self.adapter.site_id

    @property
    def identity(self) -> Optional[str]:
        return self.credentials.identity if self.credentials else None

    def restore(self) -> Optional[Dict[str, Any]]:
        """Storage state to seed the browser context with, if a fresh one exists."""
        if not self.adapter.requires_login or not self.identity:
            return None
        state = self.store.load(self.site_id, self.identity)
        return state.storage_state if state else None

    async def has_valid_session(self, page: Page) -> bool:
        """Probe the saved session; deletes it when the probe fails."""
        if not self.adapter.requires_login:
            return True
        if self._probe is not None and not self._probe.done():
            return await asyncio.shield(self._probe)
        self._probe = asyncio.ensure_future(self._run_probe(page))
        return await asyncio.shield(self._probe)

    async def _run_probe(self, page: Page) -> bool:
        if not self.identity or not self.adapter.session_probe_url:
            return False
        state = self.store.load(self.site_id, self.identity)
        if state is None:
            LOGGER.info("No saved session for %s/%s", self.site_id, self.identity)
            return False
        try:
            await page.goto(
                self.adapter.session_probe_url,
                wait_until="domcontentloaded",
                timeout=self.navigation_timeout_ms,
            )
            title = await page.title()
        except PlaywrightError as exc:
            LOGGER.warning("Session probe failed to load %s: %s", self.adapter.session_probe_url, exc)
            self._discard()
            return False
        if not self.adapter.is_authenticated(page.url, title):
            LOGGER.info("Saved session for %s/%s is no longer valid (landed on %s)", self.site_id, self.identity, page.url)
            self._discard()
            return False
        LOGGER.info("Saved session for %s/%s is valid", self.site_id, self.identity)
        self.gate.set()
        return True

    def _discard(self) -> None:
        if self.identity:
            self.store.delete(self.site_id, self.identity)

    async def login(self, page: Page) -> SessionState:
        """Run the adapter login flow and persist the session before anything else.

        Raises
        ------
        AuthError
            On missing credentials or any login failure
        """
        if self.credentials is None:
            raise AuthError(f"{self.site_id} requires credentials")
        async with self._write_lock:
            self.logins += 1
            LOGGER.info("Logging in to %s as %s", self.site_id, self.identity)
            try:
                await self.adapter.login(page, self.credentials, behavior=self.behavior, captcha=self.captcha)
            except AuthError:
                raise
            except Exception as exc:
                raise AuthError(f"Login to {self.site_id} failed: {exc}") from exc
            storage_state = await page.context.storage_state()
            state = self.store.save(self.site_id, self.identity, storage_state)
        self.gate.set()
        return state

    async def invalidate(self) -> bool:
        """Drop the session and pause non-login work. ``False`` if already invalidated."""
        async with self._write_lock:
            if not self.gate.is_set():
                return False
            self.gate.clear()
            self._discard()
            LOGGER.warning("Session for %s/%s invalidated", self.site_id, self.identity)
            return True
