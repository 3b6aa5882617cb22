"""reCAPTCHA resolution for login forms (2captcha API or manual operator)."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import requests
from playwright.async_api import Page

from ..errors import AuthError
from ..polling import PollTimeout, poll_until

API_URL = "https://2captcha.com"
POLL_INTERVAL = 5
MAX_WAIT = 180

LOGGER = logging.getLogger(__name__)


@dataclass
class CaptchaTelemetry:
    """Telemetry data for one solve."""

    task_id: Optional[str] = None
    site_key: str = ""
    page_url: str = ""
    solve_time_sec: float = 0.0
    status: str = "pending"  # pending, solving, solved, failed
    error_message: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "task_id": self.task_id,
            "site_key": self.site_key,
            "page_url": self.page_url,
            "solve_time_sec": round(self.solve_time_sec, 2),
            "status": self.status,
            "error_message": self.error_message,
            "attempts": self.attempts,
        }


class CaptchaSolver:
    """2captcha client for reCAPTCHA v2 (blocking; run it in a thread)."""

    def __init__(
        self,
        api_key: str,
        *,
        max_wait: int = MAX_WAIT,
        poll_interval: int = POLL_INTERVAL,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize captcha solver.

        Parameters
        ----------
        api_key : str
            2captcha API key
        max_wait : int
            Maximum time to wait for a solution (seconds)
        poll_interval : int
            Time between result polls (seconds)
        """
        if not api_key:
            raise ValueError("CAPTCHA_API_KEY is required for automatic captcha solving")
        self.api_key = api_key
        self.max_wait = max_wait
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self._sleep = sleep
        self.telemetry_history: list[CaptchaTelemetry] = []

    def solve_recaptcha(self, site_key: str, page_url: str) -> tuple[str, CaptchaTelemetry]:
        """Submit a reCAPTCHA task and wait for the token."""
        telemetry = CaptchaTelemetry(site_key=site_key, page_url=page_url, status="solving")
        start_time = time.time()
        try:
            resp = self.session.post(
                f"{API_URL}/in.php",
                data={
                    "key": self.api_key,
                    "method": "userrecaptcha",
                    "googlekey": site_key,
                    "pageurl": page_url,
                    "json": 1,
                },
                timeout=30,
            )
            resp.raise_for_status()
            body = resp.json()
            if body.get("status") != 1:
                raise RuntimeError(f"2captcha rejected task: {body.get('request')}")
            telemetry.task_id = str(body["request"])

            deadline = time.time() + self.max_wait
            while time.time() < deadline:
                self._sleep(self.poll_interval)
                telemetry.attempts += 1
                result = self.session.get(
                    f"{API_URL}/res.php",
                    params={"key": self.api_key, "action": "get", "id": telemetry.task_id, "json": 1},
                    timeout=30,
                )
                result.raise_for_status()
                data = result.json()
                if data.get("request") == "CAPCHA_NOT_READY":
                    continue
                if data.get("status") != 1:
                    raise RuntimeError(f"2captcha error: {data.get('request')}")
                telemetry.status = "solved"
                telemetry.solve_time_sec = time.time() - start_time
                self.telemetry_history.append(telemetry)
                LOGGER.info(
                    "Solved captcha task %s in %.1fs (polls=%d)",
                    telemetry.task_id,
                    telemetry.solve_time_sec,
                    telemetry.attempts,
                )
                return data["request"], telemetry
            raise TimeoutError(f"Timed out waiting for captcha solution after {self.max_wait}s")
        except (requests.RequestException, RuntimeError, TimeoutError, ValueError) as exc:
            telemetry.status = "failed"
            telemetry.error_message = str(exc)
            telemetry.solve_time_sec = time.time() - start_time
            self.telemetry_history.append(telemetry)
            LOGGER.error("Failed to solve captcha: %s (%.1fs)", exc, telemetry.solve_time_sec)
            raise

    def get_success_rate(self) -> float:
        if not self.telemetry_history:
            return 0.0
        solved = sum(1 for t in self.telemetry_history if t.status == "solved")
        return solved / len(self.telemetry_history)


@dataclass
class CaptchaSettings:
    """How login-time challenges get resolved."""

    mode: str = "manual"  # manual, auto
    solver: Optional[CaptchaSolver] = None
    timeout: float = 180.0
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None


async def resolve_recaptcha(
    page: Page,
    settings: CaptchaSettings,
    *,
    widget_selector: str,
    response_selector: str,
) -> bool:
    """Resolve a reCAPTCHA widget on the current page if one is present.

    Returns
    -------
    bool
        ``True`` when a challenge was found and resolved, ``False`` when the
        page has no widget

    Raises
    ------
    AuthError
        If the challenge could not be resolved
    """
    widget = await page.query_selector(widget_selector)
    if widget is None:
        return False

    if settings.mode == "auto":
        if settings.solver is None:
            raise AuthError("Captcha mode is 'auto' but no solver is configured")
        site_key = await widget.get_attribute("data-sitekey")
        if not site_key:
            raise AuthError("reCAPTCHA widget has no data-sitekey")
        try:
            token, telemetry = await asyncio.to_thread(settings.solver.solve_recaptcha, site_key, page.url)
        except (requests.RequestException, RuntimeError, TimeoutError, ValueError) as exc:
            raise AuthError(f"Captcha solving failed: {exc}") from exc
        await page.evaluate(
            """([selector, token]) => {
                document.querySelectorAll(selector).forEach((el) => {
                    el.style.display = 'block';
                    el.value = token;
                });
            }""",
            [response_selector, token],
        )
        LOGGER.info(
            "Injected solved reCAPTCHA token (solver success rate %.0f%%)",
            settings.solver.get_success_rate() * 100,
            extra={"captcha": telemetry.to_dict()},
        )
        return True

    LOGGER.warning("reCAPTCHA present, waiting up to %.0fs for manual resolution", settings.timeout)

    async def _has_token() -> bool:
        return bool(
            await page.evaluate(
                "(selector) => { const el = document.querySelector(selector); return el ? el.value : ''; }",
                response_selector,
            )
        )

    try:
        await poll_until(
            _has_token,
            timeout=settings.timeout,
            interval=1.0,
            description="manual reCAPTCHA resolution",
            sleep=settings.sleep,
        )
    except PollTimeout as exc:
        raise AuthError("reCAPTCHA was not resolved in time") from exc
    return True
