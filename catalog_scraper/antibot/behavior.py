"""Human behavior simulation around page navigations.

Provides randomized pauses, Bezier mouse movements, incremental scrolling
and human-paced typing for Playwright pages.
"""
from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from playwright.async_api import Page

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class BehaviorConfig:
    """Configuration for behavior simulation."""

    # Timing
    min_action_delay: float = 0.5
    max_action_delay: float = 2.0
    min_navigation_delay: float = 1.0  # Pause before each navigation
    max_navigation_delay: float = 3.0

    # Mouse
    enable_mouse_movements: bool = True
    mouse_movements_per_action: int = 2
    mouse_steps: int = 12

    # Scrolling
    enable_scrolling: bool = True
    scroll_steps: int = 4
    scroll_pause: float = 0.3

    # Typing
    min_key_delay_ms: int = 50
    max_key_delay_ms: int = 150


class HumanBehavior:
    """Simulates human-like behavior on a Playwright page."""

    def __init__(self, config: BehaviorConfig | None = None, *, sleep: Optional[Sleep] = None):
        """Initialize behavior simulator.

        Parameters
        ----------
        config : BehaviorConfig, optional
            Configuration (uses defaults if not provided)
        sleep : callable, optional
            Awaitable sleep function, replaceable in tests
        """
        self.config = config or BehaviorConfig()
        self._sleep = sleep or asyncio.sleep

    async def pause(self, min_delay: float, max_delay: float) -> float:
        """Sleep for a bell-shaped random duration between the bounds."""
        if max_delay <= 0:
            return 0.0
        delay = random.triangular(min_delay, max_delay)
        await self._sleep(delay)
        return delay

    async def random_delay(self, min_delay: float | None = None, max_delay: float | None = None) -> float:
        low = self.config.min_action_delay if min_delay is None else min_delay
        high = self.config.max_action_delay if max_delay is None else max_delay
        return await self.pause(low, high)

    async def before_navigation(self, page: Page) -> None:
        """Randomized think time before a page is requested."""
        delay = await self.pause(self.config.min_navigation_delay, self.config.max_navigation_delay)
        LOGGER.debug("Pre-navigation delay %.2fs", delay)

    def _bezier_curve(
        self,
        start: Tuple[int, int],
        end: Tuple[int, int],
        steps: int,
    ) -> List[Tuple[int, int]]:
        """Generate cubic Bezier points between two screen positions.

        Parameters
        ----------
        start : tuple
            Starting point (x, y)
        end : tuple
            Ending point (x, y)
        steps : int
            Number of segments

        Returns
        -------
        list
            ``steps + 1`` integer (x, y) coordinates from start to end
        """
        c1 = (
            start[0] + (end[0] - start[0]) * 0.3 + random.randint(-50, 50),
            start[1] + (end[1] - start[1]) * 0.3 + random.randint(-50, 50),
        )
        c2 = (
            start[0] + (end[0] - start[0]) * 0.7 + random.randint(-50, 50),
            start[1] + (end[1] - start[1]) * 0.7 + random.randint(-50, 50),
        )
        points = []
        for i in range(steps + 1):
            t = i / steps
            x = (1 - t) ** 3 * start[0] + 3 * (1 - t) ** 2 * t * c1[0] + 3 * (1 - t) * t ** 2 * c2[0] + t ** 3 * end[0]
            y = (1 - t) ** 3 * start[1] + 3 * (1 - t) ** 2 * t * c1[1] + 3 * (1 - t) * t ** 2 * c2[1] + t ** 3 * end[1]
            points.append((int(x), int(y)))
        # curve endpoints are exact
        points[0] = start
        points[-1] = end
        return points

    async def move_mouse(self, page: Page, start: Tuple[int, int], end: Tuple[int, int]) -> None:
        if not self.config.enable_mouse_movements:
            return
        for x, y in self._bezier_curve(start, end, self.config.mouse_steps):
            await page.mouse.move(x, y)
            await self._sleep(random.uniform(0.005, 0.02))

    async def random_mouse_movement(self, page: Page) -> None:
        viewport = page.viewport_size
        if not self.config.enable_mouse_movements or not viewport:
            return
        width, height = viewport["width"], viewport["height"]
        start = (random.randint(50, max(51, width - 50)), random.randint(50, max(51, height - 50)))
        end = (random.randint(50, max(51, width - 50)), random.randint(50, max(51, height - 50)))
        await self.move_mouse(page, start, end)

    async def scroll_page(self, page: Page, direction: str = "down", distance: int | None = None) -> None:
        """Scroll in small increments with jitter between steps."""
        if not self.config.enable_scrolling:
            return
        distance = distance if distance is not None else random.randint(300, 800)
        sign = 1 if direction == "down" else -1
        step = max(1, distance // self.config.scroll_steps)
        for _ in range(self.config.scroll_steps):
            await page.evaluate("(dy) => window.scrollBy(0, dy)", sign * (step + random.randint(-20, 20)))
            await self._sleep(max(0.0, self.config.scroll_pause + random.uniform(-0.1, 0.1)))

    async def interaction_sequence(self, page: Page) -> None:
        """Mouse wandering and a scroll pass after a page has loaded."""
        for _ in range(self.config.mouse_movements_per_action):
            await self.random_mouse_movement(page)
            await self.random_delay(0.1, 0.4)
        if self.config.enable_scrolling:
            await self.scroll_page(page, "down")
            if random.random() < 0.3:
                await self.scroll_page(page, "up", distance=200)

    async def type_like_human(self, page: Page, selector: str, text: str) -> None:
        """Click a field and type into it with per-key jitter."""
        await page.click(selector)
        await page.fill(selector, "")
        for char in text:
            await page.keyboard.type(char)
            await self._sleep(random.randint(self.config.min_key_delay_ms, self.config.max_key_delay_ms) / 1000)


class BehaviorPresets:
    """Pre-configured behavior patterns for different scenarios."""

    @staticmethod
    def off() -> BehaviorConfig:
        """No pauses or pointer activity (tests, trusted endpoints)."""
        return BehaviorConfig(
            min_action_delay=0.0,
            max_action_delay=0.0,
            min_navigation_delay=0.0,
            max_navigation_delay=0.0,
            enable_mouse_movements=False,
            enable_scrolling=False,
            min_key_delay_ms=0,
            max_key_delay_ms=0,
        )

    @staticmethod
    def fast() -> BehaviorConfig:
        return BehaviorConfig(
            min_action_delay=0.2,
            max_action_delay=0.8,
            min_navigation_delay=0.5,
            max_navigation_delay=1.5,
            mouse_movements_per_action=1,
            scroll_steps=3,
        )

    @staticmethod
    def normal() -> BehaviorConfig:
        return BehaviorConfig()

    @staticmethod
    def cautious() -> BehaviorConfig:
        """Slow behavior for sites with aggressive bot scoring."""
        return BehaviorConfig(
            min_action_delay=1.0,
            max_action_delay=3.0,
            min_navigation_delay=3.0,
            max_navigation_delay=7.0,
            mouse_movements_per_action=4,
            scroll_steps=8,
            scroll_pause=0.5,
        )

    @classmethod
    def from_name(cls, name: str) -> BehaviorConfig:
        factory = {"off": cls.off, "fast": cls.fast, "normal": cls.normal, "cautious": cls.cautious}.get(name)
        if factory is None:
            raise ValueError(f"Unknown behavior preset: {name}")
        return factory()
