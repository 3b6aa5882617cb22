"""Target-item budget, request ceiling and pagination stop rules.

All counters here are scoped to one run. Mutating methods contain no awaits,
so each call is atomic with respect to the other workers on the event loop.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from ..errors import BudgetExhausted

LOGGER = logging.getLogger(__name__)

DEFAULT_TARGET = 20
REQUEST_BUFFER = 20
REQUEST_CEILING = 2000
DEFAULT_MAX_LOAD_CLICKS = 10
IDLE_LOAD_LIMIT = 3


def effective_max_requests(
    target: int,
    max_requests: Optional[int] = None,
    *,
    buffer: int = REQUEST_BUFFER,
    ceiling: int = REQUEST_CEILING,
) -> int:
    """Request ceiling for a run: room for the target plus retry/list overhead."""
    return min(max(max_requests or 0, target + buffer), ceiling)


@dataclass
class SeedBudget:
    """Share of the target owned by one start URL."""

    seed: str
    target: int
    enqueued: int = 0
    processed: int = 0

    @property
    def remaining(self) -> int:
        return max(0, self.target - self.enqueued)

    @property
    def wants_more(self) -> bool:
        return self.remaining > 0


@dataclass
class BudgetController:
    """Global and per-seed item budget plus the request ceiling."""

    target: int
    max_requests: int
    seeds: Dict[str, SeedBudget] = field(default_factory=dict)
    enqueued: int = 0
    requests_charged: int = 0

    @classmethod
    def for_run(
        cls,
        seeds: Iterable[str],
        *,
        max_products: Optional[int] = None,
        max_requests: Optional[int] = None,
    ) -> "BudgetController":
        target = max_products or DEFAULT_TARGET
        controller = cls(target=target, max_requests=effective_max_requests(target, max_requests))
        seed_list = list(dict.fromkeys(seeds))
        per_seed = math.ceil(target / len(seed_list)) if seed_list else target
        for seed in seed_list:
            controller.seeds[seed] = SeedBudget(seed=seed, target=per_seed)
        LOGGER.info(
            "Budget: target=%d, per-seed=%d over %d seed(s), max requests=%d",
            target,
            per_seed,
            len(seed_list),
            controller.max_requests,
        )
        return controller

    def seed(self, seed: Optional[str]) -> SeedBudget:
        """Budget for a seed; unknown seeds (e.g. search results) share the whole target."""
        key = seed or "*"
        if key not in self.seeds:
            self.seeds[key] = SeedBudget(seed=key, target=self.target)
        return self.seeds[key]

    @property
    def remaining(self) -> int:
        return max(0, self.target - self.enqueued)

    @property
    def target_reached(self) -> bool:
        return self.enqueued >= self.target

    def seed_remaining(self, seed: Optional[str]) -> int:
        return min(self.seed(seed).remaining, self.remaining)

    def reserve(self, seed: Optional[str], wanted: int) -> int:
        """Grant up to ``wanted`` item slots, never exceeding seed or global budget.

        Returns
        -------
        int
            Number of slots granted (already counted as enqueued)
        """
        granted = max(0, min(wanted, self.seed_remaining(seed)))
        if granted:
            self.seed(seed).enqueued += granted
            self.enqueued += granted
        if wanted > granted:
            LOGGER.info(
                "Budget reached for seed %s: granted %d of %d (total %d/%d)",
                seed or "*",
                granted,
                wanted,
                self.enqueued,
                self.target,
            )
        return granted

    def mark_processed(self, seed: Optional[str]) -> None:
        self.seed(seed).processed += 1

    def charge_request(self) -> None:
        """Count one handled request against the ceiling.

        Raises
        ------
        BudgetExhausted
            When the ceiling has been reached
        """
        if self.requests_charged >= self.max_requests:
            raise BudgetExhausted(f"Max requests reached ({self.max_requests})")
        self.requests_charged += 1


@dataclass
class PaginationState:
    """Load-more/next-page bookkeeping for one list page."""

    max_load_clicks: int = DEFAULT_MAX_LOAD_CLICKS
    idle_limit: int = IDLE_LOAD_LIMIT
    clicks: int = 0
    idle_streak: int = 0
    stop_reason: Optional[str] = None

    def record_load(self, new_items: int) -> None:
        """Register the outcome of one load-more/next-page attempt."""
        self.clicks += 1
        if new_items > 0:
            self.idle_streak = 0
        else:
            self.idle_streak += 1

    def should_continue(self, wants_more: bool, has_more: bool) -> bool:
        if not wants_more:
            self.stop_reason = "target reached"
        elif self.idle_streak >= self.idle_limit:
            self.stop_reason = f"{self.idle_streak} consecutive loads without new items"
        elif self.clicks >= self.max_load_clicks:
            self.stop_reason = f"load click limit ({self.max_load_clicks}) reached"
        elif not has_more:
            self.stop_reason = "no more pages"
        else:
            return True
        return False
