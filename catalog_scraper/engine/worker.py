"""Bounded pool of workers, each owning one browser page."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..errors import AuthError, BudgetExhausted
from ..models import StopReason
from .dispatcher import Dispatcher
from .queue import RequestQueue
from .state import RunState

LOGGER = logging.getLogger(__name__)

GATE_RETRY_DELAY = 0.5

PageFactory = Callable[[], Awaitable[Any]]


@dataclass
class WorkerStats:
    worker_id: int
    processed: int = 0


class WorkerPool:
    """Pulls requests until the queue drains, closes or a fatal error occurs."""

    def __init__(
        self,
        dispatcher: Dispatcher,
        queue: RequestQueue,
        state: RunState,
        *,
        concurrency: int,
        page_factory: PageFactory,
    ) -> None:
        self.dispatcher = dispatcher
        self.queue = queue
        self.state = state
        self.concurrency = max(1, concurrency)
        self.page_factory = page_factory
        self.stats = [WorkerStats(worker_id=i) for i in range(1, self.concurrency + 1)]

    async def run(self) -> None:
        LOGGER.info("Starting %d worker(s)", self.concurrency)
        await asyncio.gather(*(self._work(stats) for stats in self.stats))
        LOGGER.info(
            "Workers finished: %s",
            ", ".join(f"#{s.worker_id}={s.processed}" for s in self.stats),
        )

    async def _work(self, stats: WorkerStats) -> None:
        page = await self.page_factory()
        try:
            while True:
                request = await self.queue.get()
                if request is None:
                    return
                try:
                    if self.dispatcher.held_by_session(request):
                        # re-login in progress; not charged against the ceiling
                        await self.queue.requeue(request, delay=GATE_RETRY_DELAY)
                        continue
                    try:
                        self.state.budget.charge_request()
                    except BudgetExhausted as exc:
                        if self.state.stop(StopReason.BUDGET_EXHAUSTED, str(exc)):
                            LOGGER.info("%s; draining in-flight requests", exc)
                        await self.queue.requeue(request)
                        await self.queue.close()
                        continue
                    await self.dispatcher.process(stats.worker_id, page, request)
                    stats.processed += 1
                except AuthError as exc:
                    if self.state.stop(StopReason.AUTH_FAILED, str(exc)):
                        LOGGER.error("Authentication failed, aborting run: %s", exc)
                    await self.queue.close(discard=True)
                finally:
                    await self.queue.task_done()
        finally:
            await page.close()
