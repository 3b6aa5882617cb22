"""In-memory request queue with delayed retries and drain detection."""
from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from typing import Dict, List, Optional, Tuple

from ..models import LabeledRequest, RequestStatus

LOGGER = logging.getLogger(__name__)


class RequestQueue:
    """Ordered queue of :class:`LabeledRequest` shared by the worker pool.

    Requests become available at their ``not_before`` time; forefront
    requests (e.g. re-login) jump ahead of everything already queued.
    :meth:`get` returns ``None`` once the queue is closed, or when it is
    empty and no request is in flight (nothing can enqueue more work).
    """

    def __init__(self) -> None:
        self._heap: List[Tuple[float, int, LabeledRequest]] = []
        self._seq = itertools.count()
        self._known: set[str] = set()
        self._cond = asyncio.Condition()
        self._in_flight = 0
        self._closed = False
        self.handled = 0
        self.discarded: List[LabeledRequest] = []

    def _now(self) -> float:
        return asyncio.get_running_loop().time()

    def _push(self, request: LabeledRequest, not_before: float) -> None:
        heapq.heappush(self._heap, (not_before, next(self._seq), request))

    async def add(self, request: LabeledRequest, *, forefront: bool = False) -> bool:
        """Enqueue a new request. Duplicate unique keys are ignored.

        Returns
        -------
        bool
            ``True`` if the request was accepted
        """
        async with self._cond:
            if self._closed or request.unique_key in self._known:
                return False
            self._known.add(request.unique_key)
            request.status = RequestStatus.PENDING
            self._push(request, float("-inf") if forefront else self._now())
            self._cond.notify_all()
        return True

    async def requeue(self, request: LabeledRequest, *, delay: float = 0.0) -> bool:
        """Put an already-known request back, available after ``delay`` seconds."""
        async with self._cond:
            if self._closed:
                return False
            self._push(request, self._now() + delay)
            self._cond.notify_all()
        return True

    async def get(self) -> Optional[LabeledRequest]:
        async with self._cond:
            while True:
                if self._closed:
                    return None
                timeout: Optional[float] = None
                if self._heap:
                    not_before, _, request = self._heap[0]
                    wait = not_before - self._now()
                    if wait <= 0:
                        heapq.heappop(self._heap)
                        self._in_flight += 1
                        return request
                    timeout = wait
                elif self._in_flight == 0:
                    LOGGER.debug("Request queue drained")
                    self._closed = True
                    self._cond.notify_all()
                    return None
                try:
                    await asyncio.wait_for(self._cond.wait(), timeout)
                except asyncio.TimeoutError:
                    pass

    async def task_done(self) -> None:
        async with self._cond:
            self._in_flight -= 1
            self.handled += 1
            self._cond.notify_all()

    async def close(self, *, discard: bool = False) -> None:
        """Stop handing out requests. ``discard`` also drops everything pending."""
        async with self._cond:
            self._closed = True
            if discard and self._heap:
                self.discarded.extend(request for _, _, request in self._heap)
                LOGGER.info("Discarded %d pending request(s)", len(self._heap))
                self._heap.clear()
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return len(self._heap)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    def pending_requests(self) -> List[LabeledRequest]:
        return [request for _, _, request in sorted(self._heap, key=lambda item: (item[0], item[1]))]

    def stats(self) -> Dict[str, int]:
        return {
            "pending": self.pending,
            "in_flight": self._in_flight,
            "handled": self.handled,
            "discarded": len(self.discarded),
        }
