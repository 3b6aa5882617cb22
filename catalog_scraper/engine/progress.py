"""Live progress snapshots and the per-execution event stream."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional

from ..models import LabeledRequest, ProgressSnapshot, RequestLabel, RunSummary, TaskSummary, WorkerStatus

LOGGER = logging.getLogger(__name__)

ETA_WINDOW = 20
RECENT_TASKS = 10

# Labels that count as progress tasks; LOGIN and image fetches are overhead.
TRACKED_LABELS = frozenset({RequestLabel.SEARCH, RequestLabel.LIST, RequestLabel.DETAIL})


class ProgressHub:
    """Fan-out of progress events to subscribers keyed by execution id.

    Subscribers that arrive after a run finished receive the terminal event
    immediately, followed by stream closure.
    """

    def __init__(self) -> None:
        self._subscribers: Dict[str, List[asyncio.Queue]] = {}
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._terminal: Dict[str, Dict[str, Any]] = {}

    def subscribe(self, execution_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        queue.put_nowait({"type": "connected", "executionId": execution_id})
        if execution_id in self._terminal:
            queue.put_nowait(self._terminal[execution_id])
            queue.put_nowait(None)
            return queue
        if execution_id in self._latest:
            queue.put_nowait(self._latest[execution_id])
        self._subscribers.setdefault(execution_id, []).append(queue)
        return queue

    def unsubscribe(self, execution_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(execution_id, [])
        if queue in queues:
            queues.remove(queue)

    def publish(self, execution_id: str, event: Dict[str, Any]) -> None:
        self._latest[execution_id] = event
        for queue in self._subscribers.get(execution_id, []):
            queue.put_nowait(event)

    def complete(self, execution_id: str, summary: RunSummary) -> None:
        event = summary.to_event()
        self._terminal[execution_id] = event
        self._latest.pop(execution_id, None)
        for queue in self._subscribers.pop(execution_id, []):
            queue.put_nowait(event)
            queue.put_nowait(None)

    def is_finished(self, execution_id: str) -> bool:
        return execution_id in self._terminal

    def terminal_event(self, execution_id: str) -> Optional[Dict[str, Any]]:
        return self._terminal.get(execution_id)

    async def stream(self, execution_id: str) -> AsyncIterator[Dict[str, Any]]:
        """Yield events until the run's terminal event has been delivered."""
        queue = self.subscribe(execution_id)
        try:
            while True:
                event = await queue.get()
                if event is None:
                    return
                yield event
        finally:
            self.unsubscribe(execution_id, queue)


class ProgressTracker:
    """Per-run counters feeding :class:`ProgressSnapshot`."""

    def __init__(
        self,
        execution_id: str,
        *,
        concurrency: int,
        hub: Optional[ProgressHub] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.execution_id = execution_id
        self.concurrency = max(1, concurrency)
        self.hub = hub
        self._clock = clock
        self.start_time = clock()
        self.completed = 0
        self.failed = 0
        self.records = 0
        self._durations: Deque[float] = deque(maxlen=ETA_WINDOW)
        self._started: Dict[str, float] = {}
        self._workers: Dict[int, WorkerStatus] = {
            i: WorkerStatus(id=i) for i in range(1, self.concurrency + 1)
        }
        self._recent_completed: Deque[TaskSummary] = deque(maxlen=RECENT_TASKS)
        self._recent_failed: Deque[TaskSummary] = deque(maxlen=RECENT_TASKS)
        self._pending = 0

    def set_pending(self, pending: int) -> None:
        self._pending = pending

    def task_started(self, worker_id: int, request: LabeledRequest) -> None:
        self._started[request.unique_key] = self._clock()
        self._workers[worker_id] = WorkerStatus(id=worker_id, is_working=True, current_task=request.url)

    def _finish(self, worker_id: int, request: LabeledRequest) -> float:
        started = self._started.pop(request.unique_key, self._clock())
        self._workers[worker_id] = WorkerStatus(id=worker_id)
        return max(0.0, self._clock() - started)

    def task_completed(self, worker_id: int, request: LabeledRequest, *, records: int = 0) -> None:
        duration = self._finish(worker_id, request)
        self.records += records
        if request.label not in TRACKED_LABELS:
            return
        self.completed += 1
        self._durations.append(duration)
        self._recent_completed.appendleft(
            TaskSummary(id=request.unique_key, name=request.describe(), duration=round(duration, 3))
        )

    def task_failed(self, worker_id: int, request: LabeledRequest, error: str) -> None:
        duration = self._finish(worker_id, request)
        if request.label not in TRACKED_LABELS:
            return
        self.failed += 1
        self._recent_failed.appendleft(
            TaskSummary(id=request.unique_key, name=request.describe(), duration=round(duration, 3), error=error)
        )

    def task_released(self, worker_id: int, request: LabeledRequest) -> None:
        """Request went back to the queue (retry or session wait)."""
        self._finish(worker_id, request)

    @property
    def average_duration(self) -> float:
        return sum(self._durations) / len(self._durations) if self._durations else 0.0

    def snapshot(self) -> ProgressSnapshot:
        running = sum(1 for worker in self._workers.values() if worker.is_working)
        total = self.completed + self.failed + running + self._pending
        done = self.completed + self.failed
        eta = None
        if self._durations:
            eta = round(self.average_duration * (self._pending + running) / self.concurrency, 1)
        return ProgressSnapshot(
            total=total,
            completed=self.completed,
            failed=self.failed,
            running=running,
            pending=self._pending,
            percentage=round(done / total * 100, 1) if total else 0.0,
            start_time=self.start_time,
            average_time_per_task=round(self.average_duration, 3),
            estimated_time_remaining=eta,
            records=self.records,
            workers=[self._workers[i] for i in sorted(self._workers)],
            recent_completed_tasks=list(self._recent_completed),
            recent_failed_tasks=list(self._recent_failed),
        )

    def publish(self) -> ProgressSnapshot:
        snapshot = self.snapshot()
        if self.hub is not None:
            self.hub.publish(self.execution_id, snapshot.to_event())
        return snapshot
