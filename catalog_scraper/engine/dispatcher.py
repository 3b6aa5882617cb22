"""Request dispatcher: the labelled state machine with retry and backoff."""
from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..antibot.behavior import HumanBehavior
from ..antibot.blocking import BlockGuard
from ..antibot.retry import RetryPolicy
from ..errors import AuthError, NavigationTimeout, NetworkError, SessionExpiredError
from ..models import DetailRecord, LabeledRequest, RequestLabel, RequestStatus
from .handlers import HANDLERS, HandlerContext, HandlerResult
from .progress import ProgressTracker
from .queue import RequestQueue

LOGGER = logging.getLogger(__name__)

MAX_RELOGINS = 3

RecordSink = Callable[[DetailRecord], Awaitable[None]]


class Dispatcher:
    """Runs one request through navigation, anti-detection and its handler.

    Failures are retried up to ``retry_policy.max_retries`` times with a
    jittered delay, then marked FAILED without stopping the run. Only
    :class:`AuthError` propagates to the worker pool, including a LOGIN
    request that has run out of retries.
    """

    def __init__(
        self,
        ctx: HandlerContext,
        queue: RequestQueue,
        progress: ProgressTracker,
        *,
        retry_policy: RetryPolicy,
        block_guard: BlockGuard,
        navigation_timeout_ms: int = 60_000,
        handler_timeout: float = 180.0,
        login_timeout: float = 0.0,
        record_sink: Optional[RecordSink] = None,
    ) -> None:
        self.ctx = ctx
        self.queue = queue
        self.progress = progress
        self.retry_policy = retry_policy
        self.block_guard = block_guard
        self.navigation_timeout_ms = navigation_timeout_ms
        self.handler_timeout = handler_timeout
        self.login_timeout = login_timeout
        self.record_sink = record_sink

    @property
    def state(self):
        return self.ctx.state

    @property
    def behavior(self) -> HumanBehavior:
        return self.ctx.behavior

    def held_by_session(self, request: LabeledRequest) -> bool:
        """True while a login is pending and ``request`` needs the session."""
        return request.label is not RequestLabel.LOGIN and not self.ctx.session.gate.is_set()

    def timeout_for(self, request: LabeledRequest) -> float:
        if request.label is RequestLabel.LOGIN:
            return max(self.handler_timeout, self.login_timeout)
        return self.handler_timeout

    async def process(self, worker_id: int, page: Page, request: LabeledRequest) -> None:
        request.status = RequestStatus.RUNNING
        self.progress.task_started(worker_id, request)
        self.ctx.storage.journal("started", request)
        timeout = self.timeout_for(request)
        try:
            result = await asyncio.wait_for(self._execute(page, request), timeout)
        except AuthError as exc:
            request.status = RequestStatus.FAILED
            self.progress.task_failed(worker_id, request, str(exc))
            self.ctx.storage.journal("failed", request, error=str(exc))
            raise
        except SessionExpiredError as exc:
            await self._on_session_expired(worker_id, request, exc)
        except asyncio.TimeoutError:
            await self._on_failure(
                worker_id,
                request,
                NavigationTimeout(f"Handler exceeded {timeout:.0f}s"),
            )
        except Exception as exc:
            await self._on_failure(worker_id, request, exc)
        else:
            await self._apply(worker_id, request, result)
        finally:
            self.progress.set_pending(self.queue.pending)
            self.progress.publish()

    async def _execute(self, page: Page, request: LabeledRequest) -> HandlerResult:
        label = request.label
        if label is not RequestLabel.IMAGE_DOWNLOAD:
            if label is not RequestLabel.LOGIN:
                await self.behavior.before_navigation(page)
            await self._navigate(page, request.url)
            if label is not RequestLabel.LOGIN:
                await self.block_guard.ensure_not_blocked(page, label=label.value)
                adapter = self.ctx.adapter
                if adapter.requires_login and adapter.is_login_page(page.url):
                    raise SessionExpiredError(f"Redirected to login from {request.url}")
                await self.behavior.interaction_sequence(page)
        return await HANDLERS[label](self.ctx, page, request)

    async def _navigate(self, page: Page, url: str) -> None:
        try:
            response = await page.goto(url, wait_until="domcontentloaded", timeout=self.navigation_timeout_ms)
        except PlaywrightTimeoutError as exc:
            raise NavigationTimeout(f"Timed out loading {url}") from exc
        except PlaywrightError as exc:
            raise NetworkError(f"Failed to load {url}: {exc}") from exc
        if response is not None and response.status >= 500:
            raise NetworkError(f"HTTP {response.status} loading {url}")

    async def _on_failure(self, worker_id: int, request: LabeledRequest, exc: BaseException) -> None:
        error = f"{type(exc).__name__}: {exc}"
        request.errors.append(error)
        retryable = getattr(exc, "retryable", True)
        if retryable and self.retry_policy.should_retry(request.retry_count):
            request.retry_count += 1
            request.status = RequestStatus.RETRYING
            delay = self.retry_policy.backoff_delay()
            LOGGER.warning(
                "Retrying %s in %.1fs (retry %d/%d): %s",
                request.describe(),
                delay,
                request.retry_count,
                self.retry_policy.max_retries,
                error,
            )
            self.state.retried += 1
            self.progress.task_released(worker_id, request)
            self.ctx.storage.journal("retry", request, error=error)
            if await self.queue.requeue(request, delay=delay):
                return
            LOGGER.info("Queue closed, dropping retry of %s", request.describe())

        request.status = RequestStatus.FAILED
        self.state.failed_requests.append(request)
        LOGGER.error("Request failed after %d attempt(s): %s: %s", request.retry_count + 1, request.describe(), error)
        self.progress.task_failed(worker_id, request, error)
        self.ctx.storage.journal("failed", request, error=error)
        if request.label is RequestLabel.LOGIN:
            raise AuthError(f"Login failed after {request.retry_count + 1} attempt(s): {error}") from exc

    async def _on_session_expired(self, worker_id: int, request: LabeledRequest, exc: SessionExpiredError) -> None:
        if await self.ctx.session.invalidate():
            self.state.relogins += 1
            if self.state.relogins > MAX_RELOGINS:
                raise AuthError(f"Session expired {self.state.relogins} times, giving up")
            login = LabeledRequest(
                url=self.ctx.adapter.login_url,
                label=RequestLabel.LOGIN,
                unique_key=f"LOGIN:relogin-{self.state.relogins}",
            )
            LOGGER.warning("Session expired on %s, scheduling re-login", request.url)
            await self.queue.add(login, forefront=True)
        await self._on_failure(worker_id, request, exc)

    async def _apply(self, worker_id: int, request: LabeledRequest, result: HandlerResult) -> None:
        request.status = RequestStatus.DONE
        self.state.succeeded += 1
        added = 0
        for record in result.records:
            if self.state.add_record(record):
                added += 1
                self.ctx.storage.append_record(record)
                await self._emit(record)

        self.state.seen.mark(result.known_keys)
        if result.candidates:
            added += await self._admit(result)

        for successor in result.requests:
            await self.queue.add(successor)

        if request.label is RequestLabel.DETAIL:
            self.state.budget.mark_processed(request.seed)
        self.progress.task_completed(worker_id, request, records=added)
        self.ctx.storage.journal("done", request, files=result.files)

    async def _admit(self, result: HandlerResult) -> int:
        """Claim candidates, reserve budget and enqueue DETAIL work (or emit list records)."""
        seed = result.seed
        fresh = [
            candidate
            for candidate in result.candidates
            if self.state.seen.claim(candidate.external_key, seed=seed, position=candidate.position)
        ]
        granted = self.state.budget.reserve(seed, len(fresh))
        accepted = fresh[:granted]
        emitted = 0
        for candidate in accepted:
            if self.ctx.options.include_details:
                await self.queue.add(
                    LabeledRequest(
                        url=candidate.url,
                        label=RequestLabel.DETAIL,
                        user_data={"seed": seed, "candidate": candidate.model_dump(mode="json")},
                    )
                )
            else:
                record = self.ctx.pipeline.list_record(candidate)
                if self.state.add_record(record):
                    emitted += 1
                    self.ctx.storage.append_record(record)
                    await self._emit(record)
        LOGGER.info(
            "Admitted %d of %d candidate(s) from %s (budget %d/%d)",
            len(accepted),
            len(result.candidates),
            seed,
            self.state.budget.enqueued,
            self.state.budget.target,
        )
        return emitted

    async def _emit(self, record: DetailRecord) -> None:
        if self.record_sink is None:
            return
        try:
            await self.record_sink(record)
        except Exception as exc:
            LOGGER.error("Record sink rejected %s: %s", record.external_key, exc)
