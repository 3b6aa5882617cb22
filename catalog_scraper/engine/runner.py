"""Top-level orchestration of one scrape run."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, List, Optional

from ..antibot.behavior import BehaviorPresets, HumanBehavior
from ..antibot.blocking import DEFAULT_BLOCK_MARKERS, BlockGuard
from ..antibot.captcha import CaptchaSettings, CaptchaSolver
from ..antibot.retry import RetryPolicy
from ..antibot.storage import SessionStore
from ..config import Settings
from ..errors import AuthError, QueueInitError
from ..models import CandidateRecord, ExecutionContext, LabeledRequest, RequestLabel, RunSummary, StopReason
from ..sites import get_adapter
from ..sites.base import SiteAdapter
from ..telemetry import RunLogger, execution_scope
from .browser import BrowserProvider
from .budget import BudgetController
from .dedup import DedupGateway
from .dispatcher import Dispatcher, RecordSink
from .extraction import ExtractionPipeline
from .handlers import HandlerContext
from .progress import ProgressHub, ProgressTracker
from .queue import RequestQueue
from .session import SessionManager
from .state import RunState
from .storage import RunStorage
from .worker import WorkerPool

LOGGER = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def _is_http_url(url: str) -> bool:
    return url.startswith(("http://", "https://"))


class ScrapeRun:
    """Owns every piece of state for one :class:`ExecutionContext`.

    ``execute`` always finishes by writing the summary and publishing the
    terminal progress event, whatever the outcome.
    """

    def __init__(
        self,
        context: ExecutionContext,
        settings: Settings,
        *,
        hub: Optional[ProgressHub] = None,
        adapter: Optional[SiteAdapter] = None,
        browser: Optional[BrowserProvider] = None,
        dedup: Optional[DedupGateway] = None,
        behavior: Optional[HumanBehavior] = None,
        retry_policy: Optional[RetryPolicy] = None,
        record_sink: Optional[RecordSink] = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self.context = context
        self.settings = settings
        self.hub = hub or ProgressHub()
        self.adapter = adapter or get_adapter(context.site_id)
        self.log = RunLogger(LOGGER, context.execution_id)
        self.storage = RunStorage(settings.storage_dir, context.site_id, context.execution_id)
        self.browser = browser or BrowserProvider(
            headless=context.options.headless,
            proxy=settings.proxy,
            navigation_timeout_ms=settings.navigation_timeout_ms,
        )
        self.dedup = dedup or DedupGateway(
            settings.dedup_api_url,
            context.site_id,
            batch_size=settings.dedup_batch_size,
            token=settings.dedup_api_token,
        )
        self.behavior = behavior or HumanBehavior(BehaviorPresets.from_name(settings.behavior_preset), sleep=sleep)
        self.retry_policy = retry_policy or RetryPolicy(
            max_retries=settings.max_retries,
            backoff_min=settings.retry_backoff_min,
            backoff_max=settings.retry_backoff_max,
        )
        self.record_sink = record_sink
        self._sleep = sleep
        self.queue = RequestQueue()
        self.progress = ProgressTracker(
            context.execution_id,
            concurrency=context.options.max_concurrency,
            hub=self.hub,
        )
        self.session = SessionManager(
            self.adapter,
            SessionStore(settings.session_dir, max_age_seconds=settings.session_max_age),
            context.credentials,
            behavior=self.behavior,
            captcha=self._captcha_settings(),
            navigation_timeout_ms=settings.navigation_timeout_ms,
        )
        self.state: Optional[RunState] = None

    def _captcha_settings(self) -> CaptchaSettings:
        solver = None
        if self.settings.captcha_mode == "auto" and self.settings.captcha_api_key:
            solver = CaptchaSolver(self.settings.captcha_api_key)
        return CaptchaSettings(
            mode=self.settings.captcha_mode,
            solver=solver,
            timeout=self.settings.captcha_timeout,
            sleep=self._sleep,
        )

    # -- seeding -----------------------------------------------------------

    def build_seed_requests(self) -> List[LabeledRequest]:
        """Label start URLs through the adapter; fall back to a SEARCH seed.

        Raises
        ------
        QueueInitError
            If no start URL is usable and no search is configured
        """
        seeds: List[LabeledRequest] = []
        for url in self.context.start_urls:
            if not _is_http_url(url):
                self.log.warning("Ignoring invalid start URL %s", url)
                continue
            label = self.adapter.classify_page(url).to_label()
            if label in (None, RequestLabel.LOGIN):
                self.log.warning("Ignoring start URL %s: not a catalog page", url)
                continue
            user_data: dict = {"seed": url}
            if label is RequestLabel.DETAIL:
                candidate = CandidateRecord(url=url, external_key=self.adapter.external_key(url), source=self.adapter.site_id)
                user_data["candidate"] = candidate.model_dump(mode="json")
            seeds.append(LabeledRequest(url=url, label=label, user_data=user_data))

        if not seeds and self.context.search and self.adapter.search_url:
            seeds.append(
                LabeledRequest(
                    url=self.adapter.search_url,
                    label=RequestLabel.SEARCH,
                    user_data={"seed": self.adapter.search_url, "search": dict(self.context.search)},
                )
            )
        if not seeds:
            raise QueueInitError(f"No valid start URLs for {self.context.site_id}")
        return seeds

    def _budget_for(self, seeds: List[LabeledRequest]) -> BudgetController:
        listing_seeds = [s.url for s in seeds if s.label is not RequestLabel.DETAIL]
        detail_seeds = [s.url for s in seeds if s.label is RequestLabel.DETAIL]
        budget = BudgetController.for_run(
            listing_seeds or detail_seeds,
            max_products=self.context.options.max_products,
            max_requests=self.context.options.max_requests,
        )
        return budget

    async def _initial_requests(self, browser_context: Any, seeds: List[LabeledRequest]) -> List[LabeledRequest]:
        if not self.adapter.requires_login:
            return seeds
        page = await browser_context.new_page()
        try:
            valid = await self.session.has_valid_session(page)
        finally:
            await page.close()
        if valid:
            self.log.event(logging.INFO, "session_restored", "Reusing saved session")
            return seeds
        if self.context.credentials is None:
            raise AuthError(f"{self.adapter.site_id} requires credentials and no valid session exists")
        self.log.event(logging.INFO, "login_required", "No valid session, starting with LOGIN")
        return [
            LabeledRequest(
                url=self.adapter.login_url,
                label=RequestLabel.LOGIN,
                user_data={"next": [seed.model_dump(mode="json") for seed in seeds]},
            )
        ]

    def _admit_detail_seeds(self, seeds: List[LabeledRequest], state: RunState) -> List[LabeledRequest]:
        admitted = []
        for seed in seeds:
            if seed.label is RequestLabel.DETAIL:
                if not state.seen.claim(self.adapter.external_key(seed.url)):
                    continue
                if not state.budget.reserve(seed.url, 1):
                    continue
            admitted.append(seed)
        return admitted

    # -- lifecycle ---------------------------------------------------------

    async def cancel(self) -> None:
        """External stop: finish in-flight requests, discard the rest."""
        if self.state is not None and self.state.stop(StopReason.CANCELLED, "cancelled by operator"):
            self.log.event(logging.WARNING, "cancelled", "Cancellation requested")
        await self.queue.close(discard=True)

    async def execute(self) -> RunSummary:
        started_at = datetime.now(timezone.utc)
        options = self.context.options
        with execution_scope(self.context.execution_id):
            self.storage.prepare()
            self.log.event(
                logging.INFO,
                "run_started",
                "Run started for %s (%d start URL(s), concurrency=%d)",
                self.context.site_id,
                len(self.context.start_urls),
                options.max_concurrency,
            )
            self.progress.publish()
            try:
                seeds = self.build_seed_requests()
                self.state = RunState(self.context.execution_id, budget=self._budget_for(seeds))
                if self.queue.closed:
                    self.state.stop(StopReason.CANCELLED, "cancelled before start")
                seeds = self._admit_detail_seeds(seeds, self.state)
                pipeline = ExtractionPipeline(self.adapter, self.context.execution_id)
                handler_ctx = HandlerContext(
                    adapter=self.adapter,
                    options=options,
                    pipeline=pipeline,
                    session=self.session,
                    dedup=self.dedup,
                    state=self.state,
                    storage=self.storage,
                    behavior=self.behavior,
                    search=dict(self.context.search),
                    sleep=self._sleep,
                )
                dispatcher = Dispatcher(
                    handler_ctx,
                    self.queue,
                    self.progress,
                    retry_policy=self.retry_policy,
                    block_guard=BlockGuard(
                        markers=DEFAULT_BLOCK_MARKERS + tuple(self.adapter.block_markers),
                        screenshot_dir=self.storage.screenshot_dir,
                        sleep=self._sleep,
                    ),
                    navigation_timeout_ms=self.settings.navigation_timeout_ms,
                    handler_timeout=self.settings.handler_timeout,
                    login_timeout=self.settings.captcha_timeout + self.settings.navigation_timeout_ms / 1000,
                    record_sink=self.record_sink,
                )
                async with self.browser.open(storage_state=self.session.restore()) as browser_context:
                    for request in await self._initial_requests(browser_context, seeds):
                        await self.queue.add(request)
                    self.progress.set_pending(self.queue.pending)
                    self.progress.publish()
                    pool = WorkerPool(
                        dispatcher,
                        self.queue,
                        self.state,
                        concurrency=options.max_concurrency,
                        page_factory=browser_context.new_page,
                    )
                    await pool.run()
            except QueueInitError as exc:
                self._fail(StopReason.ERROR, exc)
            except AuthError as exc:
                self._fail(StopReason.AUTH_FAILED, exc)
            except asyncio.CancelledError:
                self._fail(StopReason.CANCELLED, "run task cancelled")
                raise
            except Exception as exc:
                self.log.exception("Run crashed: %s", exc)
                self._fail(StopReason.ERROR, exc)
            finally:
                summary = await self._finish(started_at)
        return summary

    def _fail(self, reason: StopReason, error: Any) -> None:
        if self.state is None:
            self.state = RunState(self.context.execution_id, budget=BudgetController(target=0, max_requests=0))
        if self.state.stop(reason, str(error)):
            self.log.event(logging.ERROR, "run_failed", "Run stopped (%s): %s", reason.value, error)

    async def _finish(self, started_at: datetime) -> RunSummary:
        finished_at = datetime.now(timezone.utc)
        state = self.state
        pending = self.queue.pending_requests() + self.queue.discarded
        self.storage.write_pending(pending)
        summary = RunSummary(
            execution_id=self.context.execution_id,
            site_id=self.context.site_id,
            total_tasks=self.progress.completed + self.progress.failed + len(pending),
            successful_tasks=self.progress.completed,
            failed_tasks=self.progress.failed,
            records=len(state.records) if state else 0,
            stop_reason=(state.stop_reason if state and state.stop_reason else StopReason.COMPLETED),
            error=state.error if state else None,
            started_at=started_at,
            finished_at=finished_at,
            total_time_seconds=round((finished_at - started_at).total_seconds(), 3),
            average_time_per_task_seconds=round(self.progress.average_duration, 3),
            concurrency=self.context.options.max_concurrency,
        )
        self.storage.write_summary(summary)
        self.progress.set_pending(0)
        self.progress.publish()
        self.hub.complete(self.context.execution_id, summary)
        await self.dedup.aclose()
        self.log.event(
            logging.INFO,
            "run_finished",
            "Run finished (%s): %d record(s), %d completed, %d failed in %.1fs",
            summary.stop_reason.value,
            summary.records,
            summary.successful_tasks,
            summary.failed_tasks,
            summary.total_time_seconds,
        )
        return summary
