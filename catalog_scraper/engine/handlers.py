"""Per-label request handlers.

Handlers read run state but never mutate it: each returns a
:class:`HandlerResult` that the dispatcher applies.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urljoin

from playwright.async_api import Page

from ..antibot.behavior import HumanBehavior
from ..errors import NetworkError
from ..models import CandidateRecord, DetailRecord, LabeledRequest, RequestLabel, ScrapeOptions
from ..polling import PollTimeout, poll_until
from ..sites.base import SiteAdapter
from .budget import PaginationState
from .dedup import DedupGateway
from .extraction import ExtractionPipeline, SeenRegistry
from .session import SessionManager
from .state import RunState
from .storage import RunStorage

LOGGER = logging.getLogger(__name__)


@dataclass
class HandlerResult:
    requests: List[LabeledRequest] = field(default_factory=list)
    candidates: List[CandidateRecord] = field(default_factory=list)
    known_keys: List[str] = field(default_factory=list)
    records: List[DetailRecord] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    seed: Optional[str] = None
    pagination_stop: Optional[str] = None


@dataclass
class HandlerContext:
    """Read-only collaborators shared by all handlers of a run."""

    adapter: SiteAdapter
    options: ScrapeOptions
    pipeline: ExtractionPipeline
    session: SessionManager
    dedup: DedupGateway
    state: RunState
    storage: RunStorage
    behavior: HumanBehavior
    search: Dict[str, Any] = field(default_factory=dict)
    load_more_timeout: float = 15.0
    poll_interval: float = 0.5
    image_timeout_ms: int = 30_000
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None


async def handle_login(ctx: HandlerContext, page: Page, request: LabeledRequest) -> HandlerResult:
    await ctx.session.login(page)
    successors = [LabeledRequest.model_validate(data) for data in request.user_data.get("next", [])]
    LOGGER.info("Login succeeded, releasing %d seed request(s)", len(successors))
    return HandlerResult(requests=successors)


async def handle_search(ctx: HandlerContext, page: Page, request: LabeledRequest) -> HandlerResult:
    params = request.user_data.get("search") or ctx.search
    await ctx.adapter.search(page, params, behavior=ctx.behavior)
    LOGGER.info("Search submitted (%s), results at %s", params, page.url)
    return await collect_listing(ctx, page, request)


async def handle_list(ctx: HandlerContext, page: Page, request: LabeledRequest) -> HandlerResult:
    return await collect_listing(ctx, page, request)


async def collect_listing(ctx: HandlerContext, page: Page, request: LabeledRequest) -> HandlerResult:
    """Harvest cards from a list page, paginating while the seed still wants items."""
    seed = request.seed or request.url
    adapter = ctx.adapter
    batch_attributes = adapter.infer_batch_attributes(seed)
    page_seen = SeenRegistry()
    pagination = PaginationState(
        max_load_clicks=ctx.options.max_load_clicks,
        clicks=request.user_data.get("page_index", 0),
        idle_streak=request.user_data.get("idle_pages", 0),
    )
    result = HandlerResult(seed=seed)

    async def harvest() -> int:
        items = await adapter.extract_list(page)
        fresh = ctx.pipeline.to_candidates(
            items,
            page_url=page.url,
            seed=seed,
            batch_attributes=batch_attributes,
            seen=page_seen,
        )
        fresh = [c for c in fresh if c.external_key not in ctx.state.seen]
        if not fresh:
            return 0
        checked = await ctx.dedup.filter_new([c.url for c in fresh])
        known = {c.external_key for c in fresh if c.url in checked.existing_urls}
        result.known_keys.extend(known)
        new = [c for c in fresh if c.external_key not in known]
        result.candidates.extend(new)
        return len(new)

    def wants_more() -> bool:
        return ctx.state.budget.seed_remaining(seed) - len(result.candidates) > 0

    harvested = await harvest()

    if adapter.pagination_mode == "next_page":
        pagination.record_load(harvested)
        next_url = await adapter.next_page_url(page) if wants_more() else None
        if pagination.should_continue(wants_more(), next_url is not None):
            result.requests.append(
                LabeledRequest(
                    url=urljoin(page.url, next_url),
                    label=RequestLabel.LIST,
                    user_data={
                        "seed": seed,
                        "page_index": pagination.clicks,
                        "idle_pages": pagination.idle_streak,
                    },
                )
            )
    else:
        while True:
            more = wants_more()
            has_more = more and await adapter.has_more(page)
            if not pagination.should_continue(more, has_more):
                break
            before = await adapter.count_items(page)
            if await adapter.load_more(page):

                async def grew() -> bool:
                    return await adapter.count_items(page) > before

                try:
                    await poll_until(
                        grew,
                        timeout=ctx.load_more_timeout,
                        interval=ctx.poll_interval,
                        description="more list items",
                        sleep=ctx.sleep,
                    )
                except PollTimeout:
                    LOGGER.debug("No new cards appeared after load-more on %s", page.url)
            pagination.record_load(await harvest())

    result.pagination_stop = pagination.stop_reason
    LOGGER.info(
        "%s %s: %d new candidate(s), %d already known, stop: %s",
        request.label.value,
        page.url,
        len(result.candidates),
        len(result.known_keys),
        pagination.stop_reason,
    )
    return result


async def handle_detail(ctx: HandlerContext, page: Page, request: LabeledRequest) -> HandlerResult:
    candidate = CandidateRecord.model_validate(request.user_data["candidate"])
    detail_fields = await ctx.adapter.extract_detail(page)
    record = ctx.pipeline.build_detail(candidate, detail_fields)
    result = HandlerResult(records=[record], seed=request.seed)
    if ctx.options.download_images:
        for image_url in await ctx.adapter.extract_images(record.fields):
            result.requests.append(
                LabeledRequest(
                    url=image_url,
                    label=RequestLabel.IMAGE_DOWNLOAD,
                    user_data={"seed": request.seed, "record": record.external_key},
                )
            )
    return result


async def handle_image_download(ctx: HandlerContext, page: Page, request: LabeledRequest) -> HandlerResult:
    response = await page.context.request.get(request.url, timeout=ctx.image_timeout_ms)
    if not response.ok:
        raise NetworkError(f"HTTP {response.status} downloading {request.url}")
    body = await response.body()
    path = ctx.storage.save_image(request.url, body, response.headers.get("content-type"))
    LOGGER.debug("Saved image %s (%d bytes) for %s", path.name, len(body), request.user_data.get("record"))
    return HandlerResult(files=[str(path)])


Handler = Callable[[HandlerContext, Page, LabeledRequest], Awaitable[HandlerResult]]

HANDLERS: Dict[RequestLabel, Handler] = {
    RequestLabel.LOGIN: handle_login,
    RequestLabel.SEARCH: handle_search,
    RequestLabel.LIST: handle_list,
    RequestLabel.DETAIL: handle_detail,
    RequestLabel.IMAGE_DOWNLOAD: handle_image_download,
}
