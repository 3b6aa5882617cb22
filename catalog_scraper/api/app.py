"""FastAPI service: job trigger, cancellation and live progress stream."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional

import orjson
from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import Field

from ..config import Settings
from ..engine import ProgressHub, ScrapeRun
from ..errors import UnknownSiteError
from ..models import CamelModel, Credentials, ExecutionContext, RunSummary, ScrapeOptions
from ..sites import available_sites, get_adapter

LOGGER = logging.getLogger(__name__)

RunFactory = Callable[[ExecutionContext, Settings, ProgressHub], ScrapeRun]


class JobRequest(CamelModel):
    site_id: str
    start_urls: List[str] = Field(default_factory=list)
    options: ScrapeOptions = Field(default_factory=ScrapeOptions)
    credentials: Optional[Credentials] = None
    execution_id: Optional[str] = None
    search: Dict[str, Any] = Field(default_factory=dict)

    def to_context(self) -> ExecutionContext:
        data = self.model_dump(exclude_none=True)
        return ExecutionContext(**data)


class JobAccepted(CamelModel):
    execution_id: str


class JobStatus(CamelModel):
    execution_id: str
    site_id: str
    status: str
    summary: Optional[RunSummary] = None


def default_run_factory(context: ExecutionContext, settings: Settings, hub: ProgressHub) -> ScrapeRun:
    return ScrapeRun(context, settings, hub=hub)


class JobManager:
    """Tracks in-process runs by execution id."""

    def __init__(self, settings: Settings, hub: ProgressHub, run_factory: RunFactory) -> None:
        self.settings = settings
        self.hub = hub
        self.run_factory = run_factory
        self.runs: Dict[str, ScrapeRun] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self.summaries: Dict[str, RunSummary] = {}

    def start(self, context: ExecutionContext) -> str:
        execution_id = context.execution_id
        if execution_id in self.runs:
            raise HTTPException(status_code=409, detail=f"Execution {execution_id} already exists")
        run = self.run_factory(context, self.settings, self.hub)
        self.runs[execution_id] = run
        task = asyncio.create_task(self._run(run))
        self.tasks[execution_id] = task
        LOGGER.info("Accepted job %s for %s (%d start URL(s))", execution_id, context.site_id, len(context.start_urls))
        return execution_id

    async def _run(self, run: ScrapeRun) -> None:
        execution_id = run.context.execution_id
        try:
            self.summaries[execution_id] = await run.execute()
        finally:
            self.tasks.pop(execution_id, None)

    def status(self, execution_id: str) -> JobStatus:
        run = self.runs.get(execution_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Unknown execution {execution_id}")
        summary = self.summaries.get(execution_id)
        return JobStatus(
            execution_id=execution_id,
            site_id=run.context.site_id,
            status=summary.stop_reason.value if summary else "running",
            summary=summary,
        )

    async def cancel(self, execution_id: str) -> JobStatus:
        run = self.runs.get(execution_id)
        if run is None:
            raise HTTPException(status_code=404, detail=f"Unknown execution {execution_id}")
        if execution_id not in self.summaries:
            await run.cancel()
        return self.status(execution_id)

    async def shutdown(self) -> None:
        for run in list(self.runs.values()):
            if run.context.execution_id in self.tasks:
                await run.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks.values(), return_exceptions=True)


def _sse(event: Dict[str, Any]) -> bytes:
    return b"data: " + orjson.dumps(event) + b"\n\n"


def create_app(settings: Optional[Settings] = None, run_factory: Optional[RunFactory] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    hub = ProgressHub()
    jobs = JobManager(settings, hub, run_factory or default_run_factory)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        yield
        await jobs.shutdown()

    app = FastAPI(title="Catalog Scraper API", lifespan=lifespan)
    app.state.jobs = jobs
    app.state.hub = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health", response_class=Response)
    def health() -> Response:
        return Response(content="ok", media_type="text/plain")

    @app.get("/sites", response_model=List[str])
    def sites() -> List[str]:
        return available_sites()

    @app.post("/jobs", status_code=202, response_model=JobAccepted, response_model_by_alias=True)
    async def create_job(payload: JobRequest) -> JobAccepted:
        try:
            get_adapter(payload.site_id)
        except UnknownSiteError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        context = payload.to_context()
        return JobAccepted(execution_id=jobs.start(context))

    @app.get("/jobs/{execution_id}", response_model=JobStatus, response_model_by_alias=True)
    def job_status(execution_id: str) -> JobStatus:
        return jobs.status(execution_id)

    @app.post("/jobs/{execution_id}/cancel", response_model=JobStatus, response_model_by_alias=True)
    async def cancel_job(execution_id: str) -> JobStatus:
        return await jobs.cancel(execution_id)

    @app.get("/jobs/{execution_id}/events")
    async def job_events(execution_id: str) -> StreamingResponse:
        if execution_id not in jobs.runs and not hub.is_finished(execution_id):
            raise HTTPException(status_code=404, detail=f"Unknown execution {execution_id}")

        async def events():
            async for event in hub.stream(execution_id):
                yield _sse(event)

        return StreamingResponse(
            events(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app
