"""Pydantic models shared across engine components."""
from __future__ import annotations

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


class RequestLabel(str, Enum):
    """Processing stage of a crawl request."""

    LOGIN = "LOGIN"
    SEARCH = "SEARCH"
    LIST = "LIST"
    DETAIL = "DETAIL"
    IMAGE_DOWNLOAD = "IMAGE_DOWNLOAD"


class RequestStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    RETRYING = "retrying"
    DONE = "done"
    FAILED = "failed"


class StopReason(str, Enum):
    COMPLETED = "completed"
    BUDGET_EXHAUSTED = "budget_exhausted"
    CANCELLED = "cancelled"
    AUTH_FAILED = "auth_failed"
    ERROR = "error"


class CamelModel(BaseModel):
    """Accepts and emits camelCase keys for the job API while using snake_case in code."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ScrapeOptions(CamelModel):
    max_products: Optional[int] = Field(default=None, ge=1)
    max_requests: Optional[int] = Field(default=None, ge=1)
    max_concurrency: int = Field(default=5, ge=1, le=50)
    max_load_clicks: int = Field(default=10, ge=0)
    headless: bool = True
    include_details: bool = True
    download_images: bool = False


class Credentials(CamelModel):
    username: str
    password: str

    @property
    def identity(self) -> str:
        return self.username.strip().lower()

    def __repr__(self) -> str:  # keep passwords out of logs
        return f"Credentials(username={self.username!r})"


class ExecutionContext(CamelModel):
    """Identity and immutable configuration of a single run."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    execution_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    site_id: str
    start_urls: List[str] = Field(default_factory=list)
    options: ScrapeOptions = Field(default_factory=ScrapeOptions)
    credentials: Optional[Credentials] = None
    search: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("start_urls")
    @classmethod
    def _strip_urls(cls, value: List[str]) -> List[str]:
        return [url.strip() for url in value if url and url.strip()]


class LabeledRequest(BaseModel):
    """Unit of crawl work tagged with its processing stage."""

    url: str
    label: RequestLabel
    user_data: Dict[str, Any] = Field(default_factory=dict)
    unique_key: str = ""
    retry_count: int = 0
    status: RequestStatus = RequestStatus.PENDING
    errors: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _default_unique_key(self) -> "LabeledRequest":
        if not self.unique_key:
            self.unique_key = f"{self.label.value}:{self.url}"
        return self

    @property
    def seed(self) -> Optional[str]:
        return self.user_data.get("seed")

    def describe(self) -> str:
        return f"{self.label.value} {self.url}"


class SessionState(BaseModel):
    """Persisted browser storage for one (site, identity) pair."""

    site_id: str
    owner_identity: str
    storage_state: Dict[str, Any]
    saved_at: float = Field(default_factory=time.time)
    max_age: float = 4 * 3600

    def age(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.saved_at

    def is_fresh(self, now: Optional[float] = None) -> bool:
        return self.age(now) < self.max_age


class Price(BaseModel):
    amount: Optional[float] = None
    currency: str = "USD"


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set)):
        return len(value) == 0
    return False


def merge_fields(list_fields: Dict[str, Any], detail_fields: Dict[str, Any]) -> Dict[str, Any]:
    """Merge detail-stage fields onto list-stage fields.

    Non-empty detail values win on conflict. Empty detail values never erase
    a list value, so attributes only known at list time survive.
    """
    merged = dict(list_fields)
    for key, value in detail_fields.items():
        if not is_empty(value) or key not in merged:
            merged[key] = value
    return merged


class CandidateRecord(BaseModel):
    """Record discovered on a list page, not yet enriched with detail data."""

    url: str
    external_key: str
    source: str
    position: Optional[int] = None
    origin_url: Optional[str] = None
    fields: Dict[str, Any] = Field(default_factory=dict)

    def promote(
        self,
        detail_fields: Dict[str, Any],
        *,
        execution_id: str,
        missing_fields: Optional[List[str]] = None,
    ) -> "DetailRecord":
        return DetailRecord(
            url=self.url,
            external_key=self.external_key,
            source=self.source,
            fields=merge_fields(self.fields, detail_fields),
            missing_fields=list(missing_fields or []),
            execution_id=execution_id,
        )


class DetailRecord(BaseModel):
    url: str
    external_key: str
    source: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    missing_fields: List[str] = Field(default_factory=list)
    execution_id: str
    scraped_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class WorkerStatus(CamelModel):
    id: int
    is_working: bool = False
    current_task: Optional[str] = None


class TaskSummary(CamelModel):
    id: str
    name: str
    duration: float
    error: Optional[str] = None


class ProgressSnapshot(CamelModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    running: int = 0
    pending: int = 0
    percentage: float = 0.0
    start_time: float = 0.0
    average_time_per_task: float = 0.0
    estimated_time_remaining: Optional[float] = None
    records: int = 0
    workers: List[WorkerStatus] = Field(default_factory=list)
    recent_completed_tasks: List[TaskSummary] = Field(default_factory=list)
    recent_failed_tasks: List[TaskSummary] = Field(default_factory=list)

    def to_event(self) -> Dict[str, Any]:
        return {"type": "progress", **self.model_dump(mode="json", by_alias=True)}


class RunSummary(CamelModel):
    execution_id: str
    site_id: str
    total_tasks: int = 0
    successful_tasks: int = 0
    failed_tasks: int = 0
    records: int = 0
    stop_reason: StopReason = StopReason.COMPLETED
    error: Optional[str] = None
    started_at: datetime
    finished_at: datetime
    total_time_seconds: float = 0.0
    average_time_per_task_seconds: float = 0.0
    concurrency: int = 1

    def to_event(self) -> Dict[str, Any]:
        return {"type": "completed", "summary": self.model_dump(mode="json", by_alias=True)}
