"""Per-execution artifact directory: request journal, dataset, screenshots, images."""
from __future__ import annotations

import hashlib
import logging
import mimetypes
import re
import time
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional
from urllib.parse import urlsplit

import orjson

from ..models import DetailRecord, LabeledRequest, RunSummary

LOGGER = logging.getLogger(__name__)

_SAFE = re.compile(r"[^A-Za-z0-9_.-]+")


def _safe_name(value: str) -> str:
    return _SAFE.sub("_", value).strip("_") or "default"


class RunStorage:
    """Isolated on-disk layout for one ``(site_id, execution_id)`` pair.

    ``<root>/<site_id>/<execution_id>/`` holds ``request_queue/``,
    ``datasets/default.jsonl``, ``screenshots/``, ``images/`` and
    ``summary.json``. Records are appended as they are produced so a crash
    keeps everything collected so far.
    """

    def __init__(self, root: Path | str, site_id: str, execution_id: str) -> None:
        self.root = Path(root)
        self.site_id = site_id
        self.execution_id = execution_id
        self.run_dir = self.root / _safe_name(site_id) / _safe_name(execution_id)
        self.queue_dir = self.run_dir / "request_queue"
        self.dataset_path = self.run_dir / "datasets" / "default.jsonl"
        self.screenshot_dir = self.run_dir / "screenshots"
        self.image_dir = self.run_dir / "images"
        self.summary_path = self.run_dir / "summary.json"

    def prepare(self) -> "RunStorage":
        for directory in (self.queue_dir, self.dataset_path.parent, self.screenshot_dir, self.image_dir):
            directory.mkdir(parents=True, exist_ok=True)
        LOGGER.debug("Run storage ready at %s", self.run_dir)
        return self

    def _append(self, path: Path, payload: Any) -> None:
        with open(path, "ab") as fh:
            fh.write(orjson.dumps(payload) + b"\n")

    def append_record(self, record: DetailRecord) -> None:
        self._append(self.dataset_path, record.model_dump(mode="json"))

    def read_records(self) -> List[Dict[str, Any]]:
        return list(self.iter_records())

    def iter_records(self) -> Iterator[Dict[str, Any]]:
        if not self.dataset_path.exists():
            return
        with open(self.dataset_path, "rb") as fh:
            for line in fh:
                if line.strip():
                    yield orjson.loads(line)

    def journal(
        self,
        event: str,
        request: LabeledRequest,
        *,
        error: Optional[str] = None,
        files: Optional[List[str]] = None,
    ) -> None:
        entry = {
            "ts": time.time(),
            "event": event,
            "label": request.label.value,
            "url": request.url,
            "uniqueKey": request.unique_key,
            "retryCount": request.retry_count,
        }
        if error:
            entry["error"] = error
        if files:
            entry["files"] = files
        self._append(self.queue_dir / "journal.jsonl", entry)

    def write_pending(self, requests: Iterable[LabeledRequest]) -> int:
        pending = [request.model_dump(mode="json") for request in requests]
        (self.queue_dir / "pending.json").write_bytes(orjson.dumps(pending, option=orjson.OPT_INDENT_2))
        return len(pending)

    def save_image(self, url: str, body: bytes, content_type: Optional[str] = None) -> Path:
        digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
        suffix = Path(urlsplit(url).path).suffix.lower()
        if not suffix or len(suffix) > 5:
            suffix = mimetypes.guess_extension((content_type or "").split(";")[0].strip()) or ".bin"
        path = self.image_dir / f"{digest}{suffix}"
        path.write_bytes(body)
        return path

    def write_summary(self, summary: RunSummary) -> None:
        self.summary_path.write_bytes(
            orjson.dumps(summary.model_dump(mode="json", by_alias=True), option=orjson.OPT_INDENT_2)
        )

    def read_summary(self) -> Optional[Dict[str, Any]]:
        if not self.summary_path.exists():
            return None
        return orjson.loads(self.summary_path.read_bytes())
