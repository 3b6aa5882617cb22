"""Execution-scoped logging and the optional HTTP log sink."""
from __future__ import annotations

import logging
import queue
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import QueueHandler, QueueListener
from typing import Any, Iterator, MutableMapping, Optional, Tuple

import httpx

LOGGER = logging.getLogger(__name__)

PACKAGE_LOGGER = "catalog_scraper"

_CURRENT_EXECUTION: ContextVar[Optional[str]] = ContextVar("execution_id", default=None)


@contextmanager
def execution_scope(execution_id: str) -> Iterator[None]:
    """Tag every record logged inside the block (and tasks it spawns)."""
    token = _CURRENT_EXECUTION.set(execution_id)
    try:
        yield
    finally:
        _CURRENT_EXECUTION.reset(token)


class ExecutionFilter(logging.Filter):
    """Stamps ``execution_id`` on records from modules that log without a RunLogger."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "execution_id", None):
            execution_id = _CURRENT_EXECUTION.get()
            if execution_id:
                record.execution_id = execution_id
        return True


class RunLogger(logging.LoggerAdapter):
    """Prefixes messages with the execution id and tags records for the sink."""

    def __init__(self, logger: logging.Logger, execution_id: str) -> None:
        super().__init__(logger, {"execution_id": execution_id})

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra)
        extra.update(kwargs.pop("extra", None) or {})
        kwargs["extra"] = extra
        return f"[{self.extra['execution_id']}] {msg}", kwargs

    def event(self, level: int, event: str, msg: str, *args: Any, **context: Any) -> None:
        """Log a named transition with structured context for the sink."""
        self.log(level, msg, *args, extra={"event": event, "context": context})


class BackendLogHandler(logging.Handler):
    """Posts execution-tagged records to the observability endpoint.

    Runs inside a :class:`QueueListener` thread so the event loop never waits
    on the HTTP call.
    """

    def __init__(self, endpoint: str, *, timeout: float = 5.0, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.endpoint = endpoint
        self._client = httpx.Client(timeout=timeout)

    def emit(self, record: logging.LogRecord) -> None:
        execution_id = getattr(record, "execution_id", None)
        if not execution_id:
            return
        payload = {
            "executionId": execution_id,
            "level": record.levelname,
            "message": record.getMessage(),
            "context": {
                "event": getattr(record, "event", None),
                "logger": record.name,
                **(getattr(record, "context", None) or {}),
            },
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
        }
        try:
            self._client.post(self.endpoint, json=payload)
        except httpx.HTTPError:
            self.handleError(record)

    def close(self) -> None:
        self._client.close()
        super().close()


def install_backend_sink(endpoint: Optional[str]) -> Optional[QueueListener]:
    """Attach the HTTP sink to the package logger. Returns the started listener."""
    if not endpoint:
        return None
    log_queue: "queue.Queue[logging.LogRecord]" = queue.Queue(-1)
    handler = BackendLogHandler(endpoint)
    listener = QueueListener(log_queue, handler, respect_handler_level=True)
    queue_handler = QueueHandler(log_queue)
    queue_handler.addFilter(ExecutionFilter())
    logging.getLogger(PACKAGE_LOGGER).addHandler(queue_handler)
    listener.start()
    LOGGER.info("Forwarding execution logs to %s", endpoint)
    return listener


