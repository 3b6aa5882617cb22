import json
import logging

import httpx

from catalog_scraper.telemetry import BackendLogHandler, ExecutionFilter, RunLogger, execution_scope


def _record(msg="hello", **extra):
    record = logging.LogRecord("catalog_scraper.engine", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_run_logger_prefixes_and_tags(caplog):
    logger = RunLogger(logging.getLogger("catalog_scraper.test"), "exec-42")
    with caplog.at_level(logging.INFO):
        logger.event(logging.INFO, "run_started", "Started %s", "fake", seeds=2)
    [record] = caplog.records
    assert record.getMessage() == "[exec-42] Started fake"
    assert record.execution_id == "exec-42"
    assert record.event == "run_started"
    assert record.context == {"seeds": 2}


def test_execution_filter_uses_the_active_scope():
    execution_filter = ExecutionFilter()
    outside = _record()
    execution_filter.filter(outside)
    assert not hasattr(outside, "execution_id")

    with execution_scope("exec-7"):
        inside = _record()
        tagged = _record(execution_id="exec-1")
        assert execution_filter.filter(inside)
        execution_filter.filter(tagged)
    assert inside.execution_id == "exec-7"
    assert tagged.execution_id == "exec-1"


def test_backend_handler_posts_only_execution_records():
    posted = []

    def handler(request):
        posted.append(json.loads(request.content))
        return httpx.Response(204)

    sink = BackendLogHandler("https://logs.test/ingest")
    sink._client = httpx.Client(transport=httpx.MockTransport(handler))
    sink.emit(_record("untagged"))
    sink.emit(_record("page loaded", execution_id="exec-9", event="navigated", context={"url": "u"}))
    sink.close()

    [payload] = posted
    assert payload["executionId"] == "exec-9"
    assert payload["level"] == "INFO"
    assert payload["message"] == "page loaded"
    assert payload["context"] == {"event": "navigated", "logger": "catalog_scraper.engine", "url": "u"}
