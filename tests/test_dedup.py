import asyncio
import json

import httpx

from catalog_scraper.antibot.retry import CircuitBreaker, CircuitBreakerConfig
from catalog_scraper.engine.dedup import DedupGateway
from catalog_scraper.errors import DedupServiceError

ENDPOINT = "https://catalog.test/api/existing"


def _gateway(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("retry_wait", (0, 0))
    return DedupGateway(ENDPOINT, "mytheresa", client=client, **kwargs)


def test_known_urls_are_dropped_in_batches():
    calls = []

    def handler(request):
        payload = json.loads(request.content)
        calls.append(payload)
        existing = [url for url in payload["urls"] if url.endswith("1")]
        return httpx.Response(200, json={"existingUrls": existing})

    gateway = _gateway(handler, batch_size=2)
    urls = ["u0", "u1", "u2", "u3", "u1"]
    result = asyncio.run(gateway.filter_new(urls))

    assert result.new_urls == ["u0", "u2", "u3"]
    assert result.existing_urls == {"u1"}
    assert not result.degraded
    assert [len(call["urls"]) for call in calls] == [2, 2]
    assert all(call["source"] == "mytheresa" for call in calls)


def test_repeated_checks_give_the_same_answer():
    def handler(request):
        return httpx.Response(200, json={"existingUrls": ["a"]})

    gateway = _gateway(handler)
    first = asyncio.run(gateway.filter_new(["a", "b"]))
    second = asyncio.run(gateway.filter_new(["a", "b"]))
    assert first.new_urls == second.new_urls == ["b"]


def test_server_error_fails_open():
    attempts = []

    def handler(request):
        attempts.append(request)
        return httpx.Response(500)

    gateway = _gateway(handler, attempts=2)
    result = asyncio.run(gateway.filter_new(["a", "b"]))
    assert result.new_urls == ["a", "b"]
    assert result.degraded
    assert len(attempts) == 2


def test_malformed_body_fails_open():
    def handler(request):
        return httpx.Response(200, content=b"<html>oops</html>")

    result = asyncio.run(_gateway(handler, attempts=1).filter_new(["a"]))
    assert result.new_urls == ["a"] and result.degraded


def test_missing_existing_urls_key_fails_open():
    def handler(request):
        return httpx.Response(200, json={"urls": []})

    result = asyncio.run(_gateway(handler, attempts=1).filter_new(["a"]))
    assert result.new_urls == ["a"] and result.degraded


def test_without_endpoint_everything_is_new():
    gateway = DedupGateway(None, "fake")
    result = asyncio.run(gateway.filter_new(["a", "a", "b"]))
    assert result.new_urls == ["a", "b"]
    assert not result.degraded
    asyncio.run(gateway.aclose())


def test_open_circuit_skips_the_service():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(503)

    breaker = CircuitBreaker(
        CircuitBreakerConfig(failure_threshold=1, timeout=600, expected_exceptions=(DedupServiceError,))
    )
    gateway = _gateway(handler, attempts=1, breaker=breaker, batch_size=1)
    result = asyncio.run(gateway.filter_new(["a", "b", "c"]))
    assert result.new_urls == ["a", "b", "c"]
    assert result.degraded
    assert len(calls) == 1
    assert breaker.is_open()
