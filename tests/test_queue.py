import asyncio

from catalog_scraper.engine.queue import RequestQueue
from catalog_scraper.models import LabeledRequest, RequestLabel


def _req(path, label=RequestLabel.LIST, **kwargs):
    return LabeledRequest(url=f"https://shop.test/{path}", label=label, **kwargs)


def test_duplicate_unique_key_rejected():
    async def scenario():
        queue = RequestQueue()
        assert await queue.add(_req("a"))
        assert not await queue.add(_req("a"))
        assert queue.pending == 1

    asyncio.run(scenario())


def test_forefront_jumps_ahead_and_drain_returns_none():
    async def scenario():
        queue = RequestQueue()
        await queue.add(_req("a"))
        await queue.add(_req("b"))
        await queue.add(_req("login", RequestLabel.LOGIN), forefront=True)
        order = []
        while True:
            request = await queue.get()
            if request is None:
                break
            order.append(request.url.rsplit("/", 1)[-1])
            await queue.task_done()
        return order, queue.closed

    order, closed = asyncio.run(scenario())
    assert order == ["login", "a", "b"]
    assert closed


def test_get_waits_for_in_flight_request_to_add_work():
    async def scenario():
        queue = RequestQueue()
        await queue.add(_req("a"))
        first = await queue.get()

        async def finish_later():
            await asyncio.sleep(0.01)
            await queue.add(_req("child"))
            await queue.task_done()

        task = asyncio.create_task(finish_later())
        second = await queue.get()
        await task
        return first, second

    first, second = asyncio.run(scenario())
    assert first.url.endswith("/a")
    assert second.url.endswith("/child")


def test_requeue_is_delayed_and_allowed_for_known_keys():
    async def scenario():
        queue = RequestQueue()
        request = _req("a")
        await queue.add(request)
        got = await queue.get()
        await queue.requeue(got, delay=0.05)
        await queue.task_done()
        loop = asyncio.get_running_loop()
        started = loop.time()
        again = await queue.get()
        return again, loop.time() - started

    again, waited = asyncio.run(scenario())
    assert again.url.endswith("/a")
    assert waited >= 0.04


def test_close_with_discard_keeps_dropped_requests():
    async def scenario():
        queue = RequestQueue()
        for name in ("a", "b", "c"):
            await queue.add(_req(name))
        await queue.close(discard=True)
        return queue

    queue = asyncio.run(scenario())
    assert queue.pending == 0
    assert [r.url[-1] for r in queue.discarded] == ["a", "b", "c"]
    assert queue.stats()["discarded"] == 3


def test_closed_queue_rejects_new_work():
    async def scenario():
        queue = RequestQueue()
        await queue.close()
        return await queue.add(_req("a")), await queue.get()

    assert asyncio.run(scenario()) == (False, None)
