import asyncio
import json

import httpx

from catalog_scraper.antibot.behavior import BehaviorPresets, HumanBehavior
from catalog_scraper.antibot.captcha import CaptchaSettings
from catalog_scraper.antibot.storage import SessionStore
from catalog_scraper.engine.budget import BudgetController
from catalog_scraper.engine.dedup import DedupGateway
from catalog_scraper.engine.extraction import ExtractionPipeline
from catalog_scraper.engine.handlers import (
    HandlerContext,
    collect_listing,
    handle_detail,
    handle_image_download,
    handle_login,
)
from catalog_scraper.engine.session import SessionManager
from catalog_scraper.engine.state import RunState
from catalog_scraper.engine.storage import RunStorage
from catalog_scraper.models import CandidateRecord, Credentials, LabeledRequest, RequestLabel, ScrapeOptions
from tests.fakes import BASE, FakeAdapter, FakeLoginAdapter, FakePage, FakeShop, no_sleep, product_items

SEED = f"{BASE}/list/women"


def _context(tmp_path, shop, *, adapter=None, target=5, dedup=None, credentials=None, **options):
    adapter = adapter or FakeAdapter(shop)
    behavior = HumanBehavior(BehaviorPresets.off(), sleep=no_sleep)
    return HandlerContext(
        adapter=adapter,
        options=ScrapeOptions(**options),
        pipeline=ExtractionPipeline(adapter, "exec"),
        session=SessionManager(
            adapter,
            SessionStore(tmp_path / "sessions"),
            credentials,
            behavior=behavior,
            captcha=CaptchaSettings(),
        ),
        dedup=dedup or DedupGateway(None, adapter.site_id),
        state=RunState("exec", BudgetController.for_run([SEED], max_products=target)),
        storage=RunStorage(tmp_path / "runs", adapter.site_id, "exec").prepare(),
        behavior=behavior,
        poll_interval=0.1,
        load_more_timeout=0.2,
        sleep=no_sleep,
    )


def _open(shop, url=SEED):
    page = FakePage(shop)
    asyncio.run(page.goto(url))
    return page


def _list_request(url=SEED):
    return LabeledRequest(url=url, label=RequestLabel.LIST, user_data={"seed": SEED})


def test_load_more_stops_once_the_seed_has_enough(tmp_path):
    shop = FakeShop(listings={SEED: product_items("a", 12)}, batch_size=3)
    ctx = _context(tmp_path, shop, target=5)
    result = asyncio.run(collect_listing(ctx, _open(shop), _list_request()))

    assert len(result.candidates) == 6
    assert result.pagination_stop == "target reached"
    assert all(c.fields["gender"] == "women" for c in result.candidates)
    assert all(c.origin_url == SEED for c in result.candidates)


def test_repeated_batches_stop_after_idle_loads(tmp_path):
    items = product_items("a", 3) * 4
    shop = FakeShop(listings={SEED: items}, batch_size=3)
    ctx = _context(tmp_path, shop, target=20)
    result = asyncio.run(collect_listing(ctx, _open(shop), _list_request()))

    assert len(result.candidates) == 3
    assert result.pagination_stop.startswith("3 consecutive loads")


def test_click_limit_bounds_pagination(tmp_path):
    shop = FakeShop(listings={SEED: product_items("a", 30)}, batch_size=3)
    ctx = _context(tmp_path, shop, target=20, max_load_clicks=2)
    result = asyncio.run(collect_listing(ctx, _open(shop), _list_request()))

    assert len(result.candidates) == 9
    assert "click limit" in result.pagination_stop


def test_already_seen_and_known_items_are_skipped(tmp_path):
    def handler(request):
        urls = json.loads(request.content)["urls"]
        return httpx.Response(200, json={"existingUrls": [u for u in urls if u.endswith("-1")]})

    dedup = DedupGateway(
        "https://catalog.test/existing",
        "fake",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    shop = FakeShop(listings={SEED: product_items("a", 4)})
    ctx = _context(tmp_path, shop, dedup=dedup)
    ctx.state.seen.mark([f"{BASE}/p/a-0"])
    result = asyncio.run(collect_listing(ctx, _open(shop), _list_request()))

    assert [c.url for c in result.candidates] == [f"{BASE}/p/a-2", f"{BASE}/p/a-3"]
    assert result.known_keys == [f"{BASE}/p/a-1"]


class PagedAdapter(FakeAdapter):
    pagination_mode = "next_page"

    async def next_page_url(self, page):
        return "/list/women?page=2" if "page=2" not in page.url else None


def test_next_page_mode_emits_a_follow_up_list_request(tmp_path):
    shop = FakeShop(listings={SEED: product_items("a", 3)})
    ctx = _context(tmp_path, shop, adapter=PagedAdapter(shop), target=10)
    result = asyncio.run(collect_listing(ctx, _open(shop), _list_request()))

    assert len(result.candidates) == 3
    [follow_up] = result.requests
    assert follow_up.url == f"{SEED}?page=2"
    assert follow_up.label == RequestLabel.LIST
    assert follow_up.user_data == {"seed": SEED, "page_index": 1, "idle_pages": 0}


def test_detail_merges_and_queues_images(tmp_path):
    url = f"{BASE}/p/a-1"
    shop = FakeShop(
        details={url: {"sku": "p1", "color": "", "images": ["https://cdn.test/1.jpg", "data:x"]}}
    )
    ctx = _context(tmp_path, shop, download_images=True)
    candidate = CandidateRecord(url=url, external_key=url, source="fake", fields={"color": "red", "name": "A"})
    request = LabeledRequest(
        url=url,
        label=RequestLabel.DETAIL,
        user_data={"seed": SEED, "candidate": candidate.model_dump(mode="json")},
    )
    result = asyncio.run(handle_detail(ctx, _open(shop, url), request))

    [record] = result.records
    assert record.fields["color"] == "red"
    assert record.fields["sku"] == "p1"
    assert record.missing_fields == []
    assert [r.url for r in result.requests] == ["https://cdn.test/1.jpg"]
    assert result.requests[0].label == RequestLabel.IMAGE_DOWNLOAD


def test_image_download_saves_into_run_storage(tmp_path):
    shop = FakeShop()
    ctx = _context(tmp_path, shop)
    request = LabeledRequest(url="https://cdn.test/1", label=RequestLabel.IMAGE_DOWNLOAD)
    result = asyncio.run(handle_image_download(ctx, FakePage(shop), request))
    [path] = result.files
    assert path.endswith(".png")
    assert ctx.storage.image_dir.joinpath(path.rsplit("/", 1)[-1]).read_bytes() == b"\x89PNG"


def test_login_releases_the_queued_seeds(tmp_path):
    shop = FakeShop()
    adapter = FakeLoginAdapter(shop)
    ctx = _context(tmp_path, shop, adapter=adapter, credentials=Credentials(username="u", password="p"))
    seed = _list_request()
    request = LabeledRequest(
        url=adapter.login_url,
        label=RequestLabel.LOGIN,
        user_data={"next": [seed.model_dump(mode="json")]},
    )
    result = asyncio.run(handle_login(ctx, FakePage(shop), request))
    assert [r.unique_key for r in result.requests] == [seed.unique_key]
    assert ctx.session.gate.is_set()
    assert shop.logins == 1
