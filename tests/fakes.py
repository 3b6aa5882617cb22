"""In-memory stand-ins for Playwright pages and a scripted shop."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from catalog_scraper.errors import AuthError
from catalog_scraper.sites.base import ListingItem, PageKind, SiteAdapter

BASE = "https://shop.test"


async def no_sleep(_seconds: float) -> None:
    return None


class FakeElement:
    def __init__(
        self,
        text: str = "",
        attrs: Optional[Dict[str, str]] = None,
        children: Optional[Dict[str, List["FakeElement"]]] = None,
        *,
        visible: bool = True,
        on_click=None,
    ) -> None:
        self.text = text
        self.attrs = attrs or {}
        self.children = children or {}
        self.visible = visible
        self.on_click = on_click
        self.clicks = 0

    async def query_selector(self, selector: str) -> Optional["FakeElement"]:
        matches = self.children.get(selector) or []
        return matches[0] if matches else None

    async def query_selector_all(self, selector: str) -> List["FakeElement"]:
        return list(self.children.get(selector) or [])

    async def inner_text(self) -> str:
        return self.text

    async def get_attribute(self, name: str) -> Optional[str]:
        return self.attrs.get(name)

    async def is_visible(self) -> bool:
        return self.visible

    async def click(self) -> None:
        self.clicks += 1
        if self.on_click is not None:
            self.on_click()

    async def hover(self) -> None:
        return None

    async def scroll_into_view_if_needed(self) -> None:
        return None


class FakeResponse:
    def __init__(self, status: int = 200, body: bytes = b"", headers: Optional[Dict[str, str]] = None) -> None:
        self.status = status
        self.ok = 200 <= status < 400
        self._body = body
        self.headers = headers or {}

    async def body(self) -> bytes:
        return self._body


class FakeRequestAPI:
    def __init__(self, shop: "FakeShop") -> None:
        self.shop = shop

    async def get(self, url: str, timeout: Optional[float] = None) -> FakeResponse:
        self.shop.visits.append(url)
        return FakeResponse(200, b"\x89PNG", {"content-type": "image/png"})


class FakeContext:
    def __init__(self, shop: "FakeShop") -> None:
        self.shop = shop
        self.request = FakeRequestAPI(shop)
        self.pages: List["FakePage"] = []

    async def new_page(self) -> "FakePage":
        page = FakePage(self.shop, self)
        self.pages.append(page)
        return page

    async def storage_state(self) -> Dict[str, Any]:
        return {"cookies": [{"name": "sid", "value": "abc"}], "origins": []}


class FakePage(FakeElement):
    viewport_size = {"width": 1280, "height": 800}

    def __init__(self, shop: "FakeShop", context: Optional[FakeContext] = None) -> None:
        super().__init__()
        self.shop = shop
        self.context = context or FakeContext(shop)
        self.url = "about:blank"
        self.closed = False
        self.reloads = 0

    async def goto(self, url: str, wait_until: Optional[str] = None, timeout: Optional[float] = None) -> FakeResponse:
        if self.shop.timeouts.get(url, 0) > 0:
            self.shop.timeouts[url] -= 1
            self.shop.visits.append(url)
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded")
        return self.shop.visit(self, url)

    async def reload(self, wait_until: Optional[str] = None) -> FakeResponse:
        self.reloads += 1
        return self.shop.visit(self, self.url)

    async def title(self) -> str:
        return self.shop.titles.get(self.url, "Shop")

    async def content(self) -> str:
        return self.shop.contents.get(self.url, "<html></html>")

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        return None

    async def screenshot(self, path: str, full_page: bool = False) -> None:
        Path(path).write_bytes(b"png")

    async def close(self) -> None:
        self.closed = True


@dataclass
class FakeShop:
    """Scripted site: listings, details and failure modes keyed by URL."""

    listings: Dict[str, List[ListingItem]] = field(default_factory=dict)
    details: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    batch_size: int = 0
    failing: Dict[str, int] = field(default_factory=dict)
    titles: Dict[str, str] = field(default_factory=dict)
    contents: Dict[str, str] = field(default_factory=dict)
    session_valid: bool = False
    expire_on: Dict[str, int] = field(default_factory=dict)
    reject_login: bool = False
    visits: List[str] = field(default_factory=list)
    logins: int = 0
    visible: Dict[str, int] = field(default_factory=dict)
    timeouts: Dict[str, int] = field(default_factory=dict)
    slow_details: Dict[str, int] = field(default_factory=dict)
    slow_seconds: float = 1.0
    relogin_delay: float = 0.0

    def visit(self, page: FakePage, url: str) -> FakeResponse:
        self.visits.append(url)
        page.url = url
        if self.failing.get(url, 0) > 0:
            self.failing[url] -= 1
            return FakeResponse(503)
        if url == FakeLoginAdapter.session_probe_url and not self.session_valid:
            page.url = FakeLoginAdapter.login_url
        if self.expire_on.get(url, 0) > 0:
            self.expire_on[url] -= 1
            self.session_valid = False
            page.url = FakeLoginAdapter.login_url
        if url in self.listings and self.batch_size:
            self.visible[url] = self.batch_size
        return FakeResponse(200)

    def items_on(self, url: str) -> List[ListingItem]:
        items = self.listings.get(url, [])
        if self.batch_size:
            return items[: self.visible.get(url, self.batch_size)]
        return list(items)


def product_items(prefix: str, count: int, *, start: int = 0) -> List[ListingItem]:
    return [
        ListingItem(
            url=f"{BASE}/p/{prefix}-{i}",
            position=i,
            fields={"name": f"{prefix} {i}", "brand": "Acme", "color": "list-color"},
        )
        for i in range(start, start + count)
    ]


class FakeAdapter(SiteAdapter):
    site_id = "fake"
    selectors_file = ""
    base_url = BASE

    def __init__(self, shop: FakeShop) -> None:
        super().__init__(selectors={"block_markers": ["Go away robot"]})
        self.shop = shop
        self.expected_detail_fields = ("sku",)

    def classify_page(self, url: str) -> PageKind:
        if "/p/" in url:
            return PageKind.DETAIL
        if "/list" in url:
            return PageKind.LIST
        if "/login" in url:
            return PageKind.LOGIN
        return PageKind.UNKNOWN

    def infer_batch_attributes(self, seed_url: str):
        return {"gender": "women"} if "/women" in seed_url else {}

    async def extract_list(self, page) -> List[ListingItem]:
        return self.shop.items_on(page.url)

    async def has_more(self, page) -> bool:
        return len(self.shop.items_on(page.url)) < len(self.shop.listings.get(page.url, []))

    async def load_more(self, page) -> bool:
        self.shop.visible[page.url] = self.shop.visible.get(page.url, 0) + self.shop.batch_size
        return True

    async def extract_detail(self, page) -> Dict[str, Any]:
        if self.shop.slow_details.get(page.url, 0) > 0:
            self.shop.slow_details[page.url] -= 1
            await asyncio.sleep(self.shop.slow_seconds)
        return dict(self.shop.details.get(page.url, {}))


class FakeLoginAdapter(FakeAdapter):
    site_id = "fake-login"
    requires_login = True
    login_url = f"{BASE}/login"
    session_probe_url = f"{BASE}/account"

    async def login(self, page, credentials, *, behavior, captcha) -> None:
        self.shop.logins += 1
        if self.shop.logins > 1 and self.shop.relogin_delay:
            await asyncio.sleep(self.shop.relogin_delay)
        if self.shop.reject_login:
            raise AuthError("bad credentials")
        self.shop.session_valid = True


class FakeBrowser:
    def __init__(self, shop: FakeShop) -> None:
        self.shop = shop
        self.storage_states: List[Optional[Dict[str, Any]]] = []

    @asynccontextmanager
    async def open(self, *, storage_state=None):
        self.storage_states.append(storage_state)
        yield FakeContext(self.shop)


def build_run(
    tmp_path: Path,
    shop: FakeShop,
    *,
    start_urls: List[str],
    adapter: Optional[SiteAdapter] = None,
    credentials: Optional[Dict[str, str]] = None,
    max_retries: int = 3,
    handler_timeout: float = 10.0,
    dedup=None,
    hub=None,
    record_sink=None,
    search: Optional[Dict[str, Any]] = None,
    **options: Any,
):
    from catalog_scraper.antibot.behavior import BehaviorPresets, HumanBehavior
    from catalog_scraper.config import Settings
    from catalog_scraper.engine.dedup import DedupGateway
    from catalog_scraper.engine.runner import ScrapeRun
    from catalog_scraper.models import ExecutionContext

    adapter = adapter or FakeAdapter(shop)
    settings = Settings(
        storage_dir=tmp_path / "runs",
        session_dir=tmp_path / "sessions",
        max_retries=max_retries,
        retry_backoff_min=0.0,
        retry_backoff_max=0.0,
        handler_timeout=handler_timeout,
        behavior_preset="off",
    )
    options.setdefault("max_concurrency", 2)
    context = ExecutionContext(
        site_id=adapter.site_id,
        start_urls=start_urls,
        options=options,
        credentials=credentials,
        search=search or {},
    )
    return ScrapeRun(
        context,
        settings,
        hub=hub,
        adapter=adapter,
        browser=FakeBrowser(shop),
        dedup=dedup or DedupGateway(None, adapter.site_id),
        behavior=HumanBehavior(BehaviorPresets.off(), sleep=no_sleep),
        record_sink=record_sink,
        sleep=no_sleep,
    )
