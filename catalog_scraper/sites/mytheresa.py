"""Mytheresa: public luxury-fashion catalog with a load-more product grid."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlsplit

from playwright.async_api import Page

from ..fields import clean_breadcrumbs, clean_text, parse_detail_lines, parse_price
from .base import ListingItem, PageKind, SiteAdapter, attr_of, text_of, texts_of

LOGGER = logging.getLogger(__name__)

SKU_PATTERN = re.compile(r"^p\d+$", re.IGNORECASE)
LIST_PATH_HINTS = ("/clothing", "/shoes", "/bags", "/accessories", "/jewelry", "/designers", "/new-arrivals", "/sale")


def sku_from_url(url: str) -> Optional[str]:
    """``.../gucci-logo-cotton-t-shirt-p00954301`` -> ``p00954301``."""
    last_segment = urlsplit(url).path.rstrip("/").rsplit("/", 1)[-1]
    candidate = last_segment.rsplit("-", 1)[-1]
    if SKU_PATTERN.match(candidate):
        return candidate.lower()
    return None


def gender_from_url(url: str) -> Optional[str]:
    path = urlsplit(url).path.lower()
    if "/women/" in path or path.endswith("/women"):
        return "women"
    if "/men/" in path or path.endswith("/men"):
        return "men"
    return None


class MytheresaAdapter(SiteAdapter):
    site_id = "mytheresa"
    selectors_file = "mytheresa.yaml"
    base_url = "https://www.mytheresa.com"
    pagination_mode = "load_more"
    expected_detail_fields = ("sku", "name", "brand")

    def classify_page(self, url: str) -> PageKind:
        parts = urlsplit(url)
        if "mytheresa.com" not in parts.netloc:
            return PageKind.UNKNOWN
        path = parts.path.lower().rstrip("/")
        if sku_from_url(url):
            return PageKind.DETAIL
        if any(hint in path for hint in LIST_PATH_HINTS) or gender_from_url(url):
            return PageKind.LIST
        return PageKind.UNKNOWN

    def infer_batch_attributes(self, seed_url: str) -> Dict[str, Any]:
        gender = gender_from_url(seed_url)
        return {"gender": gender} if gender else {}

    # -- list ------------------------------------------------------------

    async def _cards(self, page: Page) -> List[Any]:
        for selector in self.selectors["list"]["cards"]:
            cards = await page.query_selector_all(selector)
            if cards:
                return cards
        return []

    async def extract_list(self, page: Page) -> List[ListingItem]:
        items = []
        for index, card in enumerate(await self._cards(page)):
            items.append(await self._parse_card(page, card, index))
        return items

    async def count_items(self, page: Page) -> int:
        return len(await self._cards(page))

    async def _parse_card(self, page: Page, card: Any, index: int) -> ListingItem:
        sel = self.selectors["list"]
        position = index
        raw_position = await card.get_attribute(sel["position_attribute"])
        if raw_position and raw_position.strip().isdigit():
            position = int(raw_position.strip())

        href = await attr_of(card, sel["link"], "href")
        css_class = await card.get_attribute("class") or ""
        if not href or any(marker in css_class for marker in sel["placeholder_classes"]):
            return ListingItem(url=None, position=position, placeholder=True)

        sizes = []
        for element in await card.query_selector_all(sel["sizes"]):
            text = clean_text(await element.inner_text())
            if not text or text.lower() == "available sizes:":
                continue
            if sel["size_unavailable_class"] in (await element.get_attribute("class") or ""):
                continue
            sizes.append(text)

        name = await text_of(card, sel["name"])
        brand = await text_of(card, sel["brand"])
        if not (name or brand):
            return ListingItem(url=None, position=position, placeholder=True)
        url = urljoin(page.url, href)
        price = parse_price(await text_of(card, sel["price"]), url)
        return ListingItem(
            url=url,
            position=position,
            fields={
                "brand": brand,
                "name": name,
                "image": await attr_of(card, sel["image"], "src"),
                "sizes": sizes,
                "tags": await texts_of(card, sel["tags"]),
                "price": price.model_dump() if price else None,
            },
        )

    async def _load_more_button(self, page: Page) -> Optional[Any]:
        for selector in self.selectors["list"]["load_more"]:
            button = await page.query_selector(selector)
            if button is not None and await button.is_visible():
                return button
        return None

    async def has_more(self, page: Page) -> bool:
        return await self._load_more_button(page) is not None

    async def load_more(self, page: Page) -> bool:
        await page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")
        button = await self._load_more_button(page)
        if button is None:
            return False
        info = await text_of(page, self.selectors["list"]["load_more_info"])
        if info:
            LOGGER.debug("Load more (%s)", info)
        await button.scroll_into_view_if_needed()
        await button.hover()
        await button.click()
        return True

    # -- detail ----------------------------------------------------------

    async def extract_detail(self, page: Page) -> Dict[str, Any]:
        sel = self.selectors["detail"]
        url = page.url
        brand = await text_of(page, sel["brand"])

        lines = await texts_of(page, sel["details"])
        found, rest = parse_detail_lines(lines, self.selectors["detail_prefixes"])

        # sizes only render once the picker is open
        trigger = await page.query_selector(sel["size_trigger"])
        if trigger is not None:
            await trigger.click()
        sizes = await texts_of(page, sel["sizes"])

        original = parse_price(await text_of(page, sel["original_price"]), url)
        discount = parse_price(await text_of(page, sel["discount_price"]), url)
        price = discount or parse_price(await text_of(page, sel["price"]), url) or original

        images = []
        for element in await page.query_selector_all(sel["images"]):
            src = await element.get_attribute("src")
            if src:
                images.append(urljoin(url, src.strip()))

        fields: Dict[str, Any] = {
            "brand": brand,
            "name": await text_of(page, sel["name"]),
            "description": await text_of(page, sel["description"]),
            "details": rest,
            "breadcrumbs": clean_breadcrumbs(await texts_of(page, sel["breadcrumbs"]), brand=brand),
            "sizes": sizes,
            "price": price.model_dump() if price else None,
            "original_price": original.model_dump() if original and discount else None,
            "images": list(dict.fromkeys(images)),
            "sku": sku_from_url(url) or found.get("item_number"),
            "gender": gender_from_url(url),
        }
        fields.update(found)
        return fields
