"""FMTC merchant directory: login-gated, searchable, paged tables."""
from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin, urlsplit

from playwright.async_api import Page

from ..antibot.behavior import HumanBehavior
from ..antibot.captcha import CaptchaSettings, resolve_recaptcha
from ..errors import AuthError
from ..fields import clean_text, parse_detail_lines
from ..models import Credentials
from .base import ListingItem, PageKind, SiteAdapter, attr_of, text_of

LOGGER = logging.getLogger(__name__)

MERCHANT_PATTERN = re.compile(r"/cp/program_directory/merchant/(\d+)")
DIRECTORY_PATH = "/cp/program_directory/index"


def merchant_id_from_url(url: str) -> Optional[str]:
    match = MERCHANT_PATTERN.search(urlsplit(url).path)
    return match.group(1) if match else None


class FmtcAdapter(SiteAdapter):
    site_id = "fmtc"
    selectors_file = "fmtc.yaml"
    base_url = "https://account.fmtc.co"
    requires_login = True
    login_url = "https://account.fmtc.co/cp/login"
    session_probe_url = "https://account.fmtc.co/cp/dash"
    search_url = "https://account.fmtc.co/cp/program_directory/index"
    pagination_mode = "next_page"
    expected_detail_fields = ("name", "homepage", "fmtc_id")

    def classify_page(self, url: str) -> PageKind:
        parts = urlsplit(url)
        if "fmtc.co" not in parts.netloc:
            return PageKind.UNKNOWN
        if self.is_login_page(url):
            return PageKind.LOGIN
        if merchant_id_from_url(url):
            return PageKind.DETAIL
        if parts.path.startswith(DIRECTORY_PATH):
            return PageKind.LIST
        return PageKind.UNKNOWN

    def external_key(self, url: str) -> str:
        merchant_id = merchant_id_from_url(url)
        if merchant_id:
            return f"fmtc:{merchant_id}"
        return super().external_key(url)

    def is_authenticated(self, url: str, title: str) -> bool:
        return "login" not in url.lower() and ("Dashboard" in title or "FMTC" in title)

    # -- session ---------------------------------------------------------

    async def login(
        self,
        page: Page,
        credentials: Credentials,
        *,
        behavior: HumanBehavior,
        captcha: CaptchaSettings,
    ) -> None:
        sel = self.selectors["login"]
        if not self.is_login_page(page.url):
            await page.goto(self.login_url, wait_until="domcontentloaded")
        await page.wait_for_selector(sel["username"])
        await behavior.type_like_human(page, sel["username"], credentials.username)
        await behavior.random_delay()
        await behavior.type_like_human(page, sel["password"], credentials.password)
        await resolve_recaptcha(
            page,
            captcha,
            widget_selector=sel["recaptcha"],
            response_selector=sel["recaptcha_response"],
        )
        await behavior.random_delay()
        await page.click(sel["submit"])
        await page.wait_for_load_state("domcontentloaded")
        if self.is_login_page(page.url):
            message = await text_of(page, sel["error"])
            raise AuthError(f"FMTC login rejected: {message or 'still on login page'}")
        LOGGER.info("FMTC login landed on %s", page.url)

    async def search(self, page: Page, params: Dict[str, Any], *, behavior: HumanBehavior) -> None:
        sel = self.selectors["search"]
        text = params.get("search_text") or params.get("text")
        if text:
            await behavior.type_like_human(page, sel["text"], str(text))
        for name, selector in sel["selects"].items():
            value = params.get(name)
            if value is None:
                continue
            if await page.query_selector(selector) is None:
                LOGGER.warning("Search field %s not found, skipping", name)
                continue
            await page.select_option(selector, str(value))
        display = params.get("display_type")
        if display in sel["display_type"]:
            await page.check(sel["display_type"][display])
        await behavior.random_delay()
        await page.click(sel["submit"])
        await page.wait_for_load_state("domcontentloaded")

    # -- list ------------------------------------------------------------

    async def extract_list(self, page: Page) -> List[ListingItem]:
        sel = self.selectors["list"]
        items = []
        for row in await page.query_selector_all(sel["rows"]):
            href = await attr_of(row, sel["link"], "href")
            if not href:
                items.append(ListingItem(url=None, placeholder=True))
                continue
            items.append(
                ListingItem(
                    url=urljoin(page.url, href),
                    fields={
                        "name": await text_of(row, sel["link"]),
                        "country": await text_of(row, sel["country"]),
                        "network": await text_of(row, sel["network"]),
                        "date_added": await text_of(row, sel["date_added"]),
                        "premium_subscriptions": await text_of(row, sel["premium_subscriptions"]),
                    },
                )
            )
        return items

    async def next_page_url(self, page: Page) -> Optional[str]:
        href = await attr_of(page, self.selectors["list"]["next"], "href")
        if not href or href.startswith(("#", "javascript:")):
            return None
        return urljoin(page.url, href)

    # -- detail ----------------------------------------------------------

    async def extract_detail(self, page: Page) -> Dict[str, Any]:
        sel = self.selectors["detail"]
        lines = []
        for row in await page.query_selector_all(sel["info_rows"]):
            text = clean_text(await row.inner_text())
            if text:
                lines.append(text)
        info, _ = parse_detail_lines(lines, self.selectors["info_prefixes"])

        networks = []
        for row in await page.query_selector_all(sel["network_rows"]):
            networks.append(
                {
                    "fmtc_id": await text_of(row, sel["network_id_cell"]),
                    "network": await text_of(row, sel["network_name_cell"]),
                    "status": await text_of(row, sel["network_status_cell"]),
                }
            )

        fields: Dict[str, Any] = {
            "name": await text_of(page, sel["name"]),
            "homepage": await attr_of(page, sel["homepage_link"], "href") or info.get("homepage"),
            "primary_category": info.get("primary_category"),
            "primary_country": info.get("primary_country"),
            "ships_to": [part.strip() for part in (info.get("ships_to") or "").split(",") if part.strip()],
            "logo": await attr_of(page, sel["logo"], "src"),
            "networks": networks,
            "fmtc_id": merchant_id_from_url(page.url) or info.get("fmtc_id"),
        }
        if networks and not fields["fmtc_id"]:
            fields["fmtc_id"] = networks[0]["fmtc_id"]
        return fields
