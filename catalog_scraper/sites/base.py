"""Adapter interface consumed by the generic engine."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urldefrag, urlsplit

import yaml
from playwright.async_api import Page

from ..antibot.behavior import HumanBehavior
from ..antibot.captcha import CaptchaSettings
from ..fields import clean_text
from ..models import Credentials, RequestLabel

LOGGER = logging.getLogger(__name__)

SELECTOR_DIR = Path(__file__).resolve().parent


class PageKind(str, Enum):
    LOGIN = "login"
    SEARCH = "search"
    LIST = "list"
    DETAIL = "detail"
    UNKNOWN = "unknown"

    def to_label(self) -> Optional[RequestLabel]:
        return {
            PageKind.LOGIN: RequestLabel.LOGIN,
            PageKind.SEARCH: RequestLabel.SEARCH,
            PageKind.LIST: RequestLabel.LIST,
            PageKind.DETAIL: RequestLabel.DETAIL,
        }.get(self)


@dataclass
class ListingItem:
    """One card read from a list page, before session dedup."""

    url: Optional[str]
    position: Optional[int] = None
    fields: Dict[str, Any] = field(default_factory=dict)
    placeholder: bool = False


def load_selectors(name: str) -> Dict[str, Any]:
    """Read a selector YAML file shipped next to the adapters."""
    data = yaml.safe_load((SELECTOR_DIR / name).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"selector file {name} must contain a mapping")
    return data


class SiteAdapter(ABC):
    """Site-specific selectors and extraction strategy.

    Adapters hold no run state; the engine passes everything they need.
    Subclasses must set ``site_id`` and ``selectors_file`` and implement
    :meth:`classify_page`, :meth:`extract_list` and :meth:`extract_detail`.
    """

    site_id: str
    selectors_file: str
    base_url: str = ""
    requires_login: bool = False
    login_url: Optional[str] = None
    session_probe_url: Optional[str] = None
    search_url: Optional[str] = None
    # load_more: one page grows in place; next_page: follow links to new LIST requests
    pagination_mode: str = "load_more"
    expected_detail_fields: tuple = ()

    def __init__(self, selectors: Optional[Dict[str, Any]] = None) -> None:
        self.selectors = selectors if selectors is not None else load_selectors(self.selectors_file)

    @property
    def block_markers(self) -> List[str]:
        """Extra site-specific denial-page markers from the selector file."""
        return list(self.selectors.get("block_markers") or [])

    # -- classification --------------------------------------------------

    @abstractmethod
    def classify_page(self, url: str) -> PageKind:
        """Decide which stage a start URL belongs to."""

    def external_key(self, url: str) -> str:
        """Stable dedup key; defaults to the URL without fragment or query."""
        clean, _ = urldefrag(url)
        return clean.split("?", 1)[0].rstrip("/")

    def infer_batch_attributes(self, seed_url: str) -> Dict[str, Any]:
        """Attributes shared by every item listed under ``seed_url``."""
        return {}

    def is_login_page(self, url: str) -> bool:
        if not self.login_url:
            return False
        return urlsplit(url).path.rstrip("/") == urlsplit(self.login_url).path.rstrip("/")

    def is_authenticated(self, url: str, title: str) -> bool:
        return not self.is_login_page(url)

    # -- extraction ------------------------------------------------------

    @abstractmethod
    async def extract_list(self, page: Page) -> List[ListingItem]:
        """Every product/merchant card currently rendered on a list page."""

    @abstractmethod
    async def extract_detail(self, page: Page) -> Dict[str, Any]:
        """Full field set of a detail page."""

    async def extract_images(self, fields: Dict[str, Any]) -> List[str]:
        images = fields.get("images") or []
        return [url for url in images if isinstance(url, str) and url.startswith("http")]

    # -- pagination ------------------------------------------------------

    async def count_items(self, page: Page) -> int:
        return len(await self.extract_list(page))

    async def has_more(self, page: Page) -> bool:
        return False

    async def load_more(self, page: Page) -> bool:
        """Trigger the next batch in place. Returns ``False`` if nothing was clicked."""
        return False

    async def next_page_url(self, page: Page) -> Optional[str]:
        return None

    # -- session / search -------------------------------------------------

    async def login(
        self,
        page: Page,
        credentials: Credentials,
        *,
        behavior: HumanBehavior,
        captcha: CaptchaSettings,
    ) -> None:
        raise NotImplementedError(f"{self.site_id} does not support login")

    async def search(self, page: Page, params: Dict[str, Any], *, behavior: HumanBehavior) -> None:
        raise NotImplementedError(f"{self.site_id} does not support search")


async def text_of(root: Any, selector: str) -> Optional[str]:
    """Inner text of the first match under ``root``, or ``None``."""
    element = await root.query_selector(selector)
    if element is None:
        return None
    return clean_text(await element.inner_text())


async def texts_of(root: Any, selector: str) -> List[str]:
    texts = []
    for element in await root.query_selector_all(selector):
        text = clean_text(await element.inner_text())
        if text:
            texts.append(text)
    return texts


async def attr_of(root: Any, selector: str, name: str) -> Optional[str]:
    element = await root.query_selector(selector)
    if element is None:
        return None
    value = await element.get_attribute(name)
    return value.strip() if value else None
