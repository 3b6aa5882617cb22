"""Field-cleaning helpers shared by site adapters."""
from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Tuple

from .models import Price

PRICE_NUMBER = re.compile(r"\d[\d,.\s]*")
CURRENCY_SYMBOLS = {"€": "EUR", "£": "GBP", "$": "USD", "¥": "JPY", "CHF": "CHF"}
EUR_LOCALES = ("/de/", "/fr/", "/it/", "/es/", "/nl/", "/at/")
GBP_LOCALES = ("/gb/", "/uk/")


def clean_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    text = re.sub(r"\s+", " ", value).strip()
    return text or None


def infer_currency(text: str, url: str = "") -> str:
    """Currency from a symbol in the price text, else from the locale path."""
    for symbol, code in CURRENCY_SYMBOLS.items():
        if symbol in text:
            return code
    lowered = url.lower()
    if any(locale in lowered for locale in EUR_LOCALES):
        return "EUR"
    if any(locale in lowered for locale in GBP_LOCALES):
        return "GBP"
    return "USD"


def parse_price(text: Optional[str], url: str = "") -> Optional[Price]:
    """Parse display text like ``"€ 1,250"`` or ``"$89.50"``.

    Thousands separators are commas; a trailing ``.dd`` group is the decimal
    part.
    """
    if not text:
        return None
    match = PRICE_NUMBER.search(text)
    if not match:
        return None
    raw = re.sub(r"\s", "", match.group(0)).rstrip(".,")
    if re.search(r"\.\d{1,2}$", raw):
        number, decimals = raw.rsplit(".", 1)
        raw = f"{number.replace(',', '').replace('.', '')}.{decimals}"
    elif re.search(r",\d{2}$", raw):
        # 1.250,00 style
        number, decimals = raw.rsplit(",", 1)
        raw = f"{number.replace('.', '').replace(',', '')}.{decimals}"
    else:
        raw = raw.replace(",", "").replace(".", "")
    try:
        amount = float(raw)
    except ValueError:
        return None
    return Price(amount=amount, currency=infer_currency(text, url))


def clean_breadcrumbs(
    crumbs: Iterable[Optional[str]],
    *,
    brand: Optional[str] = None,
    home_suffix: str = " Home",
) -> List[str]:
    """Normalise a breadcrumb trail.

    A leading ``"<Category> Home"`` crumb becomes ``"<Category>"``, a bare
    ``"Home"`` is dropped, and any crumb equal to the brand is removed
    (case-insensitive).
    """
    brand_key = brand.strip().lower() if brand else None
    cleaned: List[str] = []
    for index, crumb in enumerate(crumbs):
        text = clean_text(crumb)
        if not text:
            continue
        if text.lower() == "home":
            continue
        if index == 0 and text.lower().endswith(home_suffix.lower()):
            text = text[: -len(home_suffix)].strip()
            if not text:
                continue
        if brand_key and text.lower() == brand_key:
            continue
        cleaned.append(text)
    return cleaned


def parse_detail_lines(lines: Iterable[str], prefixes: Dict[str, str]) -> Tuple[Dict[str, str], List[str]]:
    """Split ``"Label: value"`` lines into known fields and leftover lines."""
    found: Dict[str, str] = {}
    rest: List[str] = []
    for line in lines:
        text = clean_text(line)
        if not text:
            continue
        lowered = text.lower()
        for prefix, field_name in prefixes.items():
            if lowered.startswith(prefix):
                found[field_name] = text[len(prefix):].strip()
                break
        else:
            rest.append(text)
    return found, rest
