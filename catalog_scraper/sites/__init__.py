"""Site registry: maps a site id to its adapter class."""
from __future__ import annotations

from typing import Dict, List, Type

from ..errors import UnknownSiteError
from .base import SiteAdapter
from .fmtc import FmtcAdapter
from .mytheresa import MytheresaAdapter

_REGISTRY: Dict[str, Type[SiteAdapter]] = {}


def register(adapter_cls: Type[SiteAdapter]) -> Type[SiteAdapter]:
    _REGISTRY[adapter_cls.site_id] = adapter_cls
    return adapter_cls


def get_adapter(site_id: str) -> SiteAdapter:
    """Instantiate the adapter for ``site_id``.

    Raises
    ------
    UnknownSiteError
        If no adapter is registered under that id
    """
    try:
        adapter_cls = _REGISTRY[site_id.lower()]
    except KeyError:
        raise UnknownSiteError(site_id) from None
    return adapter_cls()


def available_sites() -> List[str]:
    return sorted(_REGISTRY)


register(MytheresaAdapter)
register(FmtcAdapter)

__all__ = ["SiteAdapter", "available_sites", "get_adapter", "register"]
