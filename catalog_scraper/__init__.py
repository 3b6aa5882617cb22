"""Catalog scraping engine.

One engine drives every target site: a labelled request state machine,
persisted login sessions, budget-bounded pagination, list/detail extraction,
external deduplication and a live progress stream. Sites plug in as adapters
registered in :mod:`catalog_scraper.sites`.
"""

__version__ = "0.3.0"
