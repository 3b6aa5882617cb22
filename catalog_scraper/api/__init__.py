"""HTTP surface for triggering and following scrape runs."""

from .app import create_app

__all__ = ["create_app"]
