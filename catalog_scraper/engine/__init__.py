"""Generic scraping engine shared by every site adapter."""

from .progress import ProgressHub
from .runner import ScrapeRun

__all__ = ["ProgressHub", "ScrapeRun"]
