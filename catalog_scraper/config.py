"""Runtime settings loaded from the environment (and an optional ``.env``)."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .antibot.proxy import ProxyConfig

BASE_DIR = Path(__file__).resolve().parents[1]


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    return float(raw) if raw not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    return int(raw) if raw not in (None, "") else default


@dataclass
class Settings:
    """Engine-wide configuration shared by every run."""

    storage_dir: Path = Path("storage/runs")
    session_dir: Path = Path("storage/sessions")
    session_max_age: float = 4 * 3600
    dedup_api_url: Optional[str] = None
    dedup_api_token: Optional[str] = None
    dedup_batch_size: int = 50
    log_api_endpoint: Optional[str] = None
    max_retries: int = 3
    retry_backoff_min: float = 5.0
    retry_backoff_max: float = 10.0
    navigation_timeout_ms: int = 60_000
    handler_timeout: float = 180.0
    captcha_mode: str = "manual"  # manual, auto
    captcha_api_key: Optional[str] = None
    captcha_timeout: float = 180.0
    behavior_preset: str = "normal"
    proxy: Optional[ProxyConfig] = field(default=None)

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        load_dotenv(env_file or BASE_DIR / ".env")
        return cls(
            storage_dir=Path(os.getenv("SCRAPER_STORAGE_DIR", "storage/runs")),
            session_dir=Path(os.getenv("SCRAPER_SESSION_DIR", "storage/sessions")),
            session_max_age=_env_float("SESSION_MAX_AGE_SECONDS", 4 * 3600),
            dedup_api_url=os.getenv("DEDUP_API_URL") or None,
            dedup_api_token=os.getenv("DEDUP_API_TOKEN") or None,
            dedup_batch_size=_env_int("DEDUP_BATCH_SIZE", 50),
            log_api_endpoint=os.getenv("LOG_API_ENDPOINT") or None,
            max_retries=_env_int("MAX_RETRIES", 3),
            retry_backoff_min=_env_float("RETRY_BACKOFF_MIN", 5.0),
            retry_backoff_max=_env_float("RETRY_BACKOFF_MAX", 10.0),
            navigation_timeout_ms=_env_int("NAVIGATION_TIMEOUT_MS", 60_000),
            handler_timeout=_env_float("HANDLER_TIMEOUT_SECONDS", 180.0),
            captcha_mode=os.getenv("CAPTCHA_MODE", "manual").lower(),
            captcha_api_key=os.getenv("CAPTCHA_API_KEY") or None,
            captcha_timeout=_env_float("CAPTCHA_TIMEOUT_SECONDS", 180.0),
            behavior_preset=os.getenv("BEHAVIOR_PRESET", "normal").lower(),
            proxy=ProxyConfig.from_env(),
        )
