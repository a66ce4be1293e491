"""Tunables for the analytics dashboard, read from the environment."""

from __future__ import annotations

import os

from dotenv import load_dotenv

load_dotenv()

SUPPORTED_RANGES = ("7d", "30d", "90d", "all")


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _range_from_env(name: str, default: str) -> str:
    raw = (os.getenv(name) or "").strip().lower()
    return raw if raw in SUPPORTED_RANGES else default


ANALYTICS_DEFAULT_RANGE = _range_from_env("ANALYTICS_DEFAULT_RANGE", "7d")
ANALYTICS_RATE_LIMIT = _int_from_env("ANALYTICS_RATE_LIMIT", 30)
ANALYTICS_RATE_WINDOW_SECONDS = _int_from_env("ANALYTICS_RATE_WINDOW_SECONDS", 60)
ANALYTICS_EVENTS_PAGE_SIZE = _int_from_env("ANALYTICS_EVENTS_PAGE_SIZE", 1000)
ANALYTICS_DB_TIMEOUT_SECONDS = _int_from_env("ANALYTICS_DB_TIMEOUT_SECONDS", 15)
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()


__all__ = [
    "ANALYTICS_DEFAULT_RANGE",
    "ANALYTICS_DB_TIMEOUT_SECONDS",
    "ANALYTICS_EVENTS_PAGE_SIZE",
    "ANALYTICS_RATE_LIMIT",
    "ANALYTICS_RATE_WINDOW_SECONDS",
    "LOG_LEVEL",
    "SUPPORTED_RANGES",
]
