"""User settings consumed by the analytics engine."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence

from pydantic import BaseModel, Field, field_validator

from tws_analytics.clipping import DEFAULT_DAY_START_HOUR
from tws_analytics.db import AnalyticsStore

MAX_EXCLUDED_KEYWORDS = 50

EXCLUDED_KEYWORDS_KEY = "excludedKeywords"
DAY_START_HOUR_KEY = "dayStartHour"

logger = logging.getLogger(__name__)


class AnalyticsSettings(BaseModel):
    """Privacy keywords and the hour at which a day begins."""

    excluded_keywords: list[str] = Field(default_factory=list)
    day_start_hour: int = Field(default=DEFAULT_DAY_START_HOUR, ge=0, le=23)

    @field_validator("excluded_keywords")
    @classmethod
    def _clean_keywords(cls, value: list[str]) -> list[str]:
        cleaned: list[str] = []
        for keyword in value:
            normalized = keyword.strip().lower()
            if normalized and normalized not in cleaned:
                cleaned.append(normalized)
        return cleaned[:MAX_EXCLUDED_KEYWORDS]


SettingsGetter = Callable[[], AnalyticsSettings]


def load_settings(store: AnalyticsStore) -> AnalyticsSettings:
    """Read analytics settings from the store's settings table."""
    return AnalyticsSettings(
        excluded_keywords=store.get_setting(EXCLUDED_KEYWORDS_KEY, []) or [],
        day_start_hour=store.get_setting(DAY_START_HOUR_KEY, DEFAULT_DAY_START_HOUR),
    )


def safe_settings(getter: SettingsGetter | None) -> AnalyticsSettings:
    """Call ``getter``, falling back to defaults if it fails.

    A broken settings source must not take a report down with it: the
    fallback applies no suppression and the default day start.
    """
    if getter is None:
        return AnalyticsSettings()
    try:
        return getter()
    except Exception as e:
        logger.warning("Settings unavailable, using defaults: %s", e)
        return AnalyticsSettings()


def should_suppress(domain: str | None, app_name: str | None, keywords: Sequence[str]) -> bool:
    """True if the domain or app name contains an excluded keyword."""
    if not keywords:
        return False
    haystack = f"{domain or ''} {app_name or ''}".lower()
    return any(keyword and keyword in haystack for keyword in keywords)
