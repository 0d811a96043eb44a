"""Shared dependencies for the analytics components."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone, tzinfo

from tws_analytics.clipping import to_ms
from tws_analytics.db import AnalyticsStore
from tws_analytics.settings import AnalyticsSettings, SettingsGetter, safe_settings

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def local_zone() -> tzinfo:
    return datetime.now().astimezone().tzinfo or timezone.utc


@dataclass
class AnalyticsContext:
    """Store, settings source, clock and time zone shared by every component.

    ``tz`` decides which clock hour an instant belongs to; reports use the
    machine's local zone unless told otherwise.
    """

    store: AnalyticsStore
    settings_getter: SettingsGetter | None = None
    clock: Callable[[], datetime] = utc_now
    tz: tzinfo = field(default_factory=local_zone)

    def now_ms(self) -> int:
        return to_ms(self.clock())

    def settings(self) -> AnalyticsSettings:
        return safe_settings(self.settings_getter)


class SkipCounter:
    """Counts malformed rows dropped by an aggregation pass."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        self.count = 0

    def skip(self, row: dict, error: Exception) -> None:
        self.count += 1
        logger.debug("%s: skipping row %s: %s", self.operation, row.get("id"), error)

    def report(self) -> int:
        if self.count:
            logger.warning("%s: skipped %d malformed rows", self.operation, self.count)
        return self.count
