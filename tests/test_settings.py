"""Tests for analytics settings and keyword suppression."""

import logging

import pytest
from pydantic import ValidationError

from tws_analytics.db import AnalyticsStore
from tws_analytics.settings import (
    MAX_EXCLUDED_KEYWORDS,
    AnalyticsSettings,
    load_settings,
    safe_settings,
    should_suppress,
)


class TestAnalyticsSettings:
    """Tests for settings validation."""

    def test_defaults(self):
        settings = AnalyticsSettings()
        assert settings.excluded_keywords == []
        assert settings.day_start_hour == 4

    def test_keywords_cleaned(self):
        settings = AnalyticsSettings(excluded_keywords=["  Bank ", "bank", "", "Health"])
        assert settings.excluded_keywords == ["bank", "health"]

    def test_keywords_capped(self):
        settings = AnalyticsSettings(excluded_keywords=[f"kw{i}" for i in range(80)])
        assert len(settings.excluded_keywords) == MAX_EXCLUDED_KEYWORDS

    def test_day_start_out_of_range(self):
        with pytest.raises(ValidationError):
            AnalyticsSettings(day_start_hour=24)


class TestLoadSettings:
    """Tests for reading settings from the store."""

    def test_empty_store_gives_defaults(self):
        store = AnalyticsStore.open_in_memory()
        assert load_settings(store) == AnalyticsSettings()

    def test_reads_stored_values(self):
        store = AnalyticsStore.open_in_memory()
        store.set_setting("excludedKeywords", ["Bank"])
        store.set_setting("dayStartHour", 6)

        settings = load_settings(store)

        assert settings.excluded_keywords == ["bank"]
        assert settings.day_start_hour == 6


class TestSafeSettings:
    """Tests for fail-open settings access."""

    def test_no_getter(self):
        assert safe_settings(None) == AnalyticsSettings()

    def test_getter_failure_falls_back(self, caplog):
        def broken() -> AnalyticsSettings:
            raise RuntimeError("settings db locked")

        with caplog.at_level(logging.WARNING):
            settings = safe_settings(broken)

        assert settings.excluded_keywords == []
        assert settings.day_start_hour == 4
        assert "settings db locked" in caplog.text

    def test_invalid_stored_value_falls_back(self):
        store = AnalyticsStore.open_in_memory()
        store.set_setting("dayStartHour", 99)
        assert safe_settings(lambda: load_settings(store)).day_start_hour == 4


class TestShouldSuppress:
    """Tests for keyword suppression matching."""

    def test_matches_domain_substring(self):
        assert should_suppress("mybank.com", None, ["bank"])

    def test_matches_app_name_case_insensitive(self):
        assert should_suppress(None, "Banking App", ["bank"])

    def test_no_keywords(self):
        assert not should_suppress("mybank.com", None, [])

    def test_no_match(self):
        assert not should_suppress("github.com", "Code", ["bank"])
