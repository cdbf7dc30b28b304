"""
Unit tests for configuration loading and duration parsing.
"""

import os

import pytest
from pydantic import ValidationError

from asciidoctor_api.core.config import (
    DEFAULT_CONVERSION_TIMEOUT,
    DEFAULT_MAX_CONTENT_SIZE,
    Settings,
    parse_duration,
)

ENV_NAMES = [
    "ASCIIDOCTOR_PORT",
    "ASCIIDOCTOR_HOST",
    "ASCIIDOCTOR_ALLOW_ORIGIN",
    "ASCIIDOCTOR_CONVERSION_TIMEOUT",
    "ASCIIDOCTOR_MAX_CONTENT_SIZE",
    "ASCIIDOCTOR_SEARCH_PATHS",
    "ASCIIDOCTOR_LOG_FORMAT",
    "ASCIIDOCTOR_DEBUG",
]


@pytest.fixture
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestParseDuration:
    """Test Go-style duration parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("300ms", 0.3),
            ("45s", 45.0),
            ("5m", 300.0),
            ("1h30m", 5400.0),
            ("2", 2.0),
            (" 10s ", 10.0),
            (1.5, 1.5),
            (90, 90.0),
        ],
    )
    def test_valid_durations(self, value, expected):
        assert parse_duration(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["", "soon", "5x", "5m10", "-1", "0", "0s"])
    def test_invalid_durations(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestSettings:
    """Test environment-driven settings."""

    def test_defaults(self, clean_env):
        settings = Settings()

        assert settings.port == 8091
        assert settings.host == "0.0.0.0"
        assert settings.allow_origin == "*"
        assert settings.conversion_timeout == DEFAULT_CONVERSION_TIMEOUT
        assert settings.max_content_size == DEFAULT_MAX_CONTENT_SIZE == 50 * 1024 * 1024
        assert settings.log_format == "json"
        assert settings.bind_address == "0.0.0.0:8091"

    def test_environment_overrides(self, clean_env):
        clean_env.setenv("ASCIIDOCTOR_PORT", "9000")
        clean_env.setenv("ASCIIDOCTOR_ALLOW_ORIGIN", "https://*.example.com")
        clean_env.setenv("ASCIIDOCTOR_CONVERSION_TIMEOUT", "90s")
        clean_env.setenv("ASCIIDOCTOR_MAX_CONTENT_SIZE", "1024")

        settings = Settings()

        assert settings.port == 9000
        assert settings.allow_origin == "https://*.example.com"
        assert settings.conversion_timeout == 90.0
        assert settings.max_content_size == 1024

    def test_unparseable_conversion_timeout_falls_back_to_default(self, clean_env):
        clean_env.setenv("ASCIIDOCTOR_CONVERSION_TIMEOUT", "forever")

        assert Settings().conversion_timeout == DEFAULT_CONVERSION_TIMEOUT

    def test_search_paths_split_on_path_separator(self, clean_env):
        clean_env.setenv("ASCIIDOCTOR_SEARCH_PATHS", os.pathsep.join(["/opt/a", "", "/opt/b/asciidoctor"]))

        assert Settings().search_paths == ["/opt/a", "/opt/b/asciidoctor"]

    def test_invalid_log_format_rejected(self, clean_env):
        clean_env.setenv("ASCIIDOCTOR_LOG_FORMAT", "xml")

        with pytest.raises(ValidationError):
            Settings()

    def test_log_format_is_normalized(self, clean_env):
        clean_env.setenv("ASCIIDOCTOR_LOG_FORMAT", " TEXT ")

        assert Settings().log_format == "text"
