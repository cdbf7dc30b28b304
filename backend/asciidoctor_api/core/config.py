"""
Application configuration settings.

All environment-derived settings are resolved here and nowhere else. Other
components receive a ``Settings`` instance explicitly.
"""
import os
import re
import tempfile
from functools import lru_cache
from typing import List, Optional, Union

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_CONVERSION_TIMEOUT = 5 * 60.0
DEFAULT_IMAGE_DOWNLOAD_TIMEOUT = 30.0
DEFAULT_PROBE_TIMEOUT = 5.0
DEFAULT_SHUTDOWN_TIMEOUT = 30.0
DEFAULT_MAX_CONTENT_SIZE = 50 * 1024 * 1024  # 50MB

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|us|µs|ns|h|m|s)")
_DURATION_UNITS = {
    "h": 3600.0,
    "m": 60.0,
    "s": 1.0,
    "ms": 1e-3,
    "us": 1e-6,
    "µs": 1e-6,
    "ns": 1e-9,
}


def parse_duration(value: Union[str, int, float]) -> float:
    """
    Parse a duration into seconds.

    Accepts bare numbers (seconds) and Go-style strings such as ``"300ms"``,
    ``"45s"``, ``"5m"`` or ``"1h30m"``.

    Raises:
        ValueError: If the value cannot be parsed or is not positive.
    """
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    raise ValueError(f"invalid duration: {value!r}")
                seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
                pos = match.end()
            if pos == 0 or pos != len(text):
                raise ValueError(f"invalid duration: {value!r}")
    if seconds <= 0:
        raise ValueError(f"duration must be positive: {value!r}")
    return seconds


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # Server configuration
    port: int = Field(8091, validation_alias="ASCIIDOCTOR_PORT")
    host: str = Field("0.0.0.0", validation_alias="ASCIIDOCTOR_HOST")
    allow_origin: str = Field("*", validation_alias="ASCIIDOCTOR_ALLOW_ORIGIN")
    shutdown_timeout: float = Field(DEFAULT_SHUTDOWN_TIMEOUT, validation_alias="ASCIIDOCTOR_SHUTDOWN_TIMEOUT")

    # Conversion configuration
    conversion_timeout: float = Field(DEFAULT_CONVERSION_TIMEOUT, validation_alias="ASCIIDOCTOR_CONVERSION_TIMEOUT")
    max_content_size: int = Field(DEFAULT_MAX_CONTENT_SIZE, validation_alias="ASCIIDOCTOR_MAX_CONTENT_SIZE")
    image_download_timeout: float = Field(DEFAULT_IMAGE_DOWNLOAD_TIMEOUT, validation_alias="ASCIIDOCTOR_IMAGE_TIMEOUT")
    max_workers: int = Field(16, validation_alias="ASCIIDOCTOR_MAX_WORKERS")
    pdf_themes_dir: Optional[str] = Field(None, validation_alias="ASCIIDOCTOR_PDF_THEMES_DIR")

    # Dependency discovery (Ruby bundle and search paths)
    bundle_path: str = Field("/app/deployment/vendor/bundle", validation_alias="BUNDLE_PATH")
    bundle_gemfile: str = Field("/app/deployment/Gemfile", validation_alias="BUNDLE_GEMFILE")
    renderer_search_paths: str = Field("", validation_alias="ASCIIDOCTOR_SEARCH_PATHS")
    ebook_convert_path: Optional[str] = Field(None, validation_alias="EBOOK_CONVERT_PATH")
    probe_timeout: float = Field(DEFAULT_PROBE_TIMEOUT, validation_alias="ASCIIDOCTOR_PROBE_TIMEOUT")

    # Temporary directory root
    temp_dir: str = Field(default_factory=tempfile.gettempdir, validation_alias="TMPDIR")

    # Logging
    debug: bool = Field(False, validation_alias="ASCIIDOCTOR_DEBUG")
    log_format: str = Field("json", validation_alias="ASCIIDOCTOR_LOG_FORMAT")
    log_dir: Optional[str] = Field(None, validation_alias="ASCIIDOCTOR_LOG_DIR")

    @field_validator("conversion_timeout", mode="before")
    @classmethod
    def _parse_conversion_timeout(cls, value):
        # A bad timeout must not keep the service from starting
        try:
            return parse_duration(value)
        except (TypeError, ValueError):
            return DEFAULT_CONVERSION_TIMEOUT

    @field_validator("image_download_timeout", "probe_timeout", "shutdown_timeout", mode="before")
    @classmethod
    def _parse_durations(cls, value):
        return parse_duration(value)

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        value = value.strip().lower()
        if value not in {"json", "text"}:
            raise ValueError("log_format must be 'json' or 'text'")
        return value

    @property
    def search_paths(self) -> List[str]:
        """Additional renderer locations, split on ``os.pathsep``."""
        return [p for p in self.renderer_search_paths.split(os.pathsep) if p.strip()]

    @property
    def bind_address(self) -> str:
        return f"{self.host}:{self.port}"


@lru_cache()
def get_settings() -> Settings:
    """Load settings from the environment exactly once."""
    return Settings()
