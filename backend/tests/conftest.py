"""
Test configuration and fixtures for the AsciiDoc conversion service.

External tools are replaced by small Python scripts installed as executables,
and remote images are served by an httpx mock transport.
"""

import logging
import os
import stat
import sys
from pathlib import Path
from typing import AsyncGenerator, Callable, Dict, Any

import httpx
import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from asciidoctor_api.core.config import Settings
from asciidoctor_api.core.logging_config import SimpleFormatter, StructuredFormatter
from asciidoctor_api.main import create_app
from asciidoctor_api.services.conversion_service import ConversionService
from asciidoctor_api.services.renderer import EbookConverterCapability, RendererCapability

FIXTURES_DIR = Path(__file__).parent / "fixtures"

RENDERER_VERSION = "Asciidoctor 2.0.20 [https://asciidoctor.org]"
EBOOK_CONVERT_VERSION = "ebook-convert (calibre 7.0.0)"

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"fake-png-data"
GIF_BYTES = b"GIF89a" + b"fake-gif-data"


def install_tool(source: Path, target: Path) -> Path:
    """Copy a fixture script to ``target`` as an executable bound to this interpreter."""
    lines = source.read_text(encoding="utf-8").splitlines(keepends=True)
    if lines and lines[0].startswith("#!"):
        lines = lines[1:]
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(f"#!{sys.executable}\n" + "".join(lines), encoding="utf-8")
    target.chmod(target.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return target


def write_shell_tool(target: Path, body: str) -> Path:
    """Executable ``/bin/sh`` script, used for misbehaving tools."""
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    target.chmod(0o755)
    return target


@pytest.fixture(scope="session")
def tool_dir(tmp_path_factory) -> Path:
    """Directory holding the fake ``asciidoctor`` and ``ebook-convert``."""
    directory = tmp_path_factory.mktemp("tools")
    install_tool(FIXTURES_DIR / "fake_asciidoctor.py", directory / "asciidoctor")
    install_tool(FIXTURES_DIR / "fake_ebook_convert.py", directory / "ebook-convert")
    return directory


@pytest.fixture
def fake_asciidoctor(tool_dir: Path) -> str:
    return str(tool_dir / "asciidoctor")


@pytest.fixture
def fake_ebook_convert(tool_dir: Path) -> str:
    return str(tool_dir / "ebook-convert")


@pytest.fixture(autouse=True)
def _reset_fake_modes(monkeypatch):
    """Every test starts with well-behaved tools."""
    monkeypatch.delenv("FAKE_RENDERER_MODE", raising=False)
    monkeypatch.delenv("FAKE_RENDERER_DELAY", raising=False)
    monkeypatch.delenv("FAKE_EBOOK_MODE", raising=False)


@pytest.fixture
def settings_factory(tmp_path: Path) -> Callable[..., Settings]:
    """Build settings rooted in the test's temporary directory.

    Overrides use the environment variable names, e.g.
    ``settings_factory(ASCIIDOCTOR_CONVERSION_TIMEOUT="1s")``.
    """

    def _settings(**overrides: Any) -> Settings:
        values: Dict[str, Any] = {
            "TMPDIR": str(tmp_path / "tmp"),
            "BUNDLE_PATH": str(tmp_path / "bundle"),
            "BUNDLE_GEMFILE": str(tmp_path / "bundle" / "Gemfile"),
            "ASCIIDOCTOR_SEARCH_PATHS": "",
            "ASCIIDOCTOR_CONVERSION_TIMEOUT": "20s",
            "ASCIIDOCTOR_IMAGE_TIMEOUT": "5s",
            "ASCIIDOCTOR_PROBE_TIMEOUT": "5s",
            "ASCIIDOCTOR_MAX_WORKERS": 4,
        }
        values.update(overrides)
        return Settings(**values)

    return _settings


@pytest.fixture
def settings(settings_factory) -> Settings:
    return settings_factory()


@pytest.fixture
def renderer_capability(fake_asciidoctor: str) -> RendererCapability:
    return RendererCapability(command=(fake_asciidoctor,), strategy="search-path", version=RENDERER_VERSION)


@pytest.fixture
def ebook_converter_capability(fake_ebook_convert: str) -> EbookConverterCapability:
    return EbookConverterCapability(path=fake_ebook_convert, version=EBOOK_CONVERT_VERSION)


def image_handler(request: httpx.Request) -> httpx.Response:
    """Remote image server: ``images.test`` serves images, ``unreachable.test`` is down."""
    if request.url.host == "unreachable.test":
        raise httpx.ConnectError("connection refused", request=request)
    if request.url.host != "images.test":
        return httpx.Response(404)

    path = request.url.path
    if path.endswith(".png") or path == "/cover":
        return httpx.Response(200, headers={"content-type": "image/png"}, content=PNG_BYTES)
    if path == "/download":
        return httpx.Response(
            200,
            headers={"content-type": "image/gif", "content-disposition": 'attachment; filename="photo.gif"'},
            content=GIF_BYTES,
        )
    return httpx.Response(404)


@pytest.fixture
def image_client_factory() -> Callable[[], httpx.Client]:
    def _client() -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(image_handler), follow_redirects=True)

    return _client


@pytest.fixture
def service_factory(renderer_capability, ebook_converter_capability, image_client_factory):
    """Build conversion services; keyword overrides replace the fake tools."""
    services = []

    def _service(settings: Settings, **overrides: Any) -> ConversionService:
        options: Dict[str, Any] = {
            "renderer": renderer_capability,
            "ebook_converter": ebook_converter_capability,
            "image_client_factory": image_client_factory,
        }
        options.update(overrides)
        service = ConversionService(settings, **options)
        services.append(service)
        return service

    yield _service

    for service in services:
        service.shutdown()


@pytest.fixture
def conversion_service(settings, service_factory) -> ConversionService:
    return service_factory(settings)


@pytest.fixture
def client_for() -> Callable[..., AsyncClient]:
    """Open an in-process client against an application."""

    def _client(app) -> AsyncClient:
        return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")

    return _client


@pytest_asyncio.fixture
async def async_client(settings, conversion_service, client_for) -> AsyncGenerator[AsyncClient, None]:
    """Client for an application backed by the fake tools."""
    app = create_app(settings, conversion_service)
    async with client_for(app) as client:
        yield client


@pytest.fixture
def restore_root_logger():
    """Remove the handlers ``setup_logging`` installs on the root logger."""
    root = logging.getLogger()
    level = root.level
    yield root
    for handler in root.handlers[:]:
        if isinstance(handler.formatter, (SimpleFormatter, StructuredFormatter)):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def payload_factory():
    """Factory for conversion request payloads."""

    class PayloadFactory:
        @staticmethod
        def conversion(**kwargs) -> Dict[str, Any]:
            payload: Dict[str, Any] = {
                "content": "This is the first paragraph.\n\nThis is the second paragraph.",
                "title": "My Book",
                "authors": ["Alice Example"],
                "version": "1.2",
            }
            payload.update(kwargs)
            return payload

    return PayloadFactory()


@pytest.fixture
def leftover_workspaces() -> Callable[[ConversionService], list]:
    """Working directories left behind under a service's temp root."""

    def _entries(service: ConversionService) -> list:
        if not service.temp_root.exists():
            return []
        return sorted(os.listdir(service.temp_root))

    return _entries
