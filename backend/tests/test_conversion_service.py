"""
Unit tests for the conversion service against fake external tools.
"""

import time
from pathlib import Path

import httpx
import pytest

from asciidoctor_api.core.error_handling import (
    ConversionFailedError,
    ConversionTimeoutError,
    FileOperationError,
)
from asciidoctor_api.models import DocumentMetadata, OutputFormat
from asciidoctor_api.services.conversion_service import (
    INPUT_FILENAME,
    INTERMEDIATE_EPUB,
    build_renderer_args,
    ensure_complete_html,
)

CONTENT = "= Sample Book\nAlice Example\n\nFirst paragraph.\n"


class TestPlainFormats:
    """Test single-stage conversions."""

    @pytest.mark.parametrize(
        "output_format,backend",
        [
            (OutputFormat.EPUB, "epub3"),
            (OutputFormat.PDF, "pdf"),
            (OutputFormat.DOCBOOK5, "docbook5"),
        ],
    )
    async def test_convert_success(self, conversion_service, output_format, backend):
        result = await conversion_service.convert(CONTENT, DocumentMetadata(title="Sample Book"), output_format)

        try:
            assert result.path.name == f"output.{output_format.extension}"
            assert result.media_type == output_format.media_type
            assert result.size == result.path.stat().st_size > 0
            text = result.path.read_text(encoding="utf-8")
            assert text.startswith(f"backend={backend}\n")
            assert "attribute=title=Sample Book" in text
            assert text.endswith(CONTENT)
        finally:
            conversion_service.cleanup(result.work_dir)

        assert not result.work_dir.exists()

    async def test_pdf_theme_arguments(self, settings_factory, service_factory, tmp_path):
        settings = settings_factory(ASCIIDOCTOR_PDF_THEMES_DIR=str(tmp_path / "themes"))
        service = service_factory(settings)

        result = await service.convert(CONTENT, DocumentMetadata(theme="novel"), OutputFormat.PDF)

        text = result.path.read_text(encoding="utf-8")
        assert "require=asciidoctor-pdf" in text
        assert "attribute=pdf-theme=novel" in text
        assert f"attribute=pdf-themesdir={tmp_path / 'themes'}" in text
        service.cleanup(result.work_dir)

    async def test_renderer_failure(self, conversion_service, monkeypatch, leftover_workspaces):
        monkeypatch.setenv("FAKE_RENDERER_MODE", "fail")

        with pytest.raises(ConversionFailedError) as exc_info:
            await conversion_service.convert(CONTENT, DocumentMetadata(), OutputFormat.EPUB)

        assert "exit code 1" in exc_info.value.message
        assert "Failed to load AsciiDoc document" in exc_info.value.message
        assert leftover_workspaces(conversion_service) == []

    async def test_empty_output(self, conversion_service, monkeypatch, leftover_workspaces):
        monkeypatch.setenv("FAKE_RENDERER_MODE", "empty")

        with pytest.raises(ConversionFailedError, match="output file is empty"):
            await conversion_service.convert(CONTENT, DocumentMetadata(), OutputFormat.PDF)

        assert leftover_workspaces(conversion_service) == []

    async def test_missing_output(self, conversion_service, monkeypatch, leftover_workspaces):
        monkeypatch.setenv("FAKE_RENDERER_MODE", "missing")

        with pytest.raises(FileOperationError) as exc_info:
            await conversion_service.convert(CONTENT, DocumentMetadata(), OutputFormat.DOCBOOK5)

        assert exc_info.value.details["files_in_dir"] == [INPUT_FILENAME]
        assert leftover_workspaces(conversion_service) == []

    @pytest.mark.slow
    async def test_timeout(self, settings_factory, service_factory, monkeypatch, leftover_workspaces):
        monkeypatch.setenv("FAKE_RENDERER_MODE", "slow")
        monkeypatch.setenv("FAKE_RENDERER_DELAY", "10")
        service = service_factory(settings_factory(ASCIIDOCTOR_CONVERSION_TIMEOUT="1s"))

        start = time.monotonic()
        with pytest.raises(ConversionTimeoutError):
            await service.convert(CONTENT, DocumentMetadata(), OutputFormat.EPUB)

        assert time.monotonic() - start < 5
        assert leftover_workspaces(service) == []

    async def test_degraded_service_fails_without_workspace(self, settings, service_factory):
        service = service_factory(settings, renderer=None)

        assert not service.is_ready
        with pytest.raises(ConversionFailedError, match="renderer unavailable"):
            await service.convert(CONTENT, DocumentMetadata(), OutputFormat.EPUB)

        assert not service.temp_root.exists()

    def test_worker_without_renderer_raises_typed_error(self, settings, service_factory, leftover_workspaces):
        service = service_factory(settings, renderer=None, ebook_converter=None)

        with pytest.raises(ConversionFailedError, match="renderer unavailable"):
            service._convert_sync(CONTENT, DocumentMetadata(), OutputFormat.PDF)
        with pytest.raises(ConversionFailedError, match="ebook-convert not found"):
            service._convert_sync(CONTENT, DocumentMetadata(), OutputFormat.MOBI)

        assert leftover_workspaces(service) == []


class TestKindleFormats:
    """Test the EPUB -> ebook-convert pipeline."""

    @pytest.mark.parametrize("output_format", [OutputFormat.MOBI, OutputFormat.AZW3])
    async def test_convert_success(self, conversion_service, output_format):
        result = await conversion_service.convert(CONTENT, DocumentMetadata(), output_format)

        try:
            assert result.path.name == f"output.{output_format.extension}"
            text = result.path.read_text(encoding="utf-8")
            assert text.startswith(f"{output_format.extension} converted-from-epub:\nbackend=epub3\n")
            assert "require=asciidoctor-epub3" in text
            assert not (result.work_dir / INTERMEDIATE_EPUB).exists()
        finally:
            conversion_service.cleanup(result.work_dir)

    async def test_second_stage_failure(self, conversion_service, monkeypatch, leftover_workspaces):
        monkeypatch.setenv("FAKE_EBOOK_MODE", "fail")

        with pytest.raises(ConversionFailedError) as exc_info:
            await conversion_service.convert(CONTENT, DocumentMetadata(), OutputFormat.MOBI)

        assert exc_info.value.operation == "kindle_conversion"
        assert "No plugin to handle output format" in exc_info.value.message
        assert leftover_workspaces(conversion_service) == []

    async def test_second_stage_without_output(self, conversion_service, monkeypatch):
        monkeypatch.setenv("FAKE_EBOOK_MODE", "missing")

        with pytest.raises(FileOperationError):
            await conversion_service.convert(CONTENT, DocumentMetadata(), OutputFormat.AZW3)

    async def test_first_stage_failure_skips_ebook_convert(self, conversion_service, monkeypatch):
        monkeypatch.setenv("FAKE_RENDERER_MODE", "fail")

        with pytest.raises(ConversionFailedError) as exc_info:
            await conversion_service.convert(CONTENT, DocumentMetadata(), OutputFormat.AZW3)

        assert exc_info.value.operation == "epub3_conversion"

    async def test_missing_ebook_convert(self, settings, service_factory):
        service = service_factory(settings, ebook_converter=None)

        assert not service.ebook_converter_ready
        with pytest.raises(ConversionFailedError, match="ebook-convert not found"):
            await service.convert(CONTENT, DocumentMetadata(), OutputFormat.MOBI)
        assert not service.temp_root.exists()

        result = await service.convert(CONTENT, DocumentMetadata(), OutputFormat.EPUB)
        service.cleanup(result.work_dir)


class TestHtml5:
    """Test HTML5 rendering with embedded images."""

    async def test_images_and_cover_embedded(self, conversion_service):
        content = (
            "= Illustrated\n\n"
            "image::https://images.test/ok.png[Logo]\n\n"
            "image::https://unreachable.test/x.png[Down]\n\n"
            "Closing paragraph.\n"
        )
        metadata = DocumentMetadata(title="Illustrated", image="https://images.test/cover")

        result = await conversion_service.convert(content, metadata, OutputFormat.HTML5)

        try:
            document = result.path.read_text(encoding="utf-8")
            assert '<img src="data:image/png;base64,' in document
            assert "https://images.test/ok.png" not in document
            assert '<img src="https://unreachable.test/x.png" alt="Down">' in document
            assert 'alt="Cover Image"' in document
            assert document.index('alt="Cover Image"') < document.index("Closing paragraph.")
            assert not (result.work_dir / "images").exists()
            assert result.size == result.path.stat().st_size
        finally:
            conversion_service.cleanup(result.work_dir)

    async def test_fragment_wrapped_into_page(self, conversion_service, monkeypatch):
        monkeypatch.setenv("FAKE_RENDERER_MODE", "fragment")

        result = await conversion_service.convert(
            "Just text.", DocumentMetadata(title="A <b> Title"), OutputFormat.HTML5
        )

        try:
            document = result.path.read_text(encoding="utf-8")
            assert document.startswith("<!DOCTYPE html>")
            assert "<title>A &lt;b&gt; Title</title>" in document
            assert "<p>Just text.</p>" in document
        finally:
            conversion_service.cleanup(result.work_dir)

    async def test_malformed_image_url_does_not_fail_request(self, conversion_service):
        content = (
            "= Illustrated\n\n"
            "image::https://images.test/ok.png[Ok]\n\n"
            "image::http://images.test:abc/x.png[Bad]\n"
        )

        result = await conversion_service.convert(content, DocumentMetadata(title="Illustrated"), OutputFormat.HTML5)

        try:
            document = result.path.read_text(encoding="utf-8")
            assert '<img src="data:image/png;base64,' in document
            assert '<img src="http://images.test:abc/x.png" alt="Bad">' in document
        finally:
            conversion_service.cleanup(result.work_dir)

    @pytest.mark.slow
    async def test_slow_images_bounded_by_deadline(self, settings_factory, service_factory, leftover_workspaces):
        def slow_handler(request: httpx.Request) -> httpx.Response:
            time.sleep(0.6)
            return httpx.Response(200, headers={"content-type": "image/png"}, content=b"\x89PNG\r\n\x1a\n")

        service = service_factory(
            settings_factory(ASCIIDOCTOR_CONVERSION_TIMEOUT="1s"),
            image_client_factory=lambda: httpx.Client(transport=httpx.MockTransport(slow_handler)),
        )
        content = "\n\n".join(f"image::https://images.test/slow-{n}.png[]" for n in range(5))

        start = time.monotonic()
        with pytest.raises(ConversionTimeoutError):
            await service.convert(content, DocumentMetadata(), OutputFormat.HTML5)

        assert time.monotonic() - start < 2.5
        assert leftover_workspaces(service) == []

    async def test_empty_html_output(self, conversion_service, monkeypatch, leftover_workspaces):
        monkeypatch.setenv("FAKE_RENDERER_MODE", "empty")

        with pytest.raises(ConversionFailedError, match="output file is empty"):
            await conversion_service.convert("Text", DocumentMetadata(), OutputFormat.HTML5)

        assert leftover_workspaces(conversion_service) == []


class TestRendererArguments:
    """Test the renderer command line."""

    def test_html5_arguments(self):
        metadata = DocumentMetadata(
            title="Guide",
            authors=("Alice", "Bob"),
            pubkey="npub1xyz",
            version="3.1",
            published_on="2024-02-01",
            created_at="1705312800",
            image="https://images.test/cover.png",
        )

        args = build_renderer_args(("asciidoctor",), "html5", metadata, Path("/work"), "output.html")

        assert args == [
            "asciidoctor",
            "-b", "html5",
            "-D", "/work",
            "-o", "output.html",
            "-a", "title=Guide",
            "-a", "standalone",
            "-a", "author=Alice; Bob",
            "-a", "revnumber=3.1",
            "-a", "revdate=2024-02-01",
            "-a", "created=2024-01-15",
            "-a", "pubkey=npub1xyz",
            "-a", "front-cover-image=https://images.test/cover.png",
            "-a", "toc",
            "-a", "stem",
            "-a", "doctype=book",
            "-a", "allow-uri-read",
            "-a", "imagesdir=images",
            "input.adoc",
        ]

    def test_bundle_exec_epub_arguments(self):
        args = build_renderer_args(
            ("bundle", "exec", "asciidoctor"), "epub3", DocumentMetadata(pubkey="npub1abc"), Path("/w"), "intermediate.epub"
        )

        assert args[:5] == ["bundle", "exec", "asciidoctor", "-r", "asciidoctor-epub3"]
        assert "author=npub1abc" in args
        assert not any(arg.startswith("pubkey=") for arg in args)
        assert "standalone" not in args
        assert args[-1] == "input.adoc"

    def test_theme_ignored_outside_pdf(self):
        args = build_renderer_args(("asciidoctor",), "docbook5", DocumentMetadata(theme="novel"), Path("/w"), "output.xml")

        assert not any(arg.startswith("pdf-theme") for arg in args)
        assert "-r" not in args

    def test_complete_html_passthrough(self):
        document = "<!DOCTYPE html><html><body></body></html>"

        assert ensure_complete_html(document, "T") == document
