"""
Conversion orchestration around the external renderer.

Each request gets its own working directory and its own renderer process; the
blocking work runs on a thread pool so the event loop keeps serving. Every
conversion is bound to a single deadline covering all of its stages.
"""

import asyncio
import html
import shutil
import subprocess
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import httpx

from asciidoctor_api.core.config import Settings
from asciidoctor_api.core.error_handling import (
    ApplicationError,
    ConversionFailedError,
    ConversionTimeoutError,
    ErrorKind,
    FileOperationError,
)
from asciidoctor_api.core.logging_config import get_logger
from asciidoctor_api.models.conversion import ConversionResult, DocumentMetadata, OutputFormat
from asciidoctor_api.services.document_header import format_date
from asciidoctor_api.services.image_embedder import ImageEmbedder
from asciidoctor_api.services.renderer import EbookConverterCapability, RendererCapability

logger = get_logger("converter")

INPUT_FILENAME = "input.adoc"
INTERMEDIATE_EPUB = "intermediate.epub"
WORKSPACE_DIRNAME = "asciidoctor-api"
MAX_COMMAND_OUTPUT = 4000

_RENDERER_EXTENSIONS = {
    "pdf": "asciidoctor-pdf",
    "epub3": "asciidoctor-epub3",
}


def build_renderer_args(
    command: Sequence[str],
    backend: str,
    metadata: DocumentMetadata,
    work_dir: Path,
    output_name: str,
    pdf_themes_dir: Optional[str] = None,
) -> List[str]:
    """Full asciidoctor command line for one conversion, input file last."""
    args = list(command)
    extension = _RENDERER_EXTENSIONS.get(backend)
    if extension:
        args += ["-r", extension]

    args += [
        "-b", backend,
        "-D", str(work_dir),
        "-o", output_name,
        "-a", f"title={metadata.title}",
    ]
    if backend == "html5":
        args += ["-a", "standalone"]

    if metadata.author_line:
        args += ["-a", f"author={metadata.author_line}"]
    args += ["-a", f"revnumber={metadata.version}"]
    if metadata.published_on:
        args += ["-a", f"revdate={metadata.published_on}"]
    created = format_date(metadata.created_at)
    if created:
        args += ["-a", f"created={created}"]
    if metadata.pubkey_identity and metadata.has_explicit_authors:
        args += ["-a", f"pubkey={metadata.pubkey_identity}"]
    if metadata.image:
        args += ["-a", f"front-cover-image={metadata.image}"]

    if backend == "pdf" and metadata.theme:
        args += ["-a", f"pdf-theme={metadata.theme}"]
        if pdf_themes_dir:
            args += ["-a", f"pdf-themesdir={pdf_themes_dir}"]

    args += [
        "-a", "toc",
        "-a", "stem",
        "-a", "doctype=book",
        "-a", "allow-uri-read",
    ]
    if backend == "html5":
        args += ["-a", "imagesdir=images"]

    args.append(INPUT_FILENAME)
    return args


def ensure_complete_html(document: str, title: str) -> str:
    """Wrap an HTML fragment into a complete page; full documents pass through."""
    if "<!doctype" in document.lower():
        return document
    return (
        "<!DOCTYPE html>\n"
        "<html>\n"
        "<head>\n"
        '<meta charset="utf-8">\n'
        f"<title>{html.escape(title)}</title>\n"
        "</head>\n"
        "<body>\n"
        f"{document}\n"
        "</body>\n"
        "</html>"
    )


def _tail(output: str) -> str:
    output = output.strip()
    return output[-MAX_COMMAND_OUTPUT:]


class ConversionService:
    """Runs conversions for all output formats."""

    def __init__(
        self,
        settings: Settings,
        renderer: Optional[RendererCapability],
        ebook_converter: Optional[EbookConverterCapability] = None,
        executor: Optional[ThreadPoolExecutor] = None,
        image_client_factory: Optional[Callable[[], httpx.Client]] = None,
    ):
        self.settings = settings
        self.renderer = renderer
        self.ebook_converter = ebook_converter
        self.executor = executor or ThreadPoolExecutor(
            max_workers=settings.max_workers, thread_name_prefix="conversion"
        )
        self.image_client_factory = image_client_factory
        self.temp_root = Path(settings.temp_dir) / WORKSPACE_DIRNAME

        logger.info(
            "Conversion service initialized",
            {
                "renderer_ready": self.is_ready,
                "ebook_converter_ready": self.ebook_converter_ready,
                "temp_dir": str(self.temp_root),
                "timeout_seconds": settings.conversion_timeout,
                "max_workers": settings.max_workers,
            },
        )

    @property
    def is_ready(self) -> bool:
        return self.renderer is not None

    @property
    def ebook_converter_ready(self) -> bool:
        return self.ebook_converter is not None

    async def convert(
        self,
        content: str,
        metadata: DocumentMetadata,
        output_format: OutputFormat,
    ) -> ConversionResult:
        """
        Convert ``content`` (already header-fixed) into ``output_format``.

        The returned result owns its working directory; release it with
        :meth:`cleanup`. On failure the working directory is already gone.

        Raises:
            ConversionTimeoutError: If the deadline expired.
            ConversionFailedError: If a process failed or produced nothing.
            FileOperationError: If the working directory could not be used.
        """
        self._require_renderer()
        if output_format.is_kindle:
            self._require_ebook_converter(output_format)

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self.executor, self._convert_sync, content, metadata, output_format
        )

    def _require_renderer(self) -> RendererCapability:
        if self.renderer is None:
            raise ConversionFailedError(
                "renderer unavailable: asciidoctor was not found at startup",
                component="converter",
                operation="convert",
            )
        return self.renderer

    def _require_ebook_converter(self, output_format: OutputFormat) -> EbookConverterCapability:
        if self.ebook_converter is None:
            raise ConversionFailedError(
                f"ebook-convert not found (Calibre required for {output_format.value})",
                component="converter",
                operation="kindle_conversion",
            )
        return self.ebook_converter

    def _convert_sync(
        self,
        content: str,
        metadata: DocumentMetadata,
        output_format: OutputFormat,
    ) -> ConversionResult:
        deadline = time.monotonic() + self.settings.conversion_timeout
        work_dir = self._create_workspace()

        try:
            input_path = work_dir / INPUT_FILENAME
            try:
                input_path.write_text(content, encoding="utf-8")
            except OSError as e:
                raise FileOperationError(
                    "failed to write content to temp file",
                    component="converter",
                    operation="write_input",
                    cause=e,
                ) from e

            if output_format is OutputFormat.HTML5:
                output_path = self._convert_html5(work_dir, content, metadata, deadline)
            elif output_format.is_kindle:
                output_path = self._convert_kindle(work_dir, metadata, output_format, deadline)
            else:
                output_path = work_dir / f"output.{output_format.extension}"
                self._render(work_dir, output_format.backend, metadata, output_path.name, deadline)

            size = self._verify_output(output_path, work_dir, output_format)
        except ApplicationError:
            self.cleanup(work_dir)
            raise
        except Exception as e:
            self.cleanup(work_dir)
            raise ConversionFailedError(
                f"{output_format.value} conversion failed unexpectedly",
                component="converter",
                operation="convert",
                cause=e,
            ) from e

        logger.info(
            f"{output_format.value} conversion completed",
            {
                "operation": "conversion",
                "format": output_format.value,
                "output_file": str(output_path),
                "output_size": size,
            },
        )
        return ConversionResult(
            path=output_path,
            size=size,
            media_type=output_format.media_type,
            work_dir=work_dir,
            output_format=output_format,
        )

    def _create_workspace(self) -> Path:
        try:
            self.temp_root.mkdir(parents=True, exist_ok=True)
            return Path(tempfile.mkdtemp(prefix="convert-", dir=self.temp_root))
        except OSError as e:
            raise FileOperationError(
                "failed to create temp work directory",
                component="converter",
                operation="create_workspace",
                details={"temp_dir": str(self.temp_root)},
                cause=e,
            ) from e

    def _render(
        self,
        work_dir: Path,
        backend: str,
        metadata: DocumentMetadata,
        output_name: str,
        deadline: float,
    ) -> None:
        renderer = self._require_renderer()
        args = build_renderer_args(
            renderer.command,
            backend,
            metadata,
            work_dir,
            output_name,
            pdf_themes_dir=self.settings.pdf_themes_dir,
        )
        self._run(
            args,
            cwd=work_dir,
            env=renderer.environment(),
            deadline=deadline,
            operation=f"{backend}_conversion",
        )

    def _run(
        self,
        args: List[str],
        cwd: Path,
        env: Optional[dict],
        deadline: float,
        operation: str,
    ) -> subprocess.CompletedProcess:
        """Run one external process bound to the remaining time of ``deadline``."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ConversionTimeoutError(
                f"conversion timeout after {self.settings.conversion_timeout}s before {operation}",
                component="converter",
                operation=operation,
            )

        logger.info(
            f"Starting {operation}",
            {"operation": operation, "command": " ".join(args), "work_dir": str(cwd), "timeout": round(remaining, 3)},
        )
        start_time = time.monotonic()
        try:
            completed = subprocess.run(
                args,
                cwd=str(cwd),
                env=env,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=remaining,
            )
        except subprocess.TimeoutExpired as e:
            raise ConversionTimeoutError(
                f"conversion timeout after {self.settings.conversion_timeout}s",
                component="converter",
                operation=operation,
                details={"duration_ms": round((time.monotonic() - start_time) * 1000)},
            ) from e
        except OSError as e:
            raise ConversionFailedError(
                f"failed to start {args[0]}",
                component="converter",
                operation=operation,
                cause=e,
            ) from e

        duration_ms = round((time.monotonic() - start_time) * 1000)
        if completed.returncode != 0:
            output = _tail((completed.stdout or "") + (completed.stderr or ""))
            raise ConversionFailedError(
                f"{operation} failed with exit code {completed.returncode} (output: {output})",
                component="converter",
                operation=operation,
                details={"duration_ms": duration_ms, "exit_code": completed.returncode},
            )

        if completed.stderr and completed.stderr.strip():
            logger.debug(f"{operation} warnings", {"output": _tail(completed.stderr)})
        logger.debug(f"{operation} finished", {"duration_ms": duration_ms})
        return completed

    def _verify_output(self, output_path: Path, work_dir: Path, output_format: OutputFormat) -> int:
        try:
            size = output_path.stat().st_size
        except FileNotFoundError as e:
            files = sorted(p.name for p in work_dir.iterdir()) if work_dir.is_dir() else []
            raise FileOperationError(
                f"output file not created at {output_path}",
                component="converter",
                operation="verify_output",
                details={"files_in_dir": files, "format": output_format.value},
                cause=e,
            ) from e
        if size == 0:
            raise ConversionFailedError(
                "output file is empty",
                component="converter",
                operation="verify_output",
                details={"format": output_format.value},
            )
        return size

    def _convert_kindle(
        self,
        work_dir: Path,
        metadata: DocumentMetadata,
        output_format: OutputFormat,
        deadline: float,
    ) -> Path:
        """AsciiDoc -> EPUB -> MOBI/AZW3. The intermediate EPUB never outlives this call."""
        ebook_converter = self._require_ebook_converter(output_format)
        epub_path = work_dir / INTERMEDIATE_EPUB
        output_path = work_dir / f"output.{output_format.extension}"

        try:
            self._render(work_dir, output_format.backend, metadata, epub_path.name, deadline)
            epub_size = self._verify_output(epub_path, work_dir, OutputFormat.EPUB)

            logger.info(
                f"Converting EPUB to {output_format.value}",
                {"operation": "kindle_conversion", "format": output_format.value, "epub_size": epub_size},
            )
            self._run(
                [ebook_converter.path, epub_path.name, output_path.name],
                cwd=work_dir,
                env=None,
                deadline=deadline,
                operation="kindle_conversion",
            )
        finally:
            epub_path.unlink(missing_ok=True)
        return output_path

    def _convert_html5(
        self,
        work_dir: Path,
        content: str,
        metadata: DocumentMetadata,
        deadline: float,
    ) -> Path:
        """Render HTML5, then embed remote images and the cover as data URIs."""
        output_path = work_dir / "output.html"
        embedder = ImageEmbedder(
            work_dir,
            timeout=self.settings.image_download_timeout,
            client_factory=self.image_client_factory,
        )
        try:
            embedder.download_images(content, cover=metadata.image, deadline=deadline)
            self._render(work_dir, OutputFormat.HTML5.backend, metadata, output_path.name, deadline)

            if not output_path.is_file() or output_path.stat().st_size == 0:
                # Verified (and reported) by the caller
                return output_path

            document = output_path.read_text(encoding="utf-8", errors="replace")

            document = embedder.embed_images(document)
            document = embedder.add_cover_image(document, content, cover=metadata.image)
            document = ensure_complete_html(document, metadata.title)
            output_path.write_text(document, encoding="utf-8")
        finally:
            embedder.cleanup()

        if embedder.failed:
            logger.warning(
                "Some images could not be embedded and remain remote references",
                {"failed_images": embedder.failed},
            )
        return output_path

    def cleanup(self, work_dir: Optional[Path]) -> None:
        """Remove a working directory; failures are logged, never raised."""
        if work_dir is None:
            return
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            return
        except OSError as e:
            logger.error(
                "Failed to remove working directory",
                e,
                {"work_dir": str(work_dir)},
                kind=ErrorKind.FILE_OPERATION_ERROR,
                operation="cleanup",
            )
            return
        logger.debug("Removed working directory", {"work_dir": str(work_dir)})

    def shutdown(self) -> None:
        """Release the worker pool; waits for running conversions."""
        self.executor.shutdown(wait=True)
