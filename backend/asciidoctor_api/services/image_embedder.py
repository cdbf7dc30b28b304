"""
Remote image acquisition and inline embedding for HTML5 output.

Remote images referenced by the document are downloaded into the working
directory before rendering, then substituted into the rendered HTML as base64
data URIs so the artifact is self-contained. The AsciiDoc source is never
rewritten; an image that cannot be fetched stays a remote reference.
"""

import base64
import html
import os
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional
from urllib.parse import unquote, urlparse

import httpx

from asciidoctor_api.core.config import DEFAULT_IMAGE_DOWNLOAD_TIMEOUT
from asciidoctor_api.core.logging_config import get_logger

logger = get_logger("image_handler")

IMAGE_MACRO = re.compile(r"image::?([^\s\[\]]+)")
IMAGE_MACRO_WITH_ATTRIBUTES = re.compile(r"image::?([^\[\n]+)\[")
COVER_ATTRIBUTE = re.compile(r"^:(?:front-cover-image|epub-cover-image):\s*(.+)$", re.MULTILINE)
FRONT_COVER_ATTRIBUTE = re.compile(r"^:front-cover-image:\s*(.+)$", re.MULTILINE)
CONTENT_DISPOSITION_FILENAME = re.compile(r'filename="?([^";]+)"?')
BODY_TAG = re.compile(r"<body[^>]*>", re.IGNORECASE)

MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
    ".webp": "image/webp",
}

COVER_BLOCK = (
    '<div style="text-align: center; margin: 2em 0;">'
    '<img src="{src}" alt="Cover Image" style="max-width: 100%; height: auto; max-width: 500px;">'
    "</div>"
)


def is_remote_url(url: str) -> bool:
    return url.startswith(("http://", "https://"))


def mime_type_for(filename: str) -> str:
    """Image MIME type from the file extension, JPEG when unknown."""
    return MIME_TYPES.get(os.path.splitext(filename)[1].lower(), "image/jpeg")


def extension_for_content_type(content_type: str) -> str:
    content_type = (content_type or "").lower()
    for marker, extension in (("png", ".png"), ("gif", ".gif"), ("svg", ".svg"), ("webp", ".webp")):
        if marker in content_type:
            return extension
    return ".jpg"


def _unique(items: List[str]) -> List[str]:
    seen = set()
    unique = []
    for item in items:
        if item and item not in seen:
            seen.add(item)
            unique.append(item)
    return unique


def find_image_urls(content: str) -> List[str]:
    """Targets of ``image::target[...]`` and ``image:target[...]`` macros."""
    urls = [match.strip() for match in IMAGE_MACRO.findall(content)]
    urls.extend(match.strip() for match in IMAGE_MACRO_WITH_ATTRIBUTES.findall(content))
    return _unique(urls)


def find_cover_image_urls(content: str) -> List[str]:
    """Values of ``:front-cover-image:`` and ``:epub-cover-image:`` attribute entries."""
    return _unique([match.strip() for match in COVER_ATTRIBUTE.findall(content)])


def extract_cover_image(content: str) -> str:
    match = FRONT_COVER_ATTRIBUTE.search(content)
    return match.group(1).strip() if match else ""


def insert_cover_block(document: str, src: str) -> str:
    """Insert the centred cover block right after ``<body...>``, or prepend it."""
    block = COVER_BLOCK.format(src=html.escape(src, quote=True))
    match = BODY_TAG.search(document)
    if match is None:
        return block + "\n" + document
    return document[: match.end()] + "\n" + block + document[match.end():]


@dataclass
class ImageReference:
    """A remote image downloaded for one request."""
    url: str
    filename: str
    path: Path
    mime_type: str

    def data_uri(self) -> str:
        encoded = base64.b64encode(self.path.read_bytes()).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


def _default_client_factory() -> httpx.Client:
    return httpx.Client(timeout=DEFAULT_IMAGE_DOWNLOAD_TIMEOUT, follow_redirects=True)


class ImageEmbedder:
    """Downloads the remote images of one HTML5 request and embeds them into the output."""

    def __init__(
        self,
        work_dir: Path,
        timeout: float = DEFAULT_IMAGE_DOWNLOAD_TIMEOUT,
        client_factory: Optional[Callable[[], httpx.Client]] = None,
    ):
        self.image_dir = Path(work_dir) / "images"
        self.timeout = timeout
        self.client_factory = client_factory or _default_client_factory
        self.images: Dict[str, ImageReference] = {}
        self.failed: List[str] = []

    def download_images(
        self,
        content: str,
        cover: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> List[ImageReference]:
        """
        Download every distinct remote image referenced by ``content``.

        ``cover`` is an additional cover candidate, typically the request's
        ``image`` field. ``deadline`` is a ``time.monotonic()`` value; images
        not fetched by then are skipped. Failures are logged and skipped.
        """
        self.image_dir.mkdir(parents=True, exist_ok=True)

        image_urls = find_image_urls(content)
        cover_urls = find_cover_image_urls(content)
        if cover:
            cover_urls.append(cover)
        remote_urls = [url for url in _unique(image_urls + cover_urls) if is_remote_url(url)]

        if not remote_urls:
            logger.debug("No remote images found in content")
            return []

        logger.info(
            "Found remote images in content",
            {
                "total_images": len(remote_urls),
                "regular_images": len(image_urls),
                "cover_images": len(cover_urls),
            },
        )

        with self.client_factory() as client:
            for index, url in enumerate(remote_urls):
                timeout = self._timeout_before(deadline)
                if timeout is None:
                    skipped = remote_urls[index:]
                    self.failed.extend(skipped)
                    logger.warning(
                        "Conversion deadline reached, skipping remaining image downloads",
                        {"skipped_images": skipped},
                    )
                    break
                try:
                    reference = self._download(client, url, timeout, deadline)
                except (httpx.HTTPError, httpx.InvalidURL, OSError, ValueError) as e:
                    self.failed.append(url)
                    logger.warning("Failed to download image", {"url": url, "error": str(e)})
                    continue
                if reference is not None:
                    self.images[url] = reference

        return list(self.images.values())

    def _timeout_before(self, deadline: Optional[float]) -> Optional[float]:
        """Per-image timeout, capped by the time left; None once the deadline passed."""
        if deadline is None:
            return self.timeout
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return None
        return min(self.timeout, remaining)

    def _download(
        self,
        client: httpx.Client,
        url: str,
        timeout: float,
        deadline: Optional[float] = None,
    ) -> Optional[ImageReference]:
        logger.debug("Downloading image", {"url": url, "timeout": round(timeout, 3)})
        with client.stream("GET", url, timeout=timeout) as response:
            if response.status_code != 200:
                self.failed.append(url)
                logger.warning(
                    "Failed to download image",
                    {"url": url, "error": f"unexpected status code: {response.status_code}"},
                )
                return None

            filename = self._unique_filename(self._filename_for(url, response))
            path = self.image_dir / filename
            size = 0
            with open(path, "wb") as fh:
                for chunk in response.iter_bytes():
                    if deadline is not None and time.monotonic() > deadline:
                        raise httpx.ReadTimeout("image download exceeded the conversion deadline")
                    fh.write(chunk)
                    size += len(chunk)

        logger.info("Image downloaded successfully", {"url": url, "filename": filename, "size": size})
        return ImageReference(url=url, filename=filename, path=path, mime_type=mime_type_for(filename))

    def _filename_for(self, url: str, response: httpx.Response) -> str:
        basename = os.path.basename(unquote(urlparse(url).path))
        if basename and os.path.splitext(basename)[1]:
            return basename

        disposition = response.headers.get("content-disposition", "")
        match = CONTENT_DISPOSITION_FILENAME.search(disposition)
        if match:
            candidate = os.path.basename(match.group(1).strip())
            if candidate:
                return candidate

        extension = extension_for_content_type(response.headers.get("content-type", ""))
        return f"image_{len(self.images) + len(self.failed) + 1}{extension}"

    def _unique_filename(self, filename: str) -> str:
        stem, extension = os.path.splitext(filename)
        candidate = filename
        counter = 1
        while (self.image_dir / candidate).exists():
            candidate = f"{stem}-{counter}{extension}"
            counter += 1
        return candidate

    def embed_images(self, document: str) -> str:
        """Replace ``src`` attributes pointing at downloaded URLs with data URIs."""
        if not self.images:
            return document

        logger.info("Embedding images as base64 data URIs", {"image_count": len(self.images)})
        for url, reference in self.images.items():
            try:
                data_uri = reference.data_uri()
            except OSError as e:
                logger.warning("Failed to read image for embedding", {"path": str(reference.path), "error": str(e)})
                continue

            variants = _unique([url, html.escape(url, quote=True)])
            pattern = re.compile(
                r"""src=(["'])(?:%s)\1""" % "|".join(re.escape(variant) for variant in variants)
            )
            document = pattern.sub(lambda _m, uri=data_uri: f'src="{uri}"', document)
        return document

    def add_cover_image(self, document: str, content: str, cover: Optional[str] = None) -> str:
        """
        Insert the cover image block.

        The ``:front-cover-image:`` attribute wins over ``cover``. A downloaded
        cover is embedded as a data URI, anything else is referenced as-is.
        """
        cover_path = extract_cover_image(content) or (cover or "").strip()
        if not cover_path:
            return document

        reference = self.images.get(cover_path)
        if reference is None:
            return insert_cover_block(document, cover_path)

        try:
            src = reference.data_uri()
        except OSError as e:
            logger.warning("Failed to read cover image", {"path": str(reference.path), "error": str(e)})
            return insert_cover_block(document, cover_path)

        logger.info("Cover image embedded as base64", {"filename": reference.filename})
        return insert_cover_block(document, src)

    def cleanup(self) -> None:
        """Delete the temporary image directory."""
        if self.image_dir.exists():
            shutil.rmtree(self.image_dir, ignore_errors=True)
            logger.debug("Cleaned up temporary image files", {"image_dir": str(self.image_dir)})
