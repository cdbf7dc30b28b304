"""
Pydantic models and value types for AsciiDoc conversion requests.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_TITLE = "Document"
DEFAULT_VERSION = "1.0"


class OutputFormat(str, Enum):
    """Supported conversion targets."""
    EPUB = "epub"
    PDF = "pdf"
    HTML5 = "html5"
    MOBI = "mobi"
    AZW3 = "azw3"
    DOCBOOK5 = "docbook5"

    @property
    def backend(self) -> str:
        """Renderer backend that produces this format (or its EPUB intermediate)."""
        return _BACKENDS[self]

    @property
    def extension(self) -> str:
        return _EXTENSIONS[self]

    @property
    def media_type(self) -> str:
        return _MEDIA_TYPES[self]

    @property
    def is_kindle(self) -> bool:
        """Produced by the EPUB -> ebook-convert pipeline."""
        return self in (OutputFormat.MOBI, OutputFormat.AZW3)


_BACKENDS = {
    OutputFormat.EPUB: "epub3",
    OutputFormat.PDF: "pdf",
    OutputFormat.HTML5: "html5",
    OutputFormat.MOBI: "epub3",
    OutputFormat.AZW3: "epub3",
    OutputFormat.DOCBOOK5: "docbook5",
}

_EXTENSIONS = {
    OutputFormat.EPUB: "epub",
    OutputFormat.PDF: "pdf",
    OutputFormat.HTML5: "html",
    OutputFormat.MOBI: "mobi",
    OutputFormat.AZW3: "azw3",
    OutputFormat.DOCBOOK5: "xml",
}

_MEDIA_TYPES = {
    OutputFormat.EPUB: "application/epub+zip",
    OutputFormat.PDF: "application/pdf",
    OutputFormat.HTML5: "text/html; charset=utf-8",
    OutputFormat.MOBI: "application/x-mobipocket-ebook",
    OutputFormat.AZW3: "application/vnd.amazon.ebook",
    OutputFormat.DOCBOOK5: "application/xml",
}


def encode_pubkey_identity(pubkey: str) -> str:
    """
    Return the display identity for a public key.

    ``npub1...`` values are returned as-is. Hex keys pass through unchanged;
    clients are expected to send the bech32 form.
    """
    return pubkey.strip() if pubkey else ""


@dataclass(frozen=True)
class DocumentMetadata:
    """Publication metadata of a request after defaulting."""
    title: str = DEFAULT_TITLE
    authors: Tuple[str, ...] = ()
    pubkey: str = ""
    version: str = DEFAULT_VERSION
    description: str = ""
    summary: str = ""
    published_on: str = ""
    created_at: str = ""
    image: str = ""
    theme: str = ""

    @property
    def has_explicit_authors(self) -> bool:
        return len(self.authors) > 0

    @property
    def pubkey_identity(self) -> str:
        return encode_pubkey_identity(self.pubkey)

    @property
    def effective_authors(self) -> List[str]:
        """Explicit authors, else the pubkey identity, else nothing."""
        if self.authors:
            return list(self.authors)
        if self.pubkey_identity:
            return [self.pubkey_identity]
        return []

    @property
    def author_line(self) -> str:
        return "; ".join(self.effective_authors)


class ConversionRequest(BaseModel):
    """JSON payload accepted by every ``/convert/*`` endpoint."""

    model_config = ConfigDict(extra="ignore")

    content: str = Field("", description="AsciiDoc document body")
    title: str = Field("", description="Document title, defaults to 'Document'")
    author: str = Field("", description="Single author, kept for older clients")
    authors: List[str] = Field(default_factory=list, description="Author names")
    pubkey: str = Field("", description="Author public key (npub or hex)")
    version: str = Field("", description="Revision number, defaults to 1.0")
    description: str = Field("", description="Document description")
    summary: str = Field("", description="Document summary")
    published_on: str = Field("", description="Publication date (YYYY-MM-DD)")
    created_at: str = Field("", description="Creation date (YYYY-MM-DD, unix timestamp or ISO-8601)")
    image: str = Field("", description="Cover image URL")
    theme: str = Field("", description="PDF theme name")

    @field_validator(
        "content", "title", "author", "pubkey", "version", "description",
        "summary", "published_on", "image", "theme",
        mode="before",
    )
    @classmethod
    def _null_as_empty(cls, value):
        return "" if value is None else value

    @field_validator("created_at", mode="before")
    @classmethod
    def _created_at_as_text(cls, value):
        if value is None:
            return ""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(int(value))
        return value

    @field_validator("authors", mode="before")
    @classmethod
    def _authors_list(cls, value):
        if value is None:
            return []
        return value

    def effective_authors(self) -> List[str]:
        """Explicit authors: ``authors`` if non-empty, else ``[author]`` if set."""
        names = [name.strip() for name in self.authors if name and name.strip()]
        if names:
            return names
        if self.author.strip():
            return [self.author.strip()]
        return []

    def metadata(self) -> DocumentMetadata:
        return DocumentMetadata(
            title=self.title.strip() or DEFAULT_TITLE,
            authors=tuple(self.effective_authors()),
            pubkey=self.pubkey.strip(),
            version=self.version.strip() or DEFAULT_VERSION,
            description=self.description.strip(),
            summary=self.summary.strip(),
            published_on=self.published_on.strip(),
            created_at=self.created_at.strip(),
            image=self.image.strip(),
            theme=self.theme.strip(),
        )


@dataclass
class ConversionResult:
    """A produced artifact; owns its working directory until cleanup."""
    path: Path
    size: int
    media_type: str
    work_dir: Path
    output_format: Optional[OutputFormat] = None
