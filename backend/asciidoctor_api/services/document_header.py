"""
Document header validation and repair.

AsciiDoc renderers take the title page metadata from the level-0 heading and
the attribute entries that follow it. Bodies assembled upstream often lack that
header, so one is synthesized from the request metadata.
"""

import logging
import re
from datetime import datetime, timezone
from typing import List, Optional

from asciidoctor_api.core.error_handling import ValidationFailedError
from asciidoctor_api.models.conversion import DEFAULT_TITLE, DEFAULT_VERSION, DocumentMetadata

logger = logging.getLogger(__name__)

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_UNIX_TIMESTAMP = re.compile(r"^-?\d+$")
_MILLISECONDS_THRESHOLD = 10 ** 12
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]+")
BYTE_ORDER_MARK = "\ufeff"


def has_document_header(content: str) -> bool:
    """
    Return True when the first significant line is a level-0 heading.

    Blank lines, ``//`` comments, attribute entries (``:name: value``) and
    block attribute lines (``[...]``) may precede the heading.
    """
    for line in content.lstrip(BYTE_ORDER_MARK).strip().splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("//"):
            continue
        if stripped.startswith("=") and not stripped.startswith("=="):
            return True
        if not stripped.startswith((":", "[")):
            return False
    return False


def to_title_case(text: str) -> str:
    """Title-case words split on whitespace and hyphens: ``my-first book`` -> ``My First Book``."""
    words = text.replace("-", " ").split()
    return " ".join(word[:1].upper() + word[1:].lower() for word in words)


def single_line(value: str) -> str:
    """Collapse line breaks and other control characters so a value stays on one header line."""
    return _CONTROL_CHARS.sub(" ", value or "").strip()


def format_date(value: str) -> str:
    """
    Normalize a date to ``YYYY-MM-DD``.

    Accepts ``YYYY-MM-DD``, unix timestamps in seconds or milliseconds, and
    ISO-8601 / ``YYYY-MM-DD HH:MM:SS`` timestamps. Returns an empty string for
    anything else.
    """
    value = (value or "").strip()
    if not value:
        return ""
    if _ISO_DATE.match(value):
        return value

    if _UNIX_TIMESTAMP.match(value):
        timestamp = int(value)
        if timestamp > _MILLISECONDS_THRESHOLD:
            timestamp //= 1000
        try:
            return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")
        except (OverflowError, OSError, ValueError):
            return ""

    if "T" in value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).strftime("%Y-%m-%d")
        except ValueError:
            return ""

    try:
        return datetime.strptime(value, "%Y-%m-%d %H:%M:%S").strftime("%Y-%m-%d")
    except ValueError:
        return ""


def build_header(metadata: DocumentMetadata) -> str:
    """Render the synthesized header block, including the trailing blank line."""
    title = to_title_case(single_line(metadata.title)) or DEFAULT_TITLE
    author_line = single_line(metadata.author_line)
    published_on = single_line(metadata.published_on)
    version = single_line(metadata.version) or DEFAULT_VERSION
    pubkey = single_line(metadata.pubkey_identity)
    description = single_line(metadata.description)
    summary = single_line(metadata.summary)

    lines: List[str] = [f"= {title}"]
    if author_line:
        lines.append(author_line)
    if published_on:
        lines.append(published_on)

    lines.append(f":version: {version}")
    lines.append(f":revnumber: {version}")
    if published_on:
        lines.append(f":revdate: {published_on}")
    if author_line:
        lines.append(f":author: {author_line}")
    if pubkey and metadata.has_explicit_authors:
        lines.append(f":pubkey: {pubkey}")

    created = format_date(metadata.created_at)
    if created:
        lines.append(f":created: {created}")
    if description:
        lines.append(f":description: {description}")
    if summary and summary != description:
        lines.append(f":summary: {summary}")

    return "\n".join(lines) + "\n\n"


def validate_and_fix(content: str, metadata: Optional[DocumentMetadata] = None) -> str:
    """
    Ensure ``content`` starts with a document header.

    Returns the content (without a leading byte order mark) when a level-0
    heading is present, otherwise the content with a synthesized header
    prepended.

    Raises:
        ValidationFailedError: If the content is empty or whitespace only.
    """
    if content and content.startswith(BYTE_ORDER_MARK):
        content = content[len(BYTE_ORDER_MARK):]

    if not content or not content.strip():
        raise ValidationFailedError(
            "AsciiDoc content is empty",
            component="validator",
            operation="validate_and_fix",
        )

    if has_document_header(content):
        return content

    metadata = metadata or DocumentMetadata()
    header = build_header(metadata)
    logger.info(
        "Added missing document header to AsciiDoc content",
        extra={
            "component": "validator",
            "fields": {
                "operation": "validate_and_fix",
                "added_title": header.splitlines()[0][2:],
                "added_authors": len(metadata.authors),
                "used_pubkey_as_author": not metadata.has_explicit_authors and bool(metadata.pubkey_identity),
                "added_version": metadata.version,
                "added_published_on": bool(metadata.published_on),
                "added_created_at": bool(metadata.created_at),
                "added_description": bool(metadata.description),
                "added_summary": bool(metadata.summary),
            },
        },
    )
    return header + content
