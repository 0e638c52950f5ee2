"""Normalization helpers shared by extraction, resolution and record storage.

Every lookup key in the index is produced by one of these functions, so the
extractor and the record tables always agree on what "the same title" or
"the same URL" means.
"""
import datetime
import re
from typing import Optional


def normalize_title(text: str) -> str:
    """Normalize a note/card title for matching.

    Trims surrounding whitespace and case-folds. Inner whitespace is kept
    as written, so "Project  Plan" and "Project Plan" are different titles.

    Examples:
        "  Project Plan " -> "project plan"
        "STRASSE" -> "strasse"
    """
    if not text:
        return ""
    return text.strip().casefold()


def normalize_tag(text: str) -> str:
    """Normalize a tag name: strip one leading '#', trim, lower-case."""
    if not text:
        return ""
    value = text.strip()
    if value.startswith("#"):
        value = value[1:]
    return value.strip().lower()


def normalize_slug(text: str) -> str:
    """Normalize a collection slug (lower-case, trimmed, leading '#' dropped)."""
    return normalize_tag(text)


def normalize_url(url: str) -> str:
    """Normalize a URL into a lookup key.

    - Drops the scheme and a leading ``www.``
    - Lower-cases the host (the path keeps its case)
    - Drops trailing slashes

    Examples:
        "https://www.Example.com/Docs/" -> "example.com/Docs"
        "example.com" -> "example.com"
    """
    if not url:
        return ""
    value = url.strip()
    value = re.sub(r"^[a-zA-Z][a-zA-Z0-9+.-]*://", "", value)
    host, sep, rest = value.partition("/")
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    value = f"{host}{sep}{rest}".rstrip("/")
    return value


def parse_iso_date(value: str) -> Optional[datetime.date]:
    """Parse a strict ``YYYY-MM-DD`` string.

    Returns:
        The date, or None when the string is not a valid calendar date.
    """
    if not value or not re.fullmatch(r"\d{4}-\d{2}-\d{2}", value.strip()):
        return None
    try:
        return datetime.date.fromisoformat(value.strip())
    except ValueError:
        return None

