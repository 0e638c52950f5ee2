"""Mention extraction: free text -> ordered, deduplicated mentions.

Pure functions with no I/O. Recognized syntax, in the priority order the
scans run in (a later scan never claims text an earlier one claimed):

1. ``[[Note Title]]`` / ``[[Note Title|shown text]]``  note links
2. ``@"Card Title"``                                   card links by title
3. ``@#collection-slug``                               collection links
4. ``@2025-03-10``                                     date links
5. ``@https://example.com/page`` / ``@example.com``    card links by URL
6. ``#tag``                                            tags

Calendar-invalid dates and empty bodies are plain text.
"""
import logging
import re
from typing import Callable, Iterator, List, Set, Tuple

from mention_graph.models.schema import URL_KEY_PREFIX, Mention, MentionForm, MentionKind
from mention_graph.utils import (
    normalize_slug,
    normalize_tag,
    normalize_title,
    normalize_url,
    parse_iso_date,
)

logger = logging.getLogger(__name__)

# [[Title]] or [[Title|Display Text]], single line, no nested brackets
_NOTE_LINK_PATTERN = re.compile(r"\[\[([^\[\]\n]+)\]\]")

# Every @-form must start a token, so e-mail addresses are not mentions
_AT = r"(?<![\w@])@"

_QUOTED_CARD_PATTERN = re.compile(_AT + r'"([^"\n]*)"')

_COLLECTION_PATTERN = re.compile(
    _AT + r"#([A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?)(?!\w)"
)

_DATE_PATTERN = re.compile(_AT + r"(\d{4}-\d{2}-\d{2})(?![\w-])")

_URL_CARD_PATTERN = re.compile(
    _AT
    + r"("
    + r"(?:https?://|www\.)[^\s<>\"'\[\]]+"
    + r"|(?:[A-Za-z0-9-]+\.)+[A-Za-z]{2,}(?:[/?#][^\s<>\"'\[\]]*)?"
    + r")"
)

_TAG_PATTERN = re.compile(r"(?<![\w/&#@])#(\w+)")

# Sentence punctuation that ends a bare URL rather than belonging to it
_URL_TRAILING = ".,;:!?)"

Span = Tuple[int, int, Mention]


def _scan_note_links(text: str) -> Iterator[Span]:
    for match in _NOTE_LINK_PATTERN.finditer(text):
        target = match.group(1).split("|", 1)[0].strip()
        if not target:
            continue
        yield match.start(), match.end(), Mention(
            kind=MentionKind.NOTE,
            raw_text=target,
            normalized_key=normalize_title(target),
        )


def _scan_quoted_cards(text: str) -> Iterator[Span]:
    for match in _QUOTED_CARD_PATTERN.finditer(text):
        title = match.group(1).strip()
        if not title:
            continue
        yield match.start(), match.end(), Mention(
            kind=MentionKind.CARD,
            raw_text=title,
            normalized_key=normalize_title(title),
            form=MentionForm.TITLE,
        )


def _scan_collections(text: str) -> Iterator[Span]:
    for match in _COLLECTION_PATTERN.finditer(text):
        slug = match.group(1)
        yield match.start(), match.end(), Mention(
            kind=MentionKind.COLLECTION,
            raw_text=slug,
            normalized_key=normalize_slug(slug),
        )


def _scan_dates(text: str) -> Iterator[Span]:
    for match in _DATE_PATTERN.finditer(text):
        value = match.group(1)
        parsed = parse_iso_date(value)
        if parsed is None:
            logger.debug(f"Ignoring invalid date mention '@{value}'")
            continue
        yield match.start(), match.end(), Mention(
            kind=MentionKind.DATE,
            raw_text=value,
            normalized_key=parsed.isoformat(),
        )


def _scan_url_cards(text: str) -> Iterator[Span]:
    for match in _URL_CARD_PATTERN.finditer(text):
        url = match.group(1)
        # Drop trailing punctuation, keeping ")" when the URL opened one
        while url and url[-1] in _URL_TRAILING:
            if url[-1] == ")" and url.count("(") >= url.count(")"):
                break
            url = url[:-1]
        key = normalize_url(url)
        if not key:
            continue
        yield match.start(), match.start(1) + len(url), Mention(
            kind=MentionKind.CARD,
            raw_text=url,
            normalized_key=URL_KEY_PREFIX + key,
            form=MentionForm.URL,
        )


def _scan_tags(text: str) -> Iterator[Span]:
    for match in _TAG_PATTERN.finditer(text):
        yield match.start(), match.end(), Mention(
            kind=MentionKind.TAG,
            raw_text=match.group(1),
            normalized_key=normalize_tag(match.group(1)),
        )


# Explicit bracketed/quoted forms first, bare heuristics last
_SCAN_ORDER: Tuple[Tuple[MentionKind, Callable[[str], Iterator[Span]]], ...] = (
    (MentionKind.NOTE, _scan_note_links),
    (MentionKind.CARD, _scan_quoted_cards),
    (MentionKind.COLLECTION, _scan_collections),
    (MentionKind.DATE, _scan_dates),
    (MentionKind.CARD, _scan_url_cards),
    (MentionKind.TAG, _scan_tags),
)

_unscanned = set(MentionKind) - {kind for kind, _ in _SCAN_ORDER}
if _unscanned:
    raise RuntimeError(
        f"No extractor registered for mention kinds: {sorted(k.value for k in _unscanned)}"
    )


def extract_mentions(text: str) -> List[Mention]:
    """Extract all mentions from text.

    Args:
        text: Raw note or bookmark content.

    Returns:
        Mentions in order of first appearance, one per (kind, normalized key).
        ``#Work ... #work`` yields a single ``work`` tag with raw text ``Work``.
    """
    if not text:
        return []

    claimed = bytearray(len(text))
    found: List[Span] = []

    for _kind, scan in _SCAN_ORDER:
        for start, end, mention in scan(text):
            if any(claimed[start:end]):
                continue
            claimed[start:end] = b"\x01" * (end - start)
            found.append((start, end, mention))

    found.sort(key=lambda span: span[0])

    seen: Set[Tuple[MentionKind, str]] = set()
    mentions: List[Mention] = []
    for _start, _end, mention in found:
        key = (mention.kind, mention.normalized_key)
        if key in seen:
            continue
        seen.add(key)
        mentions.append(mention)
    return mentions
