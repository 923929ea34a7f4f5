"""
Document normalizer.

Turns raw extracted text plus filename/MIME type into a NormalizedDocument:
page estimate, first-page and first-two-pages windows, detected years and a
table-structure flag. Pure and total; malformed or empty input still yields
a document.
"""

import math
import re
from typing import List, Optional, Tuple

from docengine.models import NormalizedDocument


# Nominal characters per page when no page boundaries are present
NOMINAL_PAGE_CHARS = 3000

# A form-feed boundary is only trusted within this multiple of a nominal page
PAGE_BOUNDARY_TOLERANCE = 1.5

FORM_FEED = "\f"

PAGE_MARKER_PATTERN = re.compile(r"\bpage\s+\d+(?:\s+of\s+\d+)?\b", re.IGNORECASE)
YEAR_PATTERN = re.compile(r"\b(20\d{2})\b")
SAME_LINE_MULTI_YEAR_PATTERN = re.compile(r"\b20\d{2}\b.*\b20\d{2}\b")

# Table detection: lines with at least this many tab/pipe separators
TABLE_SEPARATOR_MIN = 2
TABLE_LINE_MIN = 5


def estimate_page_count(text: str) -> int:
    """
    Estimate page count.

    Order: form feeds + 1, then "Page N (of M)" markers when more than one,
    then ceil(len / 3000) with a floor of 1.
    """
    form_feeds = text.count(FORM_FEED)
    if form_feeds > 0:
        return form_feeds + 1

    markers = PAGE_MARKER_PATTERN.findall(text)
    if len(markers) > 1:
        return len(markers)

    return max(1, math.ceil(len(text) / NOMINAL_PAGE_CHARS))


def _page_boundaries(text: str, limit: int) -> List[int]:
    """Offsets of form feeds, stopping at the first one beyond its page tolerance."""
    boundaries: List[int] = []
    max_page_chars = int(NOMINAL_PAGE_CHARS * PAGE_BOUNDARY_TOLERANCE)
    start = 0
    while len(boundaries) < limit:
        idx = text.find(FORM_FEED, start)
        if idx < 0 or idx - start > max_page_chars:
            break
        boundaries.append(idx)
        start = idx + 1
    return boundaries


def extract_page_windows(text: str) -> Tuple[str, str]:
    """Return (first page, first two pages) windows of the text."""
    boundaries = _page_boundaries(text, 2)

    if boundaries and boundaries[0] > 0:
        first_page = text[:boundaries[0]]
    else:
        first_page = text[:NOMINAL_PAGE_CHARS]

    if len(boundaries) >= 2:
        first_two = text[:boundaries[1]]
    elif len(boundaries) == 1:
        # Second page runs to the end of text, or to one tolerated page length
        max_page_chars = int(NOMINAL_PAGE_CHARS * PAGE_BOUNDARY_TOLERANCE)
        first_two = text[:boundaries[0] + 1 + max_page_chars]
    else:
        first_two = text[:NOMINAL_PAGE_CHARS * 2]

    return first_page, first_two


def detect_years(text: str) -> Tuple[int, ...]:
    """All 20xx years in the text, deduplicated, most recent first."""
    return tuple(sorted({int(y) for y in YEAR_PATTERN.findall(text)}, reverse=True))


def has_table_like_structure(window: str) -> bool:
    """
    Detect tabular layout.

    True when at least five lines carry two or more tab/pipe separators, or
    any line holds two 20xx years (multi-year column headers).
    """
    separated_lines = 0
    for line in window.splitlines():
        if line.count("\t") + line.count("|") >= TABLE_SEPARATOR_MIN:
            separated_lines += 1
            if separated_lines >= TABLE_LINE_MIN:
                return True
        if SAME_LINE_MULTI_YEAR_PATTERN.search(line):
            return True
    return False


def normalize_document(
    artifact_id: str,
    text: Optional[str],
    filename: Optional[str],
    mime_type: Optional[str],
) -> NormalizedDocument:
    """
    Build the immutable document view used by every classification tier.

    Args:
        artifact_id: Identifier carried through for logging and audit
        text: Raw extracted text (None is treated as empty)
        filename: Original filename
        mime_type: MIME type, if known

    Returns:
        NormalizedDocument
    """
    full_text = text or ""
    first_page, first_two = extract_page_windows(full_text)

    return NormalizedDocument(
        artifact_id=artifact_id,
        filename=filename or "",
        mime_type=mime_type,
        page_count=estimate_page_count(full_text),
        first_page_text=first_page,
        first_two_pages_text=first_two,
        full_text=full_text,
        detected_years=detect_years(full_text),
        has_table_like_structure=has_table_like_structure(first_two),
    )
