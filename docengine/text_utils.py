"""
Text helpers shared by the classification tiers.
"""

import re
from typing import List, Optional, Tuple, Pattern


TAX_YEAR_EXPLICIT_PATTERN = re.compile(
    r"(?:tax\s+year|for\s+(?:the\s+)?year(?:\s+ended)?)\s*:?\s*(20[12]\d)",
    re.IGNORECASE,
)
TAX_YEAR_CALENDAR_PATTERN = re.compile(r"(?:december\s+31|12/31)[,\s]+(\d{4})", re.IGNORECASE)
TAX_YEAR_BARE_PATTERN = re.compile(r"\b(20[12]\d)\b")

FORM_NUMBER_PATTERNS: List[Tuple[Pattern, str]] = [
    (re.compile(r"Form\s+1040", re.IGNORECASE), "1040"),
    (re.compile(r"Form\s+1120S\b", re.IGNORECASE), "1120S"),
    (re.compile(r"Form\s+1120\b", re.IGNORECASE), "1120"),
    (re.compile(r"Form\s+1065", re.IGNORECASE), "1065"),
    (re.compile(r"Schedule\s+K-?1", re.IGNORECASE), "K-1"),
    (re.compile(r"Schedule\s+C\b", re.IGNORECASE), "Schedule C"),
    (re.compile(r"Schedule\s+E\b", re.IGNORECASE), "Schedule E"),
    (re.compile(r"Form\s+W-?2", re.IGNORECASE), "W-2"),
    (re.compile(r"Form\s+1099", re.IGNORECASE), "1099"),
]


def extract_tax_year(text: str) -> Optional[int]:
    """
    Find the tax year a document covers.

    Checks an explicit "Tax Year 2023" / "For the year ended 2023" phrase,
    then a calendar year-end date, then the most recent 2010-2029 year in
    the first 500 characters.
    """
    head = (text or "")[:2000]

    explicit = TAX_YEAR_EXPLICIT_PATTERN.search(head)
    if explicit:
        return int(explicit.group(1))

    calendar = TAX_YEAR_CALENDAR_PATTERN.search(head)
    if calendar:
        return int(calendar.group(1))

    years = [int(y) for y in TAX_YEAR_BARE_PATTERN.findall(head[:500])]
    if years:
        return max(years)

    return None


def extract_form_numbers(text: str) -> List[str]:
    """Collect IRS form numbers mentioned in the first 3000 characters."""
    head = (text or "")[:3000]
    forms: List[str] = []
    for pattern, name in FORM_NUMBER_PATTERNS:
        if pattern.search(head) and name not in forms:
            forms.append(name)
    return forms
