"""
Tier 1 anchor matcher.

High-precision form headers and structural anchors. Rules are tried in the
fixed order of ANCHOR_RULES; the first match is authoritative and no later
tier runs for that document.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Pattern, Sequence, Tuple

from docengine.models import (
    EVIDENCE_FORM_MATCH,
    EVIDENCE_KEYWORD_MATCH,
    EvidenceItem,
    NormalizedDocument,
    SpineDocType,
    Tier1Result,
)
from docengine.text_utils import extract_form_numbers, extract_tax_year

logger = logging.getLogger(__name__)


TIER1_MIN_CONFIDENCE = 0.90
TIER1_MAX_CONFIDENCE = 0.99


class AnchorKind(Enum):
    """
    FORM anchors match against full text.
    STRUCTURAL anchors match against the first two pages and need
    corroborating secondary patterns.
    """
    FORM = "form"
    STRUCTURAL = "structural"


@dataclass(frozen=True)
class AnchorRule:
    """A single Tier 1 anchor definition."""
    anchor_id: str
    kind: AnchorKind
    primary_pattern: Pattern
    doc_type: SpineDocType
    confidence: float
    entity_type: Optional[str] = None
    secondary_patterns: Tuple[Pattern, ...] = ()
    secondary_min_match: int = 0

    def search_window(self, doc: NormalizedDocument) -> str:
        if self.kind == AnchorKind.FORM:
            return doc.full_text
        return doc.first_two_pages_text


def _rx(pattern: str) -> Pattern:
    return re.compile(pattern, re.IGNORECASE)


# ============================================================================
# Anchor Rules (priority order)
# ============================================================================

ANCHOR_RULES: Tuple[AnchorRule, ...] = (
    # K-1 schedules carry "(Form 1065)" / "(Form 1120-S)" in their header, so
    # this must run before every return rule.
    AnchorRule(
        anchor_id="K1_SCHEDULE_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Schedule\s+K-?1\b"),
        doc_type=SpineDocType.K1,
        confidence=0.97,
        entity_type="personal",
    ),
    # Transcript requests and authorizations list the return forms they cover;
    # they must run before the return rules.
    AnchorRule(
        anchor_id="IRS_4506_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Form\s+4506-?(?:C|T|EZ)\b"),
        doc_type=SpineDocType.TAX_TRANSCRIPT_REQUEST,
        confidence=0.96,
    ),
    AnchorRule(
        anchor_id="IRS_8821_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Form\s+8821\b"),
        doc_type=SpineDocType.TAX_AUTH,
        confidence=0.95,
    ),
    AnchorRule(
        anchor_id="IRS_2848_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Form\s+2848\b"),
        doc_type=SpineDocType.TAX_AUTH,
        confidence=0.95,
    ),
    # "Form 1040-SR" also satisfies the generic 1040 header.
    AnchorRule(
        anchor_id="IRS_1040SR_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Form\s+1040-?SR\b"),
        doc_type=SpineDocType.IRS_PERSONAL,
        confidence=0.99,
        entity_type="personal",
    ),
    AnchorRule(
        anchor_id="IRS_1040_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Form\s+1040\b"),
        doc_type=SpineDocType.IRS_PERSONAL,
        confidence=0.99,
        entity_type="personal",
    ),
    AnchorRule(
        anchor_id="IRS_1040_TITLE",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"U\.?\s?S\.?\s+Individual\s+Income\s+Tax\s+Return"),
        doc_type=SpineDocType.IRS_PERSONAL,
        confidence=0.95,
        entity_type="personal",
    ),
    # "Form 1120-S" also satisfies the generic 1120 header.
    AnchorRule(
        anchor_id="IRS_1120S_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Form\s+1120-?S\b"),
        doc_type=SpineDocType.IRS_BUSINESS,
        confidence=0.97,
        entity_type="business",
    ),
    AnchorRule(
        anchor_id="IRS_1120_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Form\s+1120\b"),
        doc_type=SpineDocType.IRS_BUSINESS,
        confidence=0.97,
        entity_type="business",
    ),
    AnchorRule(
        anchor_id="IRS_1065_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Form\s+1065\b"),
        doc_type=SpineDocType.IRS_BUSINESS,
        confidence=0.97,
        entity_type="business",
    ),
    AnchorRule(
        anchor_id="IRS_W2_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Form\s+W-?2\b|\bW-2\s+Wage\s+and\s+Tax\s+Statement"),
        doc_type=SpineDocType.W2,
        confidence=0.96,
        entity_type="personal",
    ),
    AnchorRule(
        anchor_id="IRS_1099_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"Form\s+1099\b"),
        doc_type=SpineDocType.FORM_1099,
        confidence=0.95,
        entity_type="personal",
    ),
    AnchorRule(
        anchor_id="SBA_1919_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"SBA\s+Form\s+1919\b"),
        doc_type=SpineDocType.SBA_APPLICATION,
        confidence=0.95,
        entity_type="business",
    ),
    AnchorRule(
        anchor_id="SBA_413_FORM_HEADER",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"SBA\s+Form\s+413\b"),
        doc_type=SpineDocType.PERSONAL_FINANCIAL_STATEMENT,
        confidence=0.95,
        entity_type="personal",
    ),
    AnchorRule(
        anchor_id="ACORD_INSURANCE_CERT",
        kind=AnchorKind.FORM,
        primary_pattern=_rx(r"\bACORD\s+(?:25|27|28)\b"),
        doc_type=SpineDocType.INSURANCE,
        confidence=0.94,
    ),
    # Structural anchors run after every form rule: a return that happens to
    # include balance sheet lines (Schedule L) is still a return.
    AnchorRule(
        anchor_id="BALANCE_SHEET_STRUCTURAL",
        kind=AnchorKind.STRUCTURAL,
        primary_pattern=_rx(r"\bbalance\s+sheet\b|statement\s+of\s+financial\s+position"),
        doc_type=SpineDocType.BALANCE_SHEET,
        confidence=0.92,
        entity_type="business",
        secondary_patterns=(_rx(r"total\s+assets"), _rx(r"total\s+liabilities")),
        secondary_min_match=2,
    ),
    AnchorRule(
        anchor_id="INCOME_STMT_STRUCTURAL",
        kind=AnchorKind.STRUCTURAL,
        primary_pattern=_rx(
            r"income\s+statement|profit\s+(?:and|&)\s+loss|statement\s+of\s+operations"
        ),
        doc_type=SpineDocType.INCOME_STATEMENT,
        confidence=0.92,
        entity_type="business",
        secondary_patterns=(
            _rx(r"\b(?:revenue|sales)\b"),
            _rx(r"\bexpenses?\b"),
            _rx(r"\bnet\s+(?:income|profit)\b"),
        ),
        secondary_min_match=2,
    ),
    AnchorRule(
        anchor_id="BANK_STMT_STRUCTURAL",
        kind=AnchorKind.STRUCTURAL,
        primary_pattern=_rx(r"beginning\s+balance"),
        doc_type=SpineDocType.BANK_STATEMENT,
        confidence=0.91,
        secondary_patterns=(_rx(r"ending\s+balance"),),
        secondary_min_match=1,
    ),
)


# ============================================================================
# Matching
# ============================================================================

def _match_rule(rule: AnchorRule, doc: NormalizedDocument) -> Optional[List[EvidenceItem]]:
    """Return evidence if the rule matches, else None."""
    window = rule.search_window(doc)
    primary = rule.primary_pattern.search(window)
    if not primary:
        return None

    evidence_type = EVIDENCE_FORM_MATCH if rule.kind == AnchorKind.FORM else EVIDENCE_KEYWORD_MATCH
    evidence = [
        EvidenceItem(
            type=evidence_type,
            anchor_id=rule.anchor_id,
            matched_text=primary.group(0),
            confidence=rule.confidence,
        )
    ]

    if rule.secondary_patterns:
        secondary_hits = []
        for pattern in rule.secondary_patterns:
            hit = pattern.search(window)
            if hit:
                secondary_hits.append(hit.group(0))
        if len(secondary_hits) < rule.secondary_min_match:
            return None
        for text in secondary_hits:
            evidence.append(
                EvidenceItem(
                    type=EVIDENCE_KEYWORD_MATCH,
                    anchor_id=f"{rule.anchor_id}:secondary",
                    matched_text=text,
                    confidence=rule.confidence,
                )
            )

    return evidence


def run_tier1_anchors(
    doc: NormalizedDocument,
    rules: Sequence[AnchorRule] = ANCHOR_RULES,
) -> Tier1Result:
    """
    Run anchor rules in priority order; the first match wins.

    Args:
        doc: Normalized document
        rules: Rule list, ANCHOR_RULES by default

    Returns:
        Tier1Result (matched=False with empty evidence when nothing hits)
    """
    for rule in rules:
        evidence = _match_rule(rule, doc)
        if evidence is None:
            continue

        logger.debug(f"Tier 1 anchor {rule.anchor_id} matched artifact {doc.artifact_id}")
        return Tier1Result(
            matched=True,
            doc_type=rule.doc_type,
            confidence=rule.confidence,
            anchor_id=rule.anchor_id,
            evidence=evidence,
            form_numbers=extract_form_numbers(doc.full_text),
            tax_year=extract_tax_year(doc.full_text),
            entity_type=rule.entity_type,
        )

    return Tier1Result(matched=False)
