"""
Gatekeeper routing.

Total, deterministic routing over (doc_type, confidence, tax_year), plus the
hint maps that translate coarse gatekeeper types into canonical document
types. Routes are always recomputed from these rules, never cached, so a rule
change applies to every stored classification.
"""

from typing import Dict, Optional, Tuple, Union

from docengine.models import GatekeeperClassification, GatekeeperDocType, GatekeeperRoute


# Below this confidence every document goes to review
GATEKEEPER_MIN_CONFIDENCE = 0.80

TAX_RETURN_TYPES = frozenset({
    GatekeeperDocType.BUSINESS_TAX_RETURN,
    GatekeeperDocType.PERSONAL_TAX_RETURN,
})

CORE_TYPES = frozenset({
    GatekeeperDocType.BUSINESS_TAX_RETURN,
    GatekeeperDocType.PERSONAL_TAX_RETURN,
    GatekeeperDocType.W2,
    GatekeeperDocType.FORM_1099,
    GatekeeperDocType.K1,
})

STANDARD_TYPES = frozenset({
    GatekeeperDocType.BANK_STATEMENT,
    GatekeeperDocType.FINANCIAL_STATEMENT,
    GatekeeperDocType.PERSONAL_FINANCIAL_STATEMENT,
    GatekeeperDocType.DRIVERS_LICENSE,
    GatekeeperDocType.VOIDED_CHECK,
    GatekeeperDocType.OTHER,
})

# Review reason codes
REVIEW_UNKNOWN_TYPE = "UNKNOWN_TYPE"
REVIEW_LOW_CONFIDENCE = "LOW_CONFIDENCE"
REVIEW_MISSING_TAX_YEAR = "MISSING_TAX_YEAR"
REVIEW_UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
REVIEW_NO_OCR_NO_IMAGE = "NO_OCR_NO_IMAGE"
REVIEW_CLASSIFY_ERROR = "CLASSIFY_ERROR"

DocTypeLike = Union[GatekeeperDocType, str, None]


def _coerce(doc_type: DocTypeLike) -> Optional[GatekeeperDocType]:
    if isinstance(doc_type, GatekeeperDocType):
        return doc_type
    return GatekeeperDocType.from_string(doc_type)


def _decide(
    doc_type: DocTypeLike,
    confidence: float,
    tax_year: Optional[int],
) -> Tuple[GatekeeperRoute, Optional[str]]:
    dt = _coerce(doc_type)

    if dt == GatekeeperDocType.UNKNOWN:
        return GatekeeperRoute.NEEDS_REVIEW, REVIEW_UNKNOWN_TYPE
    if confidence < GATEKEEPER_MIN_CONFIDENCE:
        return GatekeeperRoute.NEEDS_REVIEW, REVIEW_LOW_CONFIDENCE
    if dt in TAX_RETURN_TYPES and tax_year is None:
        return GatekeeperRoute.NEEDS_REVIEW, REVIEW_MISSING_TAX_YEAR
    if dt in CORE_TYPES:
        return GatekeeperRoute.GOOGLE_DOC_AI_CORE, None
    if dt in STANDARD_TYPES:
        return GatekeeperRoute.STANDARD, None
    return GatekeeperRoute.NEEDS_REVIEW, REVIEW_UNSUPPORTED_TYPE


def compute_gatekeeper_route(
    doc_type: DocTypeLike,
    confidence: float,
    tax_year: Optional[int],
) -> GatekeeperRoute:
    """
    Route a classification.

    Order:
    1. UNKNOWN -> NEEDS_REVIEW
    2. confidence < 0.80 -> NEEDS_REVIEW
    3. business/personal tax return without a year -> NEEDS_REVIEW
    4. core types -> GOOGLE_DOC_AI_CORE
    5. standard allowlist -> STANDARD
    6. anything else -> NEEDS_REVIEW
    """
    return _decide(doc_type, confidence, tax_year)[0]


def review_reason_code(
    doc_type: DocTypeLike,
    confidence: float,
    tax_year: Optional[int],
) -> Optional[str]:
    """Reason code for a NEEDS_REVIEW route, None when routed onward."""
    return _decide(doc_type, confidence, tax_year)[1]


def route_classification(classification: GatekeeperClassification) -> GatekeeperRoute:
    return compute_gatekeeper_route(
        classification.doc_type, classification.confidence, classification.tax_year
    )


# ============================================================================
# Type Hint Maps
# ============================================================================

_CANONICAL_HINTS: Dict[GatekeeperDocType, Dict[str, str]] = {
    GatekeeperDocType.BUSINESS_TAX_RETURN: {
        "canonical_type_hint": "BUSINESS_TAX_RETURN", "routing_class_hint": "DOC_AI_ATOMIC"},
    GatekeeperDocType.PERSONAL_TAX_RETURN: {
        "canonical_type_hint": "PERSONAL_TAX_RETURN", "routing_class_hint": "DOC_AI_ATOMIC"},
    GatekeeperDocType.W2: {
        "canonical_type_hint": "PERSONAL_TAX_RETURN", "routing_class_hint": "DOC_AI_ATOMIC"},
    GatekeeperDocType.FORM_1099: {
        "canonical_type_hint": "PERSONAL_TAX_RETURN", "routing_class_hint": "DOC_AI_ATOMIC"},
    GatekeeperDocType.K1: {
        "canonical_type_hint": "PERSONAL_TAX_RETURN", "routing_class_hint": "DOC_AI_ATOMIC"},
    GatekeeperDocType.PERSONAL_FINANCIAL_STATEMENT: {
        "canonical_type_hint": "PFS", "routing_class_hint": "DOC_AI_ATOMIC"},
    GatekeeperDocType.FINANCIAL_STATEMENT: {
        "canonical_type_hint": "FINANCIAL_STATEMENT", "routing_class_hint": "GEMINI_PACKET"},
    GatekeeperDocType.BANK_STATEMENT: {
        "canonical_type_hint": "BANK_STATEMENT", "routing_class_hint": "GEMINI_STANDARD"},
    GatekeeperDocType.DRIVERS_LICENSE: {
        "canonical_type_hint": "ENTITY_DOCS", "routing_class_hint": "GEMINI_STANDARD"},
}

_DEFAULT_HINT = {"canonical_type_hint": "OTHER", "routing_class_hint": "GEMINI_STANDARD"}


def map_gatekeeper_to_canonical_hint(doc_type: DocTypeLike) -> Dict[str, str]:
    """Canonical type and routing class hints for a gatekeeper type."""
    dt = _coerce(doc_type)
    return dict(_CANONICAL_HINTS.get(dt, _DEFAULT_HINT)) if dt else dict(_DEFAULT_HINT)


_EFFECTIVE_TYPES: Dict[GatekeeperDocType, str] = {
    GatekeeperDocType.BUSINESS_TAX_RETURN: "BUSINESS_TAX_RETURN",
    GatekeeperDocType.PERSONAL_TAX_RETURN: "PERSONAL_TAX_RETURN",
    GatekeeperDocType.W2: "PERSONAL_TAX_RETURN",
    GatekeeperDocType.FORM_1099: "PERSONAL_TAX_RETURN",
    GatekeeperDocType.K1: "PERSONAL_TAX_RETURN",
    GatekeeperDocType.BANK_STATEMENT: "BANK_STATEMENT",
    GatekeeperDocType.FINANCIAL_STATEMENT: "FINANCIAL_STATEMENT",
    GatekeeperDocType.PERSONAL_FINANCIAL_STATEMENT: "PERSONAL_FINANCIAL_STATEMENT",
    GatekeeperDocType.DRIVERS_LICENSE: "ENTITY_DOCS",
}


def map_gatekeeper_doc_type_to_effective_doc_type(doc_type: DocTypeLike) -> str:
    """Effective document type for a gatekeeper type; unrecognized -> OTHER."""
    dt = _coerce(doc_type)
    if dt is None:
        return "OTHER"
    return _EFFECTIVE_TYPES.get(dt, "OTHER")
