"""
Effective classification resolver.

The single COALESCE every consumer goes through for "the" type and year of a
document. Never stored; recomputed from the row on demand.

Type:   confirmed type > canonical/document type > AI type > UNKNOWN, each canonicalized
Year:   resolved document year > gatekeeper year > AI year > None
Source: CONFIRMED whenever a confirmation timestamp exists

The gatekeeper doc type is a routing signal only and never decides the type.
"""

from dataclasses import dataclass
from typing import Dict, Any, Optional

from docengine.models import SpineDocType
from state import DocumentRow


SOURCE_CONFIRMED = "CONFIRMED"
SOURCE_CANONICAL = "CANONICAL"
SOURCE_GATEKEEPER = "GATEKEEPER"
SOURCE_AI = "AI"
SOURCE_UNKNOWN = "UNKNOWN"

UNKNOWN_DOC_TYPE = "UNKNOWN"

CANONICAL_DOC_TYPES = frozenset({
    "BUSINESS_TAX_RETURN",
    "PERSONAL_TAX_RETURN",
    "PERSONAL_FINANCIAL_STATEMENT",
    "FINANCIAL_STATEMENT",
    "BANK_STATEMENT",
    "RENT_ROLL",
    "LEASE",
    "INSURANCE",
    "APPRAISAL",
    "ENTITY_DOCS",
    "OTHER",
})

_AI_TO_CANONICAL: Dict[SpineDocType, str] = {
    SpineDocType.IRS_BUSINESS: "BUSINESS_TAX_RETURN",
    SpineDocType.IRS_PERSONAL: "PERSONAL_TAX_RETURN",
    SpineDocType.K1: "PERSONAL_TAX_RETURN",
    SpineDocType.W2: "PERSONAL_TAX_RETURN",
    SpineDocType.FORM_1099: "PERSONAL_TAX_RETURN",
    SpineDocType.INCOME_STATEMENT: "FINANCIAL_STATEMENT",
    SpineDocType.BALANCE_SHEET: "FINANCIAL_STATEMENT",
    SpineDocType.PFS: "PERSONAL_FINANCIAL_STATEMENT",
    SpineDocType.PERSONAL_FINANCIAL_STATEMENT: "PERSONAL_FINANCIAL_STATEMENT",
    SpineDocType.ARTICLES: "ENTITY_DOCS",
    SpineDocType.OPERATING_AGREEMENT: "ENTITY_DOCS",
    SpineDocType.BYLAWS: "ENTITY_DOCS",
    SpineDocType.DRIVERS_LICENSE: "ENTITY_DOCS",
    SpineDocType.BANK_STATEMENT: "BANK_STATEMENT",
    SpineDocType.RENT_ROLL: "RENT_ROLL",
    SpineDocType.LEASE: "LEASE",
    SpineDocType.INSURANCE: "INSURANCE",
    SpineDocType.APPRAISAL: "APPRAISAL",
}


def to_canonical_doc_type(ai_doc_type: Optional[str]) -> str:
    """
    Map an AI (spine) doc type to the canonical document type.

    Canonical values pass through unchanged; anything unrecognized is OTHER.
    """
    if not ai_doc_type:
        return "OTHER"
    value = str(ai_doc_type).strip().upper()
    if value in CANONICAL_DOC_TYPES:
        return value
    if value == "PFS":
        return "PERSONAL_FINANCIAL_STATEMENT"
    return _AI_TO_CANONICAL.get(SpineDocType.from_string(value), "OTHER")


def _canonicalize_stored(doc_type: str) -> str:
    """Canonicalize a confirmed or stored type; unrecognized values are kept as written."""
    canonical = to_canonical_doc_type(doc_type)
    if canonical == "OTHER" and str(doc_type).strip().upper() != "OTHER":
        return str(doc_type).strip()
    return canonical


@dataclass(frozen=True)
class DocumentClassificationRow:
    """Exactly the fields the resolver reads from a document record."""
    confirmed_doc_type: Optional[str] = None
    confirmed_at: Optional[str] = None
    canonical_type: Optional[str] = None
    document_type: Optional[str] = None
    ai_doc_type: Optional[str] = None
    doc_year: Optional[int] = None
    gatekeeper_tax_year: Optional[int] = None
    ai_tax_year: Optional[int] = None

    @classmethod
    def from_record(cls, row: DocumentRow) -> "DocumentClassificationRow":
        return cls(
            confirmed_doc_type=row.get("confirmed_doc_type"),
            confirmed_at=row.get("confirmed_at"),
            canonical_type=row.get("canonical_type"),
            document_type=row.get("document_type"),
            ai_doc_type=row.get("ai_doc_type"),
            doc_year=row.get("doc_year"),
            gatekeeper_tax_year=row.get("gatekeeper_tax_year"),
            ai_tax_year=row.get("ai_tax_year"),
        )


@dataclass(frozen=True)
class ResolvedClassification:
    effective_doc_type: str
    effective_tax_year: Optional[int]
    source: str
    is_confirmed: bool
    year_source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "effective_doc_type": self.effective_doc_type,
            "effective_tax_year": self.effective_tax_year,
            "source": self.source,
            "is_confirmed": self.is_confirmed,
            "year_source": self.year_source,
        }


def resolve_effective_classification(row: DocumentClassificationRow) -> ResolvedClassification:
    """Resolve the effective type, year and source for one document."""
    if row.confirmed_doc_type:
        doc_type, source = _canonicalize_stored(row.confirmed_doc_type), SOURCE_CONFIRMED
    elif row.canonical_type or row.document_type:
        doc_type, source = _canonicalize_stored(row.canonical_type or row.document_type), SOURCE_CANONICAL
    elif row.ai_doc_type:
        doc_type, source = to_canonical_doc_type(row.ai_doc_type), SOURCE_AI
    else:
        doc_type, source = UNKNOWN_DOC_TYPE, SOURCE_UNKNOWN

    if row.doc_year is not None:
        year, year_source = row.doc_year, SOURCE_CANONICAL
    elif row.gatekeeper_tax_year is not None:
        year, year_source = row.gatekeeper_tax_year, SOURCE_GATEKEEPER
    elif row.ai_tax_year is not None:
        year, year_source = row.ai_tax_year, SOURCE_AI
    else:
        year, year_source = None, None

    is_confirmed = bool(row.confirmed_at)
    if is_confirmed:
        source = SOURCE_CONFIRMED

    return ResolvedClassification(
        effective_doc_type=str(doc_type),
        effective_tax_year=int(year) if year is not None else None,
        source=source,
        is_confirmed=is_confirmed,
        year_source=year_source,
    )


def resolve_record(row: DocumentRow) -> ResolvedClassification:
    return resolve_effective_classification(DocumentClassificationRow.from_record(row))
