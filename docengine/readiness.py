"""
Readiness (fact-matching) engine.

Compares a scenario's required document set against a deal's classified
documents. Pure: same requirements and rows always give the same result.

- Documents flagged for review are counted, never matched.
- Years are matched exactly and deduplicated per category.
- A required year with no exact match reports the closest present year of
  the same category as a near-miss; near-misses never count toward readiness.
- readiness_pct = matched eligible / required eligible x 100 (100 when
  nothing is required); ready = 100% and nothing awaiting review.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Dict, Any, Optional, Sequence, Union

from docengine.resolver import resolve_record
from docengine.routing import map_gatekeeper_doc_type_to_effective_doc_type
from document_store import DocumentStore
from state import DealState, DocumentRow, IntakeScenario


# W-2, 1099 and K-1 fold into PERSONAL_TAX_RETURN through
# map_gatekeeper_doc_type_to_effective_doc_type and satisfy personal years.
BUSINESS_TAX_RETURN = "BUSINESS_TAX_RETURN"
PERSONAL_TAX_RETURN = "PERSONAL_TAX_RETURN"
FINANCIAL_STATEMENT = "FINANCIAL_STATEMENT"
PERSONAL_FINANCIAL_STATEMENT = "PERSONAL_FINANCIAL_STATEMENT"

# Returns for year N are due April 15 of N+1
FILING_DEADLINE = (4, 15)
REQUIRED_TAX_YEAR_COUNT = 3

UNKNOWN_REVIEW_REASON = "UNKNOWN"

DateLike = Union[date, datetime]


# ============================================================================
# Requirements
# ============================================================================

@dataclass(frozen=True)
class ScenarioRequirements:
    business_tax_years: List[int] = field(default_factory=list)
    personal_tax_years: List[int] = field(default_factory=list)
    requires_financial_statements: bool = False
    requires_pfs: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "business_tax_years": list(self.business_tax_years),
            "personal_tax_years": list(self.personal_tax_years),
            "requires_financial_statements": self.requires_financial_statements,
            "requires_pfs": self.requires_pfs,
        }


def last_filed_tax_year(now: DateLike) -> int:
    """Most recent tax year whose return is due as of `now`."""
    if (now.month, now.day) >= FILING_DEADLINE:
        return now.year - 1
    return now.year - 2


def compute_tax_years(now: DateLike, count: int = REQUIRED_TAX_YEAR_COUNT) -> List[int]:
    """Consecutive tax years counting back from the last filed year."""
    latest = last_filed_tax_year(now)
    return [latest - i for i in range(count)]


def derive_scenario_requirements(scenario: IntakeScenario, now: Optional[DateLike] = None) -> ScenarioRequirements:
    """
    Derive the required document set from an intake scenario.

    Business returns only when the scenario has them; personal returns and
    the PFS are always required; financial statements when the scenario
    has them.
    """
    years = compute_tax_years(now or date.today())
    return ScenarioRequirements(
        business_tax_years=list(years) if scenario.get("has_business_tax_returns") else [],
        personal_tax_years=list(years),
        requires_financial_statements=bool(scenario.get("has_financial_statements")),
        requires_pfs=True,
    )


# ============================================================================
# Documents
# ============================================================================

@dataclass(frozen=True)
class ReadinessDocument:
    """A classified document as the readiness engine sees it."""
    doc_type: Optional[str]
    tax_year: Optional[int] = None
    needs_review: bool = False
    review_reason_code: Optional[str] = None

    @classmethod
    def from_gatekeeper_row(cls, row: DocumentRow) -> "ReadinessDocument":
        return cls(
            doc_type=row.get("gatekeeper_doc_type"),
            tax_year=row.get("gatekeeper_tax_year"),
            needs_review=bool(row.get("gatekeeper_needs_review", False)),
            review_reason_code=row.get("gatekeeper_review_reason_code"),
        )

    @classmethod
    def from_resolved(cls, row: DocumentRow) -> "ReadinessDocument":
        """Type and year from the effective resolver; a human confirmation clears review."""
        resolved = resolve_record(row)
        return cls(
            doc_type=resolved.effective_doc_type,
            tax_year=resolved.effective_tax_year,
            needs_review=bool(row.get("gatekeeper_needs_review", False)) and not resolved.is_confirmed,
            review_reason_code=row.get("gatekeeper_review_reason_code"),
        )


# ============================================================================
# Result
# ============================================================================

@dataclass
class NearMiss:
    category: str
    required_year: int
    present_year: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "required_year": self.required_year,
            "present_year": self.present_year,
        }


@dataclass
class GatekeeperReadinessResult:
    required: ScenarioRequirements
    present_business_tax_years: List[int]
    present_personal_tax_years: List[int]
    financial_statements_present: bool
    pfs_present: bool
    missing_business_tax_years: List[int]
    missing_personal_tax_years: List[int]
    financial_statements_missing: bool
    pfs_missing: bool
    near_misses: List[NearMiss]
    needs_review_count: int
    needs_review_reasons: Dict[str, int]
    readiness_pct: int
    ready: bool

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "required": self.required.to_dict(),
            "present": {
                "business_tax_years": list(self.present_business_tax_years),
                "personal_tax_years": list(self.present_personal_tax_years),
                "financial_statements_present": self.financial_statements_present,
                "pfs_present": self.pfs_present,
            },
            "missing": {
                "business_tax_years": list(self.missing_business_tax_years),
                "personal_tax_years": list(self.missing_personal_tax_years),
                "financial_statements_missing": self.financial_statements_missing,
                "pfs_missing": self.pfs_missing,
            },
            "near_misses": [n.to_dict() for n in self.near_misses],
            "needs_review_count": self.needs_review_count,
            "needs_review_reasons": dict(self.needs_review_reasons),
            "readiness_pct": self.readiness_pct,
            "ready": self.ready,
        }


def _closest_year(target: int, candidates: Sequence[int]) -> Optional[int]:
    """Closest candidate to target; ties go to the more recent year."""
    if not candidates:
        return None
    return min(candidates, key=lambda y: (abs(y - target), -y))


def _near_misses(category: str, missing: List[int], present_years: Sequence[int]) -> List[NearMiss]:
    misses = []
    for year in missing:
        closest = _closest_year(year, present_years)
        if closest is not None:
            misses.append(NearMiss(category=category, required_year=year, present_year=closest))
    return misses


def compute_gatekeeper_readiness(
    requirements: ScenarioRequirements,
    documents: Sequence[ReadinessDocument],
) -> GatekeeperReadinessResult:
    """Match documents against requirements."""
    usable = [d for d in documents if not d.needs_review]
    review = [d for d in documents if d.needs_review]

    years_by_type: Dict[str, set] = {}
    types_present = set()
    for doc in usable:
        effective = map_gatekeeper_doc_type_to_effective_doc_type(doc.doc_type)
        types_present.add(effective)
        if doc.tax_year is not None:
            years_by_type.setdefault(effective, set()).add(int(doc.tax_year))

    business_years = years_by_type.get(BUSINESS_TAX_RETURN, set())
    personal_years = years_by_type.get(PERSONAL_TAX_RETURN, set())

    present_business = [y for y in requirements.business_tax_years if y in business_years]
    missing_business = [y for y in requirements.business_tax_years if y not in business_years]
    present_personal = [y for y in requirements.personal_tax_years if y in personal_years]
    missing_personal = [y for y in requirements.personal_tax_years if y not in personal_years]

    fs_present = FINANCIAL_STATEMENT in types_present
    pfs_present = PERSONAL_FINANCIAL_STATEMENT in types_present
    fs_missing = requirements.requires_financial_statements and not fs_present
    pfs_missing = requirements.requires_pfs and not pfs_present

    eligible = (
        len(requirements.business_tax_years)
        + len(requirements.personal_tax_years)
        + (1 if requirements.requires_financial_statements else 0)
        + (1 if requirements.requires_pfs else 0)
    )
    matched = (
        len(present_business)
        + len(present_personal)
        + (1 if requirements.requires_financial_statements and fs_present else 0)
        + (1 if requirements.requires_pfs and pfs_present else 0)
    )
    readiness_pct = 100 if eligible == 0 else int(matched * 100 / eligible + 0.5)

    near_misses = (
        _near_misses(BUSINESS_TAX_RETURN, missing_business, sorted(business_years, reverse=True))
        + _near_misses(PERSONAL_TAX_RETURN, missing_personal, sorted(personal_years, reverse=True))
    )

    reasons = Counter(d.review_reason_code or UNKNOWN_REVIEW_REASON for d in review)

    return GatekeeperReadinessResult(
        required=requirements,
        present_business_tax_years=present_business,
        present_personal_tax_years=present_personal,
        financial_statements_present=fs_present,
        pfs_present=pfs_present,
        missing_business_tax_years=missing_business,
        missing_personal_tax_years=missing_personal,
        financial_statements_missing=fs_missing,
        pfs_missing=pfs_missing,
        near_misses=near_misses,
        needs_review_count=len(review),
        needs_review_reasons=dict(reasons),
        readiness_pct=readiness_pct,
        ready=readiness_pct == 100 and not review,
    )


def compute_readiness(
    deal_id: str,
    store: DocumentStore,
    scenario: Optional[IntakeScenario] = None,
    now: Optional[DateLike] = None,
) -> GatekeeperReadinessResult:
    """Readiness of a stored deal, read-only."""
    requirements = derive_scenario_requirements(scenario or {}, now)
    documents = [ReadinessDocument.from_resolved(row) for row in store.list_documents(deal_id)]
    return compute_gatekeeper_readiness(requirements, documents)


# ============================================================================
# Graph Node
# ============================================================================

def readiness_node(state: DealState) -> dict:
    """
    Node: Readiness

    Evaluates the deal's documents against its scenario requirements.

    Returns:
        dict with readiness and status
    """
    print("--- NODE: Readiness ---")

    as_of = state.get("as_of")
    now = date.fromisoformat(as_of) if as_of else None
    requirements = derive_scenario_requirements(state.get("scenario") or {}, now)

    documents = [ReadinessDocument.from_resolved(doc) for doc in state.get("documents", [])]
    result = compute_gatekeeper_readiness(requirements, documents)

    print(f"   Readiness: {result.readiness_pct}% "
          f"(missing business {result.missing_business_tax_years}, "
          f"personal {result.missing_personal_tax_years}, "
          f"{result.needs_review_count} awaiting review)")
    for miss in result.near_misses:
        print(f"   Near-miss: {miss.category} {miss.required_year} required, {miss.present_year} present")

    return {
        "readiness": result.to_dict(),
        "status": "Ready" if result.ready else "Needs_Review",
    }
