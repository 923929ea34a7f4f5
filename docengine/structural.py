"""
Tier 2 structural matcher.

Layout heuristics for table-shaped documents that lack a clean form header:
rent rolls, personal financial statements, multi-year and monthly operating
statements, bank transaction logs, voided checks, debt schedules and AR
aging reports. Confidence 0.75-0.89. Never overrides Tier 1.

Operating statements of any period map to INCOME_STATEMENT.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

from docengine.models import (
    EVIDENCE_STRUCTURAL_MATCH,
    EvidenceItem,
    NormalizedDocument,
    SpineDocType,
    Tier2Result,
)


TIER2_MIN_CONFIDENCE = 0.75
TIER2_MAX_CONFIDENCE = 0.89

IGNORE_CASE = re.IGNORECASE


@dataclass(frozen=True)
class StructuralPattern:
    """A Tier 2 detector: returns signal descriptions on match, else None."""
    pattern_id: str
    doc_type: SpineDocType
    confidence: float
    detect: Callable[[NormalizedDocument], Optional[List[str]]]


def _count_hits(text: str, patterns: Sequence[str], signals: List[str], label: str) -> int:
    hits = 0
    for pattern in patterns:
        if re.search(pattern, text, IGNORE_CASE):
            hits += 1
            signals.append(f"{label}: {pattern}")
    return hits


# ============================================================================
# Detectors
# ============================================================================

RENT_ROLL_COLUMNS = [
    r"tenant",
    r"(?:sq\.?\s*ft|square\s*feet|sqft)",
    r"(?:monthly\s+)?rent",
    r"(?:lease\s+)?(?:expir|end|term)",
    r"unit\s*(?:#|no|num)",
]


def detect_rent_roll(doc: NormalizedDocument) -> Optional[List[str]]:
    """Tenant table: 3+ column headers and 3+ rows with dollar amounts."""
    text = doc.first_two_pages_text
    signals: List[str] = []

    if _count_hits(text, RENT_ROLL_COLUMNS, signals, "Column header") < 3:
        return None

    rows_with_dollar = sum(1 for line in text.split("\n") if re.search(r"\$\s*[\d,]+", line))
    if rows_with_dollar >= 3:
        signals.append(f"{rows_with_dollar} rows with dollar amounts")
        return signals

    return None


PFS_PERSONAL_INDICATORS = (
    r"(?:contingent\s+liabilities|life\s+insurance|annual\s+(?:income|salary)"
    r"|other\s+personal\s+property|installment\s+account|notes\s+payable\s+to\s+banks"
    r"|guarantor|statement\s+of\s+personal|spouse|joint\s+(?:assets|statement)"
    r"|social\s+security|(?:date\s+of\s+birth|DOB)|(?:home|primary)\s+(?:address|residence)"
    r"|IRA|retirement\s+account|401\s*\(?\s*k\s*\)?|auto(?:mobile)?\s+(?:loan|value)"
    r"|cash\s+surrender\s+value)"
)


def detect_pfs(doc: NormalizedDocument) -> Optional[List[str]]:
    """
    Personal financial statement.

    Matches on any of:
    1. assets + liabilities + net worth
    2. PFS / SBA 413 title + assets or liabilities
    3. assets + liabilities + personal-only indicators
    4. PFS / SBA 413 title + personal-only indicators
    """
    text = doc.first_two_pages_text
    signals: List[str] = []

    has_assets = bool(re.search(r"(?:personal\s+)?assets|cash\s+(?:on\s+)?hand|savings?\s+account", text, IGNORE_CASE))
    has_liabilities = bool(re.search(r"(?:personal\s+)?liabilities|(?:mortgage|loan)\s+(?:balance|payable)", text, IGNORE_CASE))
    has_net_worth = bool(re.search(r"net\s+worth", text, IGNORE_CASE))
    has_pfs_title = bool(re.search(r"personal\s+financial\s+statement", text, IGNORE_CASE))
    has_sba_413 = bool(re.search(r"SBA\s+(?:Form\s+)?413", text, IGNORE_CASE))
    has_personal = bool(re.search(PFS_PERSONAL_INDICATORS, text, IGNORE_CASE))

    if has_assets:
        signals.append("Assets section detected")
    if has_liabilities:
        signals.append("Liabilities section detected")
    if has_net_worth:
        signals.append("Net Worth line detected")
    if has_pfs_title:
        signals.append("PFS title detected")
    if has_sba_413:
        signals.append("SBA Form 413 detected")
    if has_personal:
        signals.append("Personal financial indicators detected")

    titled = has_pfs_title or has_sba_413
    if has_assets and has_liabilities and has_net_worth:
        return signals
    if titled and (has_assets or has_liabilities):
        return signals
    if has_assets and has_liabilities and has_personal:
        return signals
    if titled and has_personal:
        return signals

    return None


PL_LINE_ITEMS = [
    r"(?:total\s+)?(?:revenue|sales|income)",
    r"(?:cost\s+of\s+(?:goods\s+)?sold|cogs)",
    r"gross\s+(?:profit|margin)",
    r"(?:operating\s+)?(?:expenses?|costs?)",
    r"net\s+(?:income|loss|profit|operating)",
]


def detect_multi_year_pl(doc: NormalizedDocument) -> Optional[List[str]]:
    """Adjacent year columns plus 2+ P&L line items."""
    text = doc.first_two_pages_text
    signals: List[str] = []

    year_row = re.search(r"\b(20[12]\d)\s+(?:\|?\s*)(20[12]\d)\b", text)
    if not year_row:
        return None
    signals.append(f"Adjacent year columns: {year_row.group(1)}, {year_row.group(2)}")

    if _count_hits(text, PL_LINE_ITEMS, signals, "P&L line") >= 2:
        return signals
    return None


MONTH_COLUMNS = r"(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)"
QUARTER_COLUMNS = r"(?:Q[1-4]|1st\s+qtr|2nd\s+qtr|3rd\s+qtr|4th\s+qtr)"
OPERATING_CATEGORIES = [
    r"(?:rental\s+)?income",
    r"(?:operating\s+)?expenses?",
    r"(?:net\s+operating\s+income|NOI)",
    r"(?:vacancy|management\s+fee|maintenance|utilities|insurance|taxes)",
]


def detect_operating_statement(doc: NormalizedDocument) -> Optional[List[str]]:
    """Monthly or quarterly columns plus 2+ income/expense categories."""
    text = doc.first_two_pages_text
    signals: List[str] = []

    has_months = bool(re.search(MONTH_COLUMNS, text, IGNORE_CASE))
    has_quarters = bool(re.search(QUARTER_COLUMNS, text, IGNORE_CASE))
    if not has_months and not has_quarters:
        return None

    if has_months:
        signals.append("Monthly columns detected")
    if has_quarters:
        signals.append("Quarterly columns detected")

    if _count_hits(text, OPERATING_CATEGORIES, signals, "Category") >= 2:
        return signals
    return None


BANK_LOG_COLUMNS = [
    r"(?:transaction\s+)?date",
    r"description",
    r"(?:debit|withdrawal)",
    r"(?:credit|deposit)",
    r"(?:running\s+)?balance",
]


def detect_bank_transaction_log(doc: NormalizedDocument) -> Optional[List[str]]:
    """3+ transaction columns plus 3+ dated rows."""
    text = doc.first_two_pages_text
    signals: List[str] = []

    if _count_hits(text, BANK_LOG_COLUMNS, signals, "Column") < 3:
        return None

    date_rows = len(re.findall(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b", text))
    if date_rows >= 3:
        signals.append(f"{date_rows} date entries in transaction rows")
        return signals
    return None


DEBT_SCHEDULE_COLUMNS = [
    r"lender",
    r"creditor",
    r"\bbalance\b",
    r"\bpayment\b",
    r"maturity",
    r"interest\s+rate",
]


def detect_debt_schedule(doc: NormalizedDocument) -> Optional[List[str]]:
    text = doc.first_two_pages_text
    signals: List[str] = []

    if not (re.search(r"debt\s+schedule", text, IGNORE_CASE) or re.search(r"schedule\s+of\s+liabilities", text, IGNORE_CASE)):
        return None
    signals.append("Debt schedule title detected")

    if _count_hits(text, DEBT_SCHEDULE_COLUMNS, signals, "Column keyword") >= 1:
        return signals
    return None


AGING_BUCKETS = [
    r"\bcurrent\b",
    r"\b30\s*(?:days?|d)\b",
    r"\b60\s*(?:days?|d)\b",
    r"\b90\s*(?:days?|d)\b",
    r"\b120\s*(?:days?|d)\b",
]


def detect_ar_aging(doc: NormalizedDocument) -> Optional[List[str]]:
    text = doc.first_two_pages_text
    signals: List[str] = []

    has_title = (
        re.search(r"accounts\s+receivable\s+aging", text, IGNORE_CASE)
        or re.search(r"A/R\s+aging", text, IGNORE_CASE)
        or re.search(r"receivables\s+aging", text, IGNORE_CASE)
    )
    if not has_title:
        return None
    signals.append("AR aging title detected")

    if _count_hits(text, AGING_BUCKETS, signals, "Aging bucket") >= 2:
        return signals
    return None


def detect_voided_check(doc: NormalizedDocument) -> Optional[List[str]]:
    """VOID + check, plus a routing number or account label."""
    text = doc.first_two_pages_text
    signals: List[str] = []

    if not (re.search(r"\bvoid(?:ed)?\b", text, IGNORE_CASE) and re.search(r"\bcheck\b", text, IGNORE_CASE)):
        return None
    signals.append("VOID + check detected")

    has_routing = bool(re.search(r"\b\d{9}\b", text))
    has_account_label = bool(re.search(r"(?:routing|account)\s*(?:#|number|no)", text, IGNORE_CASE))
    if has_routing:
        signals.append("Routing/account number pattern detected")
    if has_account_label:
        signals.append("Account label detected")

    if has_routing or has_account_label:
        return signals
    return None


# ============================================================================
# Pattern Registry
# ============================================================================

STRUCTURAL_PATTERNS: Tuple[StructuralPattern, ...] = (
    StructuralPattern("RENT_ROLL_TENANT_TABLE", SpineDocType.RENT_ROLL, 0.87, detect_rent_roll),
    StructuralPattern("PFS_ASSET_LIABILITY_FORMAT", SpineDocType.PFS, 0.85, detect_pfs),
    StructuralPattern("MULTI_YEAR_PL", SpineDocType.INCOME_STATEMENT, 0.83, detect_multi_year_pl),
    StructuralPattern(
        "OPERATING_STATEMENT_MONTHLY", SpineDocType.INCOME_STATEMENT, 0.82, detect_operating_statement
    ),
    StructuralPattern(
        "BANK_STMT_TRANSACTION_LOG", SpineDocType.BANK_STATEMENT, 0.80, detect_bank_transaction_log
    ),
    StructuralPattern("VOIDED_CHECK_FORMAT", SpineDocType.VOIDED_CHECK, 0.86, detect_voided_check),
    StructuralPattern("DEBT_SCHEDULE_FORMAT", SpineDocType.DEBT_SCHEDULE, 0.82, detect_debt_schedule),
    StructuralPattern("AR_AGING_FORMAT", SpineDocType.AR_AGING, 0.82, detect_ar_aging),
)


def run_tier2_structural(
    doc: NormalizedDocument,
    patterns: Sequence[StructuralPattern] = STRUCTURAL_PATTERNS,
) -> Tier2Result:
    """Run structural detectors in order; the first match wins."""
    for pattern in patterns:
        signals = pattern.detect(doc)
        if not signals:
            continue

        evidence = [
            EvidenceItem(
                type=EVIDENCE_STRUCTURAL_MATCH,
                anchor_id=pattern.pattern_id,
                matched_text=signal,
                confidence=pattern.confidence,
            )
            for signal in signals
        ]
        return Tier2Result(
            matched=True,
            doc_type=pattern.doc_type,
            confidence=pattern.confidence,
            pattern_id=pattern.pattern_id,
            evidence=evidence,
        )

    return Tier2Result(matched=False)
