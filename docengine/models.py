"""
Shared data models for the classification engine.

Holds the document type taxonomies, tier-scoped result records and the
exception hierarchy used across the spine, gatekeeper and readiness modules.
"""

from typing import List, Dict, Any, Optional, Tuple
from dataclasses import dataclass, field
from enum import Enum


CLASSIFICATION_SCHEMA_VERSION = "spine_v2"


# ============================================================================
# Errors
# ============================================================================

class EngineError(Exception):
    """Base class for engine errors."""


class ConfigurationError(EngineError):
    """Deployment defect: missing credentials or an invalid config artifact."""


class ModelResponseError(EngineError):
    """Empty, malformed or schema-invalid output from a remote model."""


# ============================================================================
# Spine Document Types
# ============================================================================

class SpineDocType(Enum):
    """
    Fine-grained document types produced by the classification spine.

    There is no member for the legacy trailing-twelve type:
    operating statements of any period are INCOME_STATEMENT.
    """
    IRS_BUSINESS = "IRS_BUSINESS"
    IRS_PERSONAL = "IRS_PERSONAL"
    K1 = "K1"
    W2 = "W2"
    FORM_1099 = "1099"
    PFS = "PFS"
    PERSONAL_FINANCIAL_STATEMENT = "PERSONAL_FINANCIAL_STATEMENT"
    RENT_ROLL = "RENT_ROLL"
    INCOME_STATEMENT = "INCOME_STATEMENT"
    BALANCE_SHEET = "BALANCE_SHEET"
    BANK_STATEMENT = "BANK_STATEMENT"
    DEBT_SCHEDULE = "DEBT_SCHEDULE"
    AR_AGING = "AR_AGING"
    VOIDED_CHECK = "VOIDED_CHECK"
    DRIVERS_LICENSE = "DRIVERS_LICENSE"
    ARTICLES = "ARTICLES"
    OPERATING_AGREEMENT = "OPERATING_AGREEMENT"
    BYLAWS = "BYLAWS"
    INSURANCE = "INSURANCE"
    APPRAISAL = "APPRAISAL"
    LEASE = "LEASE"
    TAX_TRANSCRIPT_REQUEST = "TAX_TRANSCRIPT_REQUEST"
    TAX_AUTH = "TAX_AUTH"
    SBA_APPLICATION = "SBA_APPLICATION"
    OTHER = "OTHER"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "SpineDocType":
        """Convert a model or rule label to a SpineDocType, case-insensitive."""
        if not value:
            return cls.OTHER
        value_upper = str(value).strip().upper().replace("-", "_").replace(" ", "_")

        if value_upper in ("T12", "T_12", "TRAILING_12", "TRAILING_TWELVE"):
            return cls.INCOME_STATEMENT

        for doc_type in cls:
            if doc_type.value == value_upper or doc_type.name == value_upper:
                return doc_type

        if value_upper in ("FORM_W2", "W_2"):
            return cls.W2
        if value_upper in ("K_1", "SCHEDULE_K1"):
            return cls.K1

        return cls.OTHER


class SpineTier(Enum):
    """Which spine stage produced the final classification."""
    TIER1_ANCHOR = "tier1_anchor"
    TIER2_STRUCTURAL = "tier2_structural"
    TIER3_LLM = "tier3_llm"
    FALLBACK = "fallback"

    @classmethod
    def from_string(cls, value: str) -> "SpineTier":
        value_lower = value.lower().strip()
        for tier in cls:
            if tier.value == value_lower:
                return tier
        raise ValueError(f"Unknown spine tier: {value}")


class ConfidenceBand(Enum):
    """Discretized calibrated confidence."""
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @classmethod
    def from_string(cls, value: str) -> "ConfidenceBand":
        value_upper = value.upper().strip()
        for band in cls:
            if band.value == value_upper:
                return band
        raise ValueError(f"Unknown confidence band: {value}")


# Evidence item kinds
EVIDENCE_FORM_MATCH = "form_match"
EVIDENCE_KEYWORD_MATCH = "keyword_match"
EVIDENCE_STRUCTURAL_MATCH = "structural_match"
EVIDENCE_DOCAI_SIGNAL = "docai_signal"


# ============================================================================
# Normalized Document
# ============================================================================

@dataclass(frozen=True)
class NormalizedDocument:
    """
    Immutable view of one document prepared for classification.

    Created once per classification attempt by the normalizer.
    """
    artifact_id: str
    filename: str
    mime_type: Optional[str]
    page_count: int
    first_page_text: str
    first_two_pages_text: str
    full_text: str
    detected_years: Tuple[int, ...] = ()
    has_table_like_structure: bool = False


# ============================================================================
# Tier Results
# ============================================================================

@dataclass
class EvidenceItem:
    """A single piece of audit evidence behind a classification."""
    type: str
    anchor_id: str
    matched_text: str
    confidence: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "anchor_id": self.anchor_id,
            "matched_text": self.matched_text,
            "confidence": round(self.confidence, 4),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvidenceItem":
        return cls(
            type=data["type"],
            anchor_id=data["anchor_id"],
            matched_text=data.get("matched_text", ""),
            confidence=float(data.get("confidence", 0.0)),
        )


@dataclass
class Tier1Result:
    """Outcome of the anchor matcher."""
    matched: bool
    doc_type: Optional[SpineDocType] = None
    confidence: float = 0.0
    anchor_id: Optional[str] = None
    evidence: List[EvidenceItem] = field(default_factory=list)
    form_numbers: Optional[List[str]] = None
    tax_year: Optional[int] = None
    entity_type: Optional[str] = None  # "business", "personal"


@dataclass
class Tier2Result:
    """Outcome of the structural matcher."""
    matched: bool
    doc_type: Optional[SpineDocType] = None
    confidence: float = 0.0
    pattern_id: Optional[str] = None
    evidence: List[EvidenceItem] = field(default_factory=list)


@dataclass
class GateDecision:
    """Whether deterministic output is accepted or escalated to Tier 3."""
    accepted: bool
    source: Optional[str] = None  # "tier1", "tier2"
    doc_type: Optional[SpineDocType] = None
    confidence: float = 0.0
    evidence: List[EvidenceItem] = field(default_factory=list)
    form_numbers: Optional[List[str]] = None
    tax_year: Optional[int] = None
    entity_type: Optional[str] = None
    reason: str = ""


@dataclass
class Tier3Result:
    """Outcome of the LLM escalator. Never raised, always returned."""
    matched: bool
    doc_type: SpineDocType
    confidence: float
    reason: str
    model: str
    confusion_candidates: List[str] = field(default_factory=list)
    evidence: List[EvidenceItem] = field(default_factory=list)
    tax_year: Optional[int] = None
    entity_name: Optional[str] = None
    entity_type: Optional[str] = None
    form_numbers: Optional[List[str]] = None
    issuer: Optional[str] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None


@dataclass
class DocAiSignals:
    """Label emitted by an external document processor."""
    label: Optional[str]
    confidence: Optional[float] = None
    processor_type: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocAiSignals":
        return cls(
            label=data.get("label"),
            confidence=data.get("confidence"),
            processor_type=data.get("processor_type"),
        )


# ============================================================================
# Calibration
# ============================================================================

@dataclass
class PenaltyRecord:
    """One penalty applied during calibration."""
    name: str
    amount: float
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "amount": self.amount, "reason": self.reason}


@dataclass
class CalibratedConfidence:
    """Clamped, banded confidence with its audit trail of penalties."""
    confidence: float
    band: ConfidenceBand
    penalties: List[PenaltyRecord] = field(default_factory=list)
    raw_confidence: float = 0.0

    @property
    def total_penalty(self) -> float:
        return round(sum(p.amount for p in self.penalties), 4)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "confidence": round(self.confidence, 4),
            "band": self.band.value,
            "raw_confidence": round(self.raw_confidence, 4),
            "penalties": [p.to_dict() for p in self.penalties],
        }


# ============================================================================
# Spine Classification Result
# ============================================================================

@dataclass(frozen=True)
class SpineClassificationResult:
    """
    Final per-document classification produced by the spine.

    Created once per classification run and never mutated afterwards;
    re-classification produces a new result.
    """
    doc_type: SpineDocType
    confidence: float
    reason: str
    spine_tier: SpineTier
    calibration: CalibratedConfidence
    raw_confidence: float
    model: str
    tier: str  # "rules", "llm", "docai", "fallback"
    tax_year: Optional[int] = None
    entity_name: Optional[str] = None
    entity_type: Optional[str] = None
    form_numbers: Tuple[str, ...] = ()
    evidence: Tuple[EvidenceItem, ...] = ()
    confusion_candidates: Tuple[str, ...] = ()
    issuer: Optional[str] = None
    period_start: Optional[str] = None
    period_end: Optional[str] = None
    raw_extraction: Dict[str, Any] = field(default_factory=dict)
    spine_version: str = CLASSIFICATION_SCHEMA_VERSION

    @property
    def band(self) -> ConfidenceBand:
        return self.calibration.band

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "doc_type": self.doc_type.value,
            "confidence": round(self.confidence, 4),
            "band": self.band.value,
            "raw_confidence": round(self.raw_confidence, 4),
            "reason": self.reason,
            "spine_tier": self.spine_tier.value,
            "tier": self.tier,
            "model": self.model,
            "tax_year": self.tax_year,
            "entity_name": self.entity_name,
            "entity_type": self.entity_type,
            "form_numbers": list(self.form_numbers),
            "evidence": [e.to_dict() for e in self.evidence],
            "confusion_candidates": list(self.confusion_candidates),
            "issuer": self.issuer,
            "period_start": self.period_start,
            "period_end": self.period_end,
            "calibration": self.calibration.to_dict(),
            "raw_extraction": dict(self.raw_extraction),
            "spine_version": self.spine_version,
        }


# ============================================================================
# Gatekeeper Types
# ============================================================================

class GatekeeperDocType(Enum):
    """
    Coarse triage types.

    The classifier prompt offers the eleven labels through UNKNOWN;
    PERSONAL_FINANCIAL_STATEMENT is accepted on stamped rows so completeness
    checks can see guarantor statements.
    """
    BUSINESS_TAX_RETURN = "BUSINESS_TAX_RETURN"
    PERSONAL_TAX_RETURN = "PERSONAL_TAX_RETURN"
    W2 = "W2"
    FORM_1099 = "FORM_1099"
    K1 = "K1"
    BANK_STATEMENT = "BANK_STATEMENT"
    FINANCIAL_STATEMENT = "FINANCIAL_STATEMENT"
    DRIVERS_LICENSE = "DRIVERS_LICENSE"
    VOIDED_CHECK = "VOIDED_CHECK"
    OTHER = "OTHER"
    UNKNOWN = "UNKNOWN"
    PERSONAL_FINANCIAL_STATEMENT = "PERSONAL_FINANCIAL_STATEMENT"

    @classmethod
    def from_string(cls, value: Optional[str]) -> Optional["GatekeeperDocType"]:
        """Return the matching type, or None for unrecognized values."""
        if value is None:
            return None
        value_upper = str(value).strip().upper()
        for doc_type in cls:
            if doc_type.value == value_upper:
                return doc_type
        return None


# Types offered to the gatekeeper model
GATEKEEPER_PROMPT_TYPES: Tuple[GatekeeperDocType, ...] = tuple(
    t for t in GatekeeperDocType if t != GatekeeperDocType.PERSONAL_FINANCIAL_STATEMENT
)


class GatekeeperRoute(Enum):
    """Where a triaged document goes next."""
    STANDARD = "STANDARD"
    GOOGLE_DOC_AI_CORE = "GOOGLE_DOC_AI_CORE"
    NEEDS_REVIEW = "NEEDS_REVIEW"


@dataclass
class DetectedSignals:
    """Identifiers the gatekeeper model saw on the document."""
    form_numbers: List[str] = field(default_factory=list)
    has_ein: bool = False
    has_ssn: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "form_numbers": list(self.form_numbers),
            "has_ein": self.has_ein,
            "has_ssn": self.has_ssn,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "DetectedSignals":
        data = data or {}
        return cls(
            form_numbers=list(data.get("form_numbers") or []),
            has_ein=bool(data.get("has_ein", False)),
            has_ssn=bool(data.get("has_ssn", False)),
        )


@dataclass
class GatekeeperClassification:
    """Raw gatekeeper classification (what gets cached)."""
    doc_type: str
    confidence: float
    tax_year: Optional[int] = None
    reasons: List[str] = field(default_factory=list)
    detected_signals: DetectedSignals = field(default_factory=DetectedSignals)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doc_type": self.doc_type,
            "confidence": self.confidence,
            "tax_year": self.tax_year,
            "reasons": list(self.reasons),
            "detected_signals": self.detected_signals.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GatekeeperClassification":
        return cls(
            doc_type=str(data.get("doc_type") or GatekeeperDocType.UNKNOWN.value),
            confidence=float(data.get("confidence") or 0.0),
            tax_year=data.get("tax_year"),
            reasons=list(data.get("reasons") or []),
            detected_signals=DetectedSignals.from_dict(data.get("detected_signals")),
        )


@dataclass
class GatekeeperResult:
    """Classification plus route and run metadata, stamped on the document."""
    doc_type: str
    confidence: float
    tax_year: Optional[int]
    reasons: List[str]
    detected_signals: DetectedSignals
    route: GatekeeperRoute
    needs_review: bool
    review_reason_code: Optional[str]
    cache_hit: bool
    model: str
    prompt_version: str
    prompt_hash: str
    input_path: str  # "text", "vision", "cache", "already_classified", "no_ocr_no_image", "error"
    latency_ms: Optional[float] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    classified_at: Optional[str] = None  # set when rebuilt from a stamped row

    @property
    def classification(self) -> GatekeeperClassification:
        return GatekeeperClassification(
            doc_type=self.doc_type,
            confidence=self.confidence,
            tax_year=self.tax_year,
            reasons=list(self.reasons),
            detected_signals=self.detected_signals,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "doc_type": self.doc_type,
            "confidence": round(self.confidence, 4),
            "tax_year": self.tax_year,
            "reasons": list(self.reasons),
            "detected_signals": self.detected_signals.to_dict(),
            "route": self.route.value,
            "needs_review": self.needs_review,
            "review_reason_code": self.review_reason_code,
            "cache_hit": self.cache_hit,
            "model": self.model,
            "prompt_version": self.prompt_version,
            "prompt_hash": self.prompt_hash,
            "input_path": self.input_path,
            "latency_ms": round(self.latency_ms, 2) if self.latency_ms is not None else None,
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
        }
