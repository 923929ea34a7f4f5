"""
Classification Spine - Orchestrator

Deterministic-first, LLM-escalated classification of a single document.

Pipeline:
    Normalize -> Tier 1 -> external signal cross-check -> Tier 2 -> Gate
    -> Tier 3 -> Finalize (or Fallback)

Every finalize path runs the confidence calibrator. The orchestrator never
raises for per-document conditions: any exception during normalization or a
tier becomes the OTHER fallback result. Only ConfigurationError escapes.
"""

import time
import logging
from typing import List, Dict, Any, Optional, Tuple

from docengine.anchors import run_tier1_anchors
from docengine.batch import BatchOutcome, classify_batch
from docengine.calibration import CalibrationInput, calibrate_confidence
from docengine.config import EngineConfig
from docengine.gate import apply_confidence_gate
from docengine.llm_escalator import LLMEscalator, Tier3Prompt
from docengine.models import (
    EVIDENCE_DOCAI_SIGNAL,
    ConfigurationError,
    DocAiSignals,
    EvidenceItem,
    GateDecision,
    NormalizedDocument,
    SpineClassificationResult,
    SpineDocType,
    SpineTier,
    Tier1Result,
    Tier3Result,
)
from docengine.normalizer import detect_years, normalize_document
from docengine.structural import run_tier2_structural
from docengine.text_utils import extract_form_numbers, extract_tax_year
from state import DealState, DocumentRow

logger = logging.getLogger(__name__)


FALLBACK_CONFIDENCE = 0.1

# External processor labels only participate at or above this confidence
DOCAI_MIN_CONFIDENCE = 0.75


# ============================================================================
# External (DocAI) Label Mapping
# ============================================================================

DOCAI_LABEL_MAP: Dict[str, SpineDocType] = {
    "tax_return_1040": SpineDocType.IRS_PERSONAL,
    "tax_return_1120": SpineDocType.IRS_BUSINESS,
    "tax_return_1120s": SpineDocType.IRS_BUSINESS,
    "tax_return_1065": SpineDocType.IRS_BUSINESS,
    "1040": SpineDocType.IRS_PERSONAL,
    "1120": SpineDocType.IRS_BUSINESS,
    "1120s": SpineDocType.IRS_BUSINESS,
    "1065": SpineDocType.IRS_BUSINESS,
    "personal_financial_statement": SpineDocType.PFS,
    "rent_roll": SpineDocType.RENT_ROLL,
    # Operating, income and financial statements are all INCOME_STATEMENT
    "operating_statement": SpineDocType.INCOME_STATEMENT,
    "income_statement": SpineDocType.INCOME_STATEMENT,
    "financial_statement": SpineDocType.INCOME_STATEMENT,
    "balance_sheet": SpineDocType.BALANCE_SHEET,
    "bank_statement": SpineDocType.BANK_STATEMENT,
    "insurance_certificate": SpineDocType.INSURANCE,
    "appraisal": SpineDocType.APPRAISAL,
    "lease": SpineDocType.LEASE,
    "k1": SpineDocType.K1,
    "schedule_k1": SpineDocType.K1,
    "w2": SpineDocType.W2,
    "1099": SpineDocType.FORM_1099,
}


def map_docai_label(label: Optional[str]) -> Optional[SpineDocType]:
    """Normalize an external processor label and look it up."""
    if not label:
        return None
    normalized = "_".join(label.lower().replace("-", " ").split())
    return DOCAI_LABEL_MAP.get(normalized)


# ============================================================================
# Finalize Helpers
# ============================================================================

_LEGACY_TIER = {
    SpineTier.TIER1_ANCHOR: "rules",
    SpineTier.TIER2_STRUCTURAL: "rules",
    SpineTier.TIER3_LLM: "llm",
    SpineTier.FALLBACK: "fallback",
}


def _finalize(
    *,
    text: str,
    detected_years: Tuple[int, ...],
    doc_type: SpineDocType,
    raw_confidence: float,
    reason: str,
    spine_tier: SpineTier,
    model: str,
    raw_extraction: Dict[str, Any],
    tax_year: Optional[int],
    form_numbers: Optional[List[str]],
    evidence: List[EvidenceItem],
    tier: Optional[str] = None,
    entity_type: Optional[str] = None,
    tier3: Optional[Tier3Result] = None,
) -> SpineClassificationResult:
    """Build the final result and run calibration."""
    candidates = list(tier3.confusion_candidates) if tier3 else []
    forms = list(form_numbers) if form_numbers is not None else extract_form_numbers(text)

    calibration = calibrate_confidence(CalibrationInput(
        raw_confidence=raw_confidence,
        confusion_candidates=candidates,
        tax_year=tax_year,
        detected_years=detected_years,
        form_numbers=forms,
        text_length=len(text.strip()),
    ))

    return SpineClassificationResult(
        doc_type=doc_type,
        confidence=calibration.confidence,
        reason=reason,
        spine_tier=spine_tier,
        calibration=calibration,
        raw_confidence=raw_confidence,
        model=model,
        tier=tier or _LEGACY_TIER[spine_tier],
        tax_year=tax_year,
        entity_name=tier3.entity_name if tier3 else None,
        entity_type=entity_type,
        form_numbers=tuple(forms),
        evidence=tuple(evidence),
        confusion_candidates=tuple(candidates),
        issuer=tier3.issuer if tier3 else None,
        period_start=tier3.period_start if tier3 else None,
        period_end=tier3.period_end if tier3 else None,
        raw_extraction=raw_extraction,
    )


def finalize_from_tier1(tier1: Tier1Result, doc: NormalizedDocument) -> SpineClassificationResult:
    return _finalize(
        text=doc.full_text,
        detected_years=doc.detected_years,
        doc_type=tier1.doc_type or SpineDocType.OTHER,
        raw_confidence=tier1.confidence,
        reason=f"Tier 1 anchor: {tier1.anchor_id}",
        spine_tier=SpineTier.TIER1_ANCHOR,
        model="spine:tier1_anchor",
        raw_extraction={"spine_tier": SpineTier.TIER1_ANCHOR.value, "anchor_id": tier1.anchor_id},
        tax_year=tier1.tax_year if tier1.tax_year is not None else extract_tax_year(doc.full_text),
        form_numbers=tier1.form_numbers,
        evidence=list(tier1.evidence),
        entity_type=tier1.entity_type,
    )


def finalize_from_gate(gate: GateDecision, doc: NormalizedDocument) -> SpineClassificationResult:
    spine_tier = SpineTier.TIER1_ANCHOR if gate.source == "tier1" else SpineTier.TIER2_STRUCTURAL
    if gate.source == "tier1":
        reason = "Tier 1 anchor accepted"
    else:
        reason = f"Tier 2 structural pattern accepted (confidence {gate.confidence})"

    return _finalize(
        text=doc.full_text,
        detected_years=doc.detected_years,
        doc_type=gate.doc_type or SpineDocType.OTHER,
        raw_confidence=gate.confidence,
        reason=reason,
        spine_tier=spine_tier,
        model=f"spine:{spine_tier.value}",
        raw_extraction={"spine_tier": spine_tier.value, "gate_source": gate.source},
        tax_year=gate.tax_year if gate.tax_year is not None else extract_tax_year(doc.full_text),
        form_numbers=gate.form_numbers,
        evidence=list(gate.evidence),
        entity_type=gate.entity_type,
    )


def finalize_from_tier3(tier3: Tier3Result, doc: NormalizedDocument) -> SpineClassificationResult:
    return _finalize(
        text=doc.full_text,
        detected_years=doc.detected_years,
        doc_type=tier3.doc_type,
        raw_confidence=tier3.confidence,
        reason=tier3.reason or "Tier 3 LLM classification",
        spine_tier=SpineTier.TIER3_LLM,
        model=tier3.model,
        raw_extraction={
            "spine_tier": SpineTier.TIER3_LLM.value,
            "model": tier3.model,
            "confusion_candidates": list(tier3.confusion_candidates),
        },
        tax_year=tier3.tax_year,
        form_numbers=tier3.form_numbers or [],
        evidence=list(tier3.evidence),
        entity_type=tier3.entity_type,
        tier3=tier3,
    )


def finalize_from_docai(
    doc_type: SpineDocType,
    docai: DocAiSignals,
    doc: NormalizedDocument,
    tier1: Tier1Result,
) -> SpineClassificationResult:
    processor = docai.processor_type or "unknown"
    confidence = docai.confidence if docai.confidence is not None else 0.8
    evidence = [
        EvidenceItem(
            type=EVIDENCE_DOCAI_SIGNAL,
            anchor_id=f"docai:{processor}",
            matched_text=docai.label or "",
            confidence=confidence,
        )
    ]
    return _finalize(
        text=doc.full_text,
        detected_years=doc.detected_years,
        doc_type=doc_type,
        raw_confidence=confidence,
        reason=f'DocAI processor classified as "{docai.label}" (confidence {docai.confidence})',
        spine_tier=SpineTier.TIER1_ANCHOR,
        model=f"docai:{processor}",
        raw_extraction={
            "spine_tier": "docai_cross_validated",
            "docai_label": docai.label,
            "docai_confidence": docai.confidence,
            "docai_processor": docai.processor_type,
        },
        tax_year=tier1.tax_year if tier1.tax_year is not None else extract_tax_year(doc.full_text),
        form_numbers=tier1.form_numbers,
        evidence=evidence,
        tier="docai",
        entity_type=tier1.entity_type,
    )


def finalize_fallback(text: str) -> SpineClassificationResult:
    return _finalize(
        text=text,
        detected_years=detect_years(text),
        doc_type=SpineDocType.OTHER,
        raw_confidence=FALLBACK_CONFIDENCE,
        reason="All classification tiers failed, fallback to OTHER",
        spine_tier=SpineTier.FALLBACK,
        model="spine:fallback",
        raw_extraction={"spine_tier": SpineTier.FALLBACK.value},
        tax_year=extract_tax_year(text),
        form_numbers=None,
        evidence=[],
    )


# ============================================================================
# Orchestrator
# ============================================================================

class SpineClassifier:
    """
    Runs the tiered classification pipeline for one document at a time.

    Holds no per-document state, so one instance is shared across threads.
    """

    def __init__(
        self,
        escalator: Optional[LLMEscalator] = None,
        config: Optional[EngineConfig] = None,
    ):
        self.config = config or EngineConfig()
        if escalator is None:
            escalator = LLMEscalator(
                Tier3Prompt.from_file(self.config.confusion_examples_path),
                config=self.config,
            )
        self.escalator = escalator

    def classify(
        self,
        text: Optional[str],
        filename: Optional[str],
        mime_type: Optional[str],
        docai: Optional[DocAiSignals] = None,
        artifact_id: str = "spine",
    ) -> SpineClassificationResult:
        """
        Classify a document.

        Args:
            text: Extracted document text
            filename: Original filename
            mime_type: MIME type, if known
            docai: Optional external processor label
            artifact_id: Identifier used in logs

        Returns:
            SpineClassificationResult (never raises for document conditions)

        Raises:
            ConfigurationError: If Tier 3 is needed and the model is unconfigured
        """
        raw_text = text or ""
        try:
            doc = normalize_document(artifact_id, raw_text, filename, mime_type)
            tier1 = run_tier1_anchors(doc)

            # A Tier 1 anchor beats a disagreeing external label
            if docai and docai.label and (docai.confidence or 0) >= DOCAI_MIN_CONFIDENCE:
                mapped = map_docai_label(docai.label)
                if mapped is not None:
                    if tier1.matched and tier1.doc_type != mapped:
                        return finalize_from_tier1(tier1, doc)
                    return finalize_from_docai(mapped, docai, doc, tier1)

            if tier1.matched:
                return finalize_from_tier1(tier1, doc)

            tier2 = run_tier2_structural(doc)
            gate = apply_confidence_gate(tier1, tier2)
            if gate.accepted:
                return finalize_from_gate(gate, doc)

            tier3 = self.escalator.escalate(doc)
            if tier3.matched:
                return finalize_from_tier3(tier3, doc)

            return finalize_fallback(raw_text)
        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Spine classification failed for {artifact_id} ({filename}), using fallback: {e}")
            return finalize_fallback(raw_text)

    def classify_batch(
        self,
        documents: List[DocumentRow],
        chunk_size: Optional[int] = None,
        batch_cap: Optional[int] = None,
    ) -> List[BatchOutcome]:
        """Classify a deal's documents in concurrency windows, all settled."""
        return classify_batch(
            documents,
            self._classify_row,
            lambda row: str(row.get("id", "")),
            chunk_size=chunk_size or self.config.gatekeeper_chunk_size,
            batch_cap=batch_cap or self.config.gatekeeper_batch_cap,
        )

    def _classify_row(self, row: DocumentRow) -> SpineClassificationResult:
        docai = row.get("docai")
        return self.classify(
            row.get("text"),
            row.get("filename"),
            row.get("mime_type"),
            docai=DocAiSignals.from_dict(docai) if docai else None,
            artifact_id=str(row.get("id", "spine")),
        )


def classify_document_spine(
    text: Optional[str],
    filename: Optional[str],
    mime_type: Optional[str],
    docai: Optional[DocAiSignals] = None,
    classifier: Optional[SpineClassifier] = None,
) -> SpineClassificationResult:
    """Classify one document with the given (or a default) classifier."""
    classifier = classifier or SpineClassifier(config=EngineConfig.from_env())
    return classifier.classify(text, filename, mime_type, docai=docai)


def spine_fields(result: SpineClassificationResult) -> Dict[str, Any]:
    """Document record fields stamped from a spine result."""
    return {
        "ai_doc_type": result.doc_type.value,
        "ai_tax_year": result.tax_year,
        "ai_confidence": result.confidence,
        "ai_band": result.band.value,
        "ai_spine_tier": result.spine_tier.value,
        "ai_reason": result.reason,
        "ai_model": result.model,
        "ai_spine_version": result.spine_version,
    }


# ============================================================================
# Graph Node
# ============================================================================

def spine_classifier_node(state: DealState, classifier: SpineClassifier) -> dict:
    """
    Node: Spine Classifier

    Classifies every document of the deal that has text, in concurrency
    windows, and stamps the AI-derived fields on each document row.

    Returns:
        dict with updated documents, classification_results and batch_errors
    """
    print("--- NODE: Spine Classifier ---")

    start_time = time.time()
    documents = [dict(doc) for doc in state.get("documents", [])]
    pending = [doc for doc in documents if doc.get("text")]

    outcomes = classifier.classify_batch(pending)  # type: ignore[arg-type]
    by_id = {str(doc.get("id", "")): doc for doc in documents}

    results: Dict[str, Any] = {}
    errors: List[Dict[str, Any]] = list(state.get("batch_errors", []))

    for outcome in outcomes:
        if not outcome.ok:
            errors.append(outcome.to_dict())
            continue
        result: SpineClassificationResult = outcome.result
        by_id[outcome.document_id].update(spine_fields(result))
        results[outcome.document_id] = result.to_dict()
        print(f"   Doc {outcome.document_id}: {result.doc_type.value} "
              f"({result.confidence:.0%}, {result.band.value}, {result.spine_tier.value})")

    elapsed_ms = (time.time() - start_time) * 1000
    print(f"   Classified {len(results)}/{len(pending)} documents in {elapsed_ms:.0f}ms")

    return {
        "documents": documents,
        "classification_results": results,
        "batch_errors": errors,
    }
