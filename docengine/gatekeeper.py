"""
Gatekeeper classifier and per-document orchestrator.

A coarse, fail-closed triage classifier. For one document:
1. Idempotency check (already stamped with gatekeeper_classified_at?)
2. Cache lookup by (tenant_id, sha256, prompt_hash)
3. Model call over OCR text, or vision over an image file
4. Deterministic routing (always recomputed, never cached)
5. Stamp gatekeeper_* fields on the document row
6. Cache write and audit events

Any runtime error becomes an UNKNOWN / NEEDS_REVIEW result. Only
ConfigurationError (missing credentials) escapes.
"""

import base64
import hashlib
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Dict, Any, Optional, Literal, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field, ValidationError

from docengine import audit
from docengine.audit import AuditEvent, AuditSink, safe_emit
from docengine.batch import BatchOutcome, classify_batch
from docengine.config import EngineConfig
from docengine.gatekeeper_cache import CachedClassification, GatekeeperCache
from docengine.llm_escalator import build_chat_model, parse_json_object, response_text
from docengine.models import (
    ConfigurationError,
    DetectedSignals,
    GatekeeperClassification,
    GatekeeperDocType,
    GatekeeperResult,
    GatekeeperRoute,
    ModelResponseError,
)
from docengine.routing import (
    REVIEW_CLASSIFY_ERROR,
    REVIEW_NO_OCR_NO_IMAGE,
    compute_gatekeeper_route,
    review_reason_code,
)
from document_store import DocumentStore
from state import DealState, DocumentRow

logger = logging.getLogger(__name__)


PROMPT_VERSION = "gatekeeper_v1"

# Head+tail truncation keeps tax years that appear near the end
HEAD_CHARS = 8000
TAIL_CHARS = 4000
TRUNCATION_MARKER = "\n\n[... truncated ...]\n\n"

# OCR text must be longer than this to take the text path
MIN_OCR_TEXT_CHARS = 100

VISION_MIME_TYPES = frozenset({
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/gif",
    "image/tiff",
})

INPUT_TEXT = "text"
INPUT_VISION = "vision"
INPUT_CACHE = "cache"
INPUT_ALREADY_CLASSIFIED = "already_classified"
INPUT_NO_OCR_NO_IMAGE = "no_ocr_no_image"
INPUT_ERROR = "error"


# ============================================================================
# Prompt and Schema
# ============================================================================

GATEKEEPER_SYSTEM_PROMPT = """You are a document classifier for a commercial bank underwriting pipeline.
Given a document (text or image), classify it into exactly one doc_type.
Return ONLY valid JSON matching the provided schema.

CLASSIFICATION RULES:
- BUSINESS_TAX_RETURN: IRS Forms 1120, 1120-S, 1065, and their schedules (NOT K-1)
- PERSONAL_TAX_RETURN: IRS Form 1040 and its schedules (NOT K-1, NOT W-2, NOT 1099)
- W2: W-2 Wage and Tax Statement
- FORM_1099: Any 1099 variant (1099-INT, 1099-DIV, 1099-MISC, 1099-NEC, etc.)
- K1: Schedule K-1 (from 1065, 1120-S, or trust)
- BANK_STATEMENT: Monthly/quarterly bank account statements
- FINANCIAL_STATEMENT: P&L, income statement, balance sheet, T12, interim financials
- DRIVERS_LICENSE: Government-issued photo ID (driver's license, state ID, passport)
- VOIDED_CHECK: Voided check for direct deposit / ACH setup
- OTHER: Identifiable document that doesn't fit above categories (lease, insurance, appraisal, etc.)
- UNKNOWN: Cannot determine document type with any confidence

CONFIDENCE RULES:
- 0.95-1.00: Certain (form number clearly visible, unambiguous)
- 0.80-0.94: High confidence (strong signals, minor ambiguity)
- 0.60-0.79: Moderate (some ambiguity, partial signals)
- Below 0.60: Low confidence (unclear, barely readable)

TAX YEAR EXTRACTION:
- Extract the tax year FROM the document (calendar year / fiscal year / "for the year ending")
- IGNORE signature date or filing date if they conflict with the tax year
- Return null if tax year cannot be determined

FORM NUMBERS:
- List any IRS/government form numbers found (e.g., ["1120-S", "Schedule K"])

DETECTED SIGNALS:
- has_ein: true if an EIN (XX-XXXXXXX) pattern is visible
- has_ssn: true if a SSN (XXX-XX-XXXX) pattern is visible (even if partially redacted)"""


class DetectedSignalsModel(BaseModel):
    form_numbers: List[str] = Field(default_factory=list)
    has_ein: bool = False
    has_ssn: bool = False


class GatekeeperClassificationModel(BaseModel):
    """Schema the gatekeeper model output must satisfy."""
    doc_type: Literal[
        "BUSINESS_TAX_RETURN",
        "PERSONAL_TAX_RETURN",
        "W2",
        "FORM_1099",
        "K1",
        "BANK_STATEMENT",
        "FINANCIAL_STATEMENT",
        "DRIVERS_LICENSE",
        "VOIDED_CHECK",
        "OTHER",
        "UNKNOWN",
    ]
    confidence: float = Field(ge=0.0, le=1.0)
    tax_year: Optional[int] = None
    reasons: List[str] = Field(default_factory=list)
    detected_signals: DetectedSignalsModel = Field(default_factory=DetectedSignalsModel)

    def to_classification(self) -> GatekeeperClassification:
        return GatekeeperClassification(
            doc_type=self.doc_type,
            confidence=self.confidence,
            tax_year=self.tax_year,
            reasons=list(self.reasons),
            detected_signals=DetectedSignals(
                form_numbers=list(self.detected_signals.form_numbers),
                has_ein=self.detected_signals.has_ein,
                has_ssn=self.detected_signals.has_ssn,
            ),
        )


def compute_prompt_hash(system_prompt: str, schema: Dict[str, Any]) -> str:
    """First 16 hex chars of sha256(prompt + separator + schema)."""
    combined = system_prompt + "\n---\n" + json.dumps(schema, sort_keys=True)
    return hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]


class GatekeeperPrompt:
    """
    Compiled gatekeeper prompt and output schema.

    Built once at startup and shared by classifier and orchestrator. The
    prompt hash changes whenever the prompt text or the schema changes,
    which is what invalidates cached classifications.
    """

    def __init__(self, system_prompt: str = GATEKEEPER_SYSTEM_PROMPT, version: str = PROMPT_VERSION):
        self.system_prompt = system_prompt
        self.version = version
        self.schema = GatekeeperClassificationModel.model_json_schema()
        self.prompt_hash = compute_prompt_hash(system_prompt, self.schema)

    @property
    def full_system_prompt(self) -> str:
        return f"{self.system_prompt}\n\nJSON SCHEMA:\n{json.dumps(self.schema, indent=2)}"


def truncate_text(text: str) -> str:
    """Keep the first 8000 and last 4000 characters of long text."""
    if len(text) <= HEAD_CHARS + TAIL_CHARS:
        return text
    return text[:HEAD_CHARS] + TRUNCATION_MARKER + text[-TAIL_CHARS:]


# ============================================================================
# Classifier
# ============================================================================

@dataclass
class ModelClassification:
    """A validated model classification and its call metadata."""
    classification: GatekeeperClassification
    model: str
    prompt_version: str
    prompt_hash: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None


def _usage(response: Any) -> Dict[str, Optional[int]]:
    usage = getattr(response, "usage_metadata", None)
    if not isinstance(usage, dict):
        return {"prompt_tokens": None, "completion_tokens": None}
    return {
        "prompt_tokens": usage.get("input_tokens"),
        "completion_tokens": usage.get("output_tokens"),
    }


class GatekeeperClassifier:
    """Text and vision classification over a LangChain chat model."""

    def __init__(
        self,
        prompt: GatekeeperPrompt,
        config: Optional[EngineConfig] = None,
        llm: Optional[BaseChatModel] = None,
    ):
        self.prompt = prompt
        self.config = config or EngineConfig()
        self._llm = llm

    @property
    def model_name(self) -> str:
        return self.config.gatekeeper_model

    def _get_llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = build_chat_model(
                "openai",
                self.config.gatekeeper_model,
                0.0,
                self.config.gatekeeper_max_tokens,
            )
        return self._llm

    def classify_text(self, ocr_text: str) -> ModelClassification:
        """Classify from OCR text (preferred, cheaper path)."""
        message = HumanMessage(content=f"Classify this document:\n\n{truncate_text(ocr_text)}")
        return self._invoke(message)

    def classify_vision(self, image_bytes: bytes, mime_type: str) -> ModelClassification:
        """Classify from an image; low detail is enough for triage."""
        data_url = f"data:{mime_type};base64,{base64.b64encode(image_bytes).decode('ascii')}"
        message = HumanMessage(content=[
            {"type": "text", "text": "Classify this document:"},
            {"type": "image_url", "image_url": {"url": data_url, "detail": "low"}},
        ])
        return self._invoke(message)

    def _invoke(self, message: HumanMessage) -> ModelClassification:
        llm = self._get_llm()
        response = llm.invoke([SystemMessage(content=self.prompt.full_system_prompt), message])

        data = parse_json_object(response_text(response))
        try:
            parsed = GatekeeperClassificationModel.model_validate(data)
        except ValidationError as e:
            raise ModelResponseError(f"Gatekeeper response failed schema validation: {e}") from e

        return ModelClassification(
            classification=parsed.to_classification(),
            model=self.model_name,
            prompt_version=self.prompt.version,
            prompt_hash=self.prompt.prompt_hash,
            **_usage(response),
        )


# ============================================================================
# Orchestrator
# ============================================================================

@dataclass
class GatekeeperDocInput:
    """Everything the gatekeeper needs about one document."""
    document_id: str
    deal_id: str
    tenant_id: str
    mime_type: str = ""
    sha256: Optional[str] = None
    ocr_text: Optional[str] = None
    storage_path: Optional[str] = None
    image_bytes: Optional[bytes] = None
    force_reclassify: bool = False
    stamped_row: Optional[DocumentRow] = None  # caller-held row already carrying gatekeeper fields

    @property
    def has_ocr_text(self) -> bool:
        return bool(self.ocr_text) and len(self.ocr_text or "") > MIN_OCR_TEXT_CHARS

    @classmethod
    def from_row(cls, row: DocumentRow, tenant_id: str = "default", force_reclassify: bool = False) -> "GatekeeperDocInput":
        return cls(
            document_id=str(row.get("id", "")),
            deal_id=str(row.get("deal_id", "")),
            tenant_id=str(row.get("tenant_id") or tenant_id),
            mime_type=row.get("mime_type") or "",
            sha256=row.get("sha256"),
            ocr_text=row.get("text"),
            storage_path=row.get("storage_path"),
            force_reclassify=force_reclassify,
            stamped_row=dict(row) if row.get("gatekeeper_classified_at") else None,  # type: ignore[arg-type]
        )


def gatekeeper_fields(result: GatekeeperResult, classified_at: Optional[str] = None) -> Dict[str, Any]:
    """Document record fields stamped from a gatekeeper result."""
    return {
        "gatekeeper_doc_type": result.doc_type,
        "gatekeeper_confidence": result.confidence,
        "gatekeeper_tax_year": result.tax_year,
        "gatekeeper_form_numbers": list(result.detected_signals.form_numbers),
        "gatekeeper_route": result.route.value,
        "gatekeeper_needs_review": result.needs_review,
        "gatekeeper_reasons": list(result.reasons),
        "gatekeeper_signals": result.detected_signals.to_dict(),
        "gatekeeper_model": result.model,
        "gatekeeper_prompt_version": result.prompt_version,
        "gatekeeper_prompt_hash": result.prompt_hash,
        "gatekeeper_classified_at": classified_at or result.classified_at or datetime.now(timezone.utc).isoformat(),
        "gatekeeper_error": result.reasons[0] if result.review_reason_code == REVIEW_CLASSIFY_ERROR and result.reasons else None,
        "gatekeeper_review_reason_code": result.review_reason_code,
    }


def result_from_row(row: DocumentRow, prompt: GatekeeperPrompt) -> GatekeeperResult:
    """Rebuild a result from previously stamped gatekeeper fields."""
    route_value = row.get("gatekeeper_route") or GatekeeperRoute.NEEDS_REVIEW.value
    return GatekeeperResult(
        doc_type=row.get("gatekeeper_doc_type") or GatekeeperDocType.UNKNOWN.value,
        confidence=float(row.get("gatekeeper_confidence") or 0.0),
        tax_year=row.get("gatekeeper_tax_year"),
        reasons=list(row.get("gatekeeper_reasons") or []),
        detected_signals=DetectedSignals.from_dict(row.get("gatekeeper_signals")),
        route=GatekeeperRoute(route_value),
        needs_review=bool(row.get("gatekeeper_needs_review", False)),
        review_reason_code=row.get("gatekeeper_review_reason_code"),
        cache_hit=False,
        model=row.get("gatekeeper_model") or "cached_on_doc",
        prompt_version=row.get("gatekeeper_prompt_version") or prompt.version,
        prompt_hash=row.get("gatekeeper_prompt_hash") or prompt.prompt_hash,
        input_path=INPUT_ALREADY_CLASSIFIED,
        classified_at=row.get("gatekeeper_classified_at"),
    )


class Gatekeeper:
    """
    Per-document gatekeeper run: classify, route, stamp, cache, audit.

    Store, cache and audit sink are optional collaborators; writes to each
    are best-effort.
    """

    def __init__(
        self,
        classifier: GatekeeperClassifier,
        store: Optional[DocumentStore] = None,
        cache: Optional[GatekeeperCache] = None,
        audit_sink: Optional[AuditSink] = None,
    ):
        self.classifier = classifier
        self.prompt = classifier.prompt
        self.store = store
        self.cache = cache
        self.audit_sink = audit_sink

    def run(self, doc: GatekeeperDocInput) -> GatekeeperResult:
        """
        Classify and route one document.

        Returns:
            GatekeeperResult; a NEEDS_REVIEW / UNKNOWN result on any failure

        Raises:
            ConfigurationError: If the model client cannot be configured
        """
        started = time.monotonic()

        if not doc.force_reclassify:
            existing = self._load_row(doc)
            if not (existing and existing.get("gatekeeper_classified_at")):
                existing = doc.stamped_row
            if existing and existing.get("gatekeeper_classified_at"):
                return result_from_row(existing, self.prompt)

        try:
            cached = self._read_cache(doc)
            if cached is not None:
                result = self._build_result(
                    cached.classification,
                    model=cached.model,
                    prompt_version=cached.prompt_version,
                    input_path=INPUT_CACHE,
                    cache_hit=True,
                    started=started,
                    prompt_tokens=cached.prompt_tokens,
                    completion_tokens=cached.completion_tokens,
                )
                self._stamp(doc, result)
                self._emit_events(doc, result)
                return result

            safe_emit(self.audit_sink, AuditEvent(
                kind=audit.DOC_GATEKEEPER_CLASSIFY_REQUESTED,
                deal_id=doc.deal_id,
                payload={
                    "document_id": doc.document_id,
                    "sha256": doc.sha256,
                    "has_ocr_text": doc.has_ocr_text,
                    "mime_type": doc.mime_type,
                },
            ))

            if doc.has_ocr_text:
                output = self.classifier.classify_text(doc.ocr_text or "")
                input_path = INPUT_TEXT
            elif doc.mime_type.lower() in VISION_MIME_TYPES:
                output = self.classifier.classify_vision(self._image_bytes(doc), doc.mime_type)
                input_path = INPUT_VISION
            else:
                logger.warning(
                    f"Gatekeeper: no OCR text and non-image file for document {doc.document_id} "
                    f"({doc.mime_type or 'unknown'}), routing to NEEDS_REVIEW"
                )
                result = self._fail_result(
                    INPUT_NO_OCR_NO_IMAGE,
                    "No OCR text available and file is not a directly-viewable image",
                    REVIEW_NO_OCR_NO_IMAGE,
                    started,
                )
                self._stamp(doc, result)
                self._emit_events(doc, result)
                return result

            result = self._build_result(
                output.classification,
                model=output.model,
                prompt_version=output.prompt_version,
                input_path=input_path,
                cache_hit=False,
                started=started,
                prompt_tokens=output.prompt_tokens,
                completion_tokens=output.completion_tokens,
            )
            self._stamp(doc, result)
            self._write_cache(doc, output)
            self._emit_events(doc, result)
            return result

        except ConfigurationError:
            raise
        except Exception as e:
            logger.error(f"Gatekeeper classification failed for document {doc.document_id}: {e}")
            result = self._fail_result(INPUT_ERROR, str(e) or "unknown error", REVIEW_CLASSIFY_ERROR, started)
            self._stamp(doc, result)
            self._emit_events(doc, result)
            return result

    def run_batch(
        self,
        docs: Sequence[GatekeeperDocInput],
        chunk_size: int = 3,
        batch_cap: int = 20,
    ) -> List[BatchOutcome]:
        """Run a deal's documents in concurrency windows, all settled."""
        return classify_batch(docs, self.run, lambda d: d.document_id, chunk_size, batch_cap)

    # ------------------------------------------------------------------------
    # Result construction
    # ------------------------------------------------------------------------

    def _build_result(
        self,
        classification: GatekeeperClassification,
        model: str,
        prompt_version: str,
        input_path: str,
        cache_hit: bool,
        started: float,
        prompt_tokens: Optional[int] = None,
        completion_tokens: Optional[int] = None,
    ) -> GatekeeperResult:
        route = compute_gatekeeper_route(
            classification.doc_type, classification.confidence, classification.tax_year
        )
        return GatekeeperResult(
            doc_type=classification.doc_type,
            confidence=classification.confidence,
            tax_year=classification.tax_year,
            reasons=list(classification.reasons),
            detected_signals=classification.detected_signals,
            route=route,
            needs_review=route == GatekeeperRoute.NEEDS_REVIEW,
            review_reason_code=review_reason_code(
                classification.doc_type, classification.confidence, classification.tax_year
            ),
            cache_hit=cache_hit,
            model=model,
            prompt_version=prompt_version,
            prompt_hash=self.prompt.prompt_hash,
            input_path=input_path,
            latency_ms=(time.monotonic() - started) * 1000,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )

    def _fail_result(self, input_path: str, message: str, code: str, started: float) -> GatekeeperResult:
        return GatekeeperResult(
            doc_type=GatekeeperDocType.UNKNOWN.value,
            confidence=0.0,
            tax_year=None,
            reasons=[message],
            detected_signals=DetectedSignals(),
            route=GatekeeperRoute.NEEDS_REVIEW,
            needs_review=True,
            review_reason_code=code,
            cache_hit=False,
            model="error",
            prompt_version=self.prompt.version,
            prompt_hash=self.prompt.prompt_hash,
            input_path=input_path,
            latency_ms=(time.monotonic() - started) * 1000,
        )

    # ------------------------------------------------------------------------
    # Collaborators (best-effort)
    # ------------------------------------------------------------------------

    def _load_row(self, doc: GatekeeperDocInput) -> Optional[DocumentRow]:
        if self.store is None:
            return None
        try:
            return self.store.get_document(doc.deal_id, doc.document_id)
        except Exception as e:
            logger.warning(f"Gatekeeper: could not read document {doc.document_id}: {e}")
            return None

    def _image_bytes(self, doc: GatekeeperDocInput) -> bytes:
        if doc.image_bytes is not None:
            return doc.image_bytes
        if not doc.storage_path:
            raise FileNotFoundError(f"No image bytes or storage path for document {doc.document_id}")
        return Path(doc.storage_path).read_bytes()

    def _read_cache(self, doc: GatekeeperDocInput) -> Optional[CachedClassification]:
        if self.cache is None or not doc.sha256:
            return None
        try:
            return self.cache.read(doc.tenant_id, doc.sha256, self.prompt.prompt_hash)
        except Exception as e:
            logger.warning(f"Gatekeeper cache read failed for document {doc.document_id}: {e}")
            return None

    def _write_cache(self, doc: GatekeeperDocInput, output: ModelClassification) -> None:
        if self.cache is None or not doc.sha256:
            return
        try:
            self.cache.write(doc.tenant_id, doc.sha256, self.prompt.prompt_hash, CachedClassification(
                classification=output.classification,
                model=output.model,
                prompt_version=output.prompt_version,
                prompt_tokens=output.prompt_tokens,
                completion_tokens=output.completion_tokens,
            ))
        except Exception as e:
            logger.warning(f"Gatekeeper cache write failed for document {doc.document_id}: {e}")

    def _stamp(self, doc: GatekeeperDocInput, result: GatekeeperResult) -> None:
        if self.store is None:
            return
        try:
            self.store.update_document(doc.deal_id, doc.document_id, gatekeeper_fields(result))
        except Exception as e:
            logger.warning(f"Gatekeeper stamp failed for document {doc.document_id}: {e}")

    def _emit_events(self, doc: GatekeeperDocInput, result: GatekeeperResult) -> None:
        payload = {
            "document_id": doc.document_id,
            "sha256": doc.sha256,
            **result.to_dict(),
            "form_numbers": list(result.detected_signals.form_numbers),
        }

        failed = result.input_path in (INPUT_ERROR, INPUT_NO_OCR_NO_IMAGE)
        classify_kind = audit.DOC_GATEKEEPER_CLASSIFY_FAILED if failed else audit.DOC_GATEKEEPER_CLASSIFIED
        safe_emit(self.audit_sink, AuditEvent(kind=classify_kind, deal_id=doc.deal_id, payload=payload))

        if result.route == GatekeeperRoute.GOOGLE_DOC_AI_CORE:
            route_kind = audit.DOC_ROUTED_TO_GOOGLE_DOCAI
        elif result.route == GatekeeperRoute.STANDARD:
            route_kind = audit.DOC_ROUTED_TO_STANDARD
        else:
            route_kind = audit.DOC_ROUTED_TO_REVIEW
        safe_emit(self.audit_sink, AuditEvent(kind=route_kind, deal_id=doc.deal_id, payload=payload))


# ============================================================================
# Graph Node
# ============================================================================

def gatekeeper_node(state: DealState, gatekeeper: Gatekeeper, chunk_size: int = 3, batch_cap: int = 20) -> dict:
    """
    Node: Gatekeeper

    Triages every document of the deal and stamps gatekeeper_* fields on
    each document row.

    Returns:
        dict with updated documents, gatekeeper_results and batch_errors
    """
    print("--- NODE: Gatekeeper ---")

    deal_id = state.get("deal_id", "")
    tenant_id = state.get("tenant_id") or "default"
    documents = [dict(doc) for doc in state.get("documents", [])]

    inputs = [
        GatekeeperDocInput.from_row({**doc, "deal_id": doc.get("deal_id") or deal_id}, tenant_id)  # type: ignore[arg-type]
        for doc in documents
    ]
    outcomes = gatekeeper.run_batch(inputs, chunk_size, batch_cap)
    by_id = {str(doc.get("id", "")): doc for doc in documents}

    results: Dict[str, Any] = {}
    errors: List[Dict[str, Any]] = list(state.get("batch_errors", []))

    for outcome in outcomes:
        if not outcome.ok:
            errors.append(outcome.to_dict())
            continue
        result: GatekeeperResult = outcome.result
        # Already-classified results carry their original stamp time
        by_id[outcome.document_id].update(gatekeeper_fields(result))
        results[outcome.document_id] = result.to_dict()
        print(f"   Doc {outcome.document_id}: {result.doc_type} -> {result.route.value} "
              f"({result.confidence:.0%}, {result.input_path})")

    review = sum(1 for r in results.values() if r["needs_review"])
    print(f"   Triaged {len(results)} documents, {review} need review")

    return {
        "documents": documents,
        "gatekeeper_results": results,
        "batch_errors": errors,
    }
