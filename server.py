"""
FastAPI Server for the Document Classification & Completeness Engine

Provides endpoints for:
- Classifying a single document (spine)
- Storing a deal document and triaging it (spine + gatekeeper)
- Listing a deal's documents
- Querying deal readiness
- Resolving auto-attach thresholds
"""

import hashlib
import logging
import uuid
from datetime import date
from functools import lru_cache
from typing import Dict, Any, List, Optional

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from docengine.config import EngineConfig
from docengine.gatekeeper import Gatekeeper, GatekeeperDocInput
from docengine.models import ConfigurationError, DocAiSignals
from docengine.readiness import compute_readiness
from docengine.resolver import resolve_record
from docengine.spine import SpineClassifier, spine_fields
from docengine.thresholds import resolve_auto_attach_threshold
from document_store import DocumentStore
from main import create_gatekeeper, create_spine_classifier

load_dotenv()

logger = logging.getLogger(__name__)

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Document Engine API",
    description="Classification, triage and readiness for loan underwriting documents",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ============================================================================
# Dependencies
# ============================================================================

@lru_cache()
def get_config() -> EngineConfig:
    return EngineConfig.from_env()


@lru_cache()
def get_store() -> DocumentStore:
    return DocumentStore(get_config().document_store_dir)


@lru_cache()
def get_spine_classifier() -> SpineClassifier:
    return create_spine_classifier(get_config())


@lru_cache()
def get_gatekeeper() -> Gatekeeper:
    return create_gatekeeper(get_config(), get_store())


# ============================================================================
# Pydantic Models for API
# ============================================================================

class DocAiSignalsRequest(BaseModel):
    label: Optional[str] = None
    confidence: Optional[float] = None
    processor_type: Optional[str] = None


class ClassifyRequest(BaseModel):
    """A single document to classify."""
    text: Optional[str] = None
    filename: Optional[str] = None
    mime_type: Optional[str] = None
    docai: Optional[DocAiSignalsRequest] = None


class DocumentUpload(BaseModel):
    """A document added to a deal."""
    id: Optional[str] = None
    tenant_id: str = "default"
    filename: str
    mime_type: Optional[str] = None
    text: Optional[str] = None
    sha256: Optional[str] = None
    storage_path: Optional[str] = None
    docai: Optional[DocAiSignalsRequest] = None
    force_reclassify: bool = False


# ============================================================================
# API Endpoints
# ============================================================================

@app.get("/api/health")
def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "doc-engine-api"}


@app.post("/api/classify")
def classify_document(
    request: ClassifyRequest,
    classifier: SpineClassifier = Depends(get_spine_classifier),
) -> Dict[str, Any]:
    """Classify one document and resolve its auto-attach threshold."""
    docai = DocAiSignals.from_dict(request.docai.model_dump()) if request.docai else None
    try:
        result = classifier.classify(request.text, request.filename, request.mime_type, docai=docai)
    except ConfigurationError as e:
        logger.error(f"Engine misconfigured: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    threshold = resolve_auto_attach_threshold(result.spine_tier, result.band)
    return {
        "classification": result.to_dict(),
        "auto_attach": {
            **threshold.to_dict(),
            "eligible": result.confidence >= threshold.threshold,
        },
    }


@app.post("/api/deals/{deal_id}/documents")
def add_document(
    deal_id: str,
    upload: DocumentUpload,
    store: DocumentStore = Depends(get_store),
    classifier: SpineClassifier = Depends(get_spine_classifier),
    gatekeeper: Gatekeeper = Depends(get_gatekeeper),
) -> Dict[str, Any]:
    """Store a document, classify it, and triage it through the gatekeeper."""
    doc_id = upload.id or str(uuid.uuid4())
    sha256 = upload.sha256
    if not sha256 and upload.text:
        sha256 = hashlib.sha256(upload.text.encode("utf-8")).hexdigest()

    row = store.save_document(deal_id, {
        "id": doc_id,
        "tenant_id": upload.tenant_id,
        "filename": upload.filename,
        "mime_type": upload.mime_type,
        "text": upload.text,
        "sha256": sha256,
        "storage_path": upload.storage_path,
        "docai": upload.docai.model_dump() if upload.docai else None,
    })

    docai = DocAiSignals.from_dict(upload.docai.model_dump()) if upload.docai else None
    try:
        result = classifier.classify(upload.text, upload.filename, upload.mime_type, docai=docai, artifact_id=doc_id)
        store.update_document(deal_id, doc_id, spine_fields(result))
        gatekeeper_result = gatekeeper.run(GatekeeperDocInput.from_row(
            {**row, "sha256": sha256}, upload.tenant_id, force_reclassify=upload.force_reclassify
        ))
    except ConfigurationError as e:
        logger.error(f"Engine misconfigured: {e}")
        raise HTTPException(status_code=503, detail=str(e))

    stored = store.get_document(deal_id, doc_id) or row
    return {
        "document_id": doc_id,
        "deal_id": deal_id,
        "classification": result.to_dict(),
        "gatekeeper": gatekeeper_result.to_dict(),
        "resolved": resolve_record(stored).to_dict(),
    }


@app.get("/api/deals/{deal_id}/documents")
def list_deal_documents(deal_id: str, store: DocumentStore = Depends(get_store)) -> List[Dict[str, Any]]:
    """List a deal's documents with their resolved classification."""
    return [
        {**{k: v for k, v in row.items() if k != "text"}, "resolved": resolve_record(row).to_dict()}
        for row in store.list_documents(deal_id)
    ]


@app.get("/api/deals/{deal_id}/readiness")
def get_deal_readiness(
    deal_id: str,
    has_business_tax_returns: bool = True,
    has_financial_statements: bool = True,
    as_of: Optional[date] = None,
    store: DocumentStore = Depends(get_store),
) -> Dict[str, Any]:
    """Completeness of a deal's document set."""
    if deal_id not in store.list_deals():
        raise HTTPException(status_code=404, detail="Deal not found")

    scenario = {
        "has_business_tax_returns": has_business_tax_returns,
        "has_financial_statements": has_financial_statements,
    }
    result = compute_readiness(deal_id, store, scenario, as_of)  # type: ignore[arg-type]
    return {"deal_id": deal_id, **result.to_dict()}


@app.get("/api/thresholds/{tier}/{band}")
def get_threshold(tier: str, band: str) -> Dict[str, Any]:
    """Baseline auto-attach cutoff for a spine tier and confidence band."""
    try:
        resolution = resolve_auto_attach_threshold(tier, band)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"tier": tier, "band": band.upper(), **resolution.to_dict()}


# ============================================================================
# Run with: uvicorn server:app --reload
# ============================================================================
