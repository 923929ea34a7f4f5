from typing import TypedDict, List, Dict, Optional, Any

# ============================================================================
# Intake Scenario
# ============================================================================

class IntakeScenario(TypedDict, total=False):
    """
    Loan intake scenario produced upstream by the scenario subsystem.

    Only the flags that drive document requirements are read here; any other
    keys are carried through untouched.
    """
    product_type: Optional[str]  # e.g., 'SBA_7A', 'CRE_TERM'
    has_business_tax_returns: bool
    has_financial_statements: bool


# ============================================================================
# Document Record
# ============================================================================

class DocumentRow(TypedDict, total=False):
    """
    One uploaded document of a deal, as persisted by the document store.

    Classification sources are stamped onto the same row:
    human confirmation, canonical type, spine (ai_*) and gatekeeper_* fields.
    Consumers read type and year through the effective resolver only.
    """
    # Identity
    id: str
    deal_id: str
    tenant_id: str

    # File
    filename: str
    mime_type: Optional[str]
    sha256: Optional[str]
    storage_path: Optional[str]
    text: Optional[str]  # OCR text
    docai: Optional[Dict[str, Any]]  # {'label': ..., 'confidence': ..., 'processor_type': ...}

    # Canonical / human-confirmed classification
    confirmed_doc_type: Optional[str]
    confirmed_at: Optional[str]
    canonical_type: Optional[str]
    document_type: Optional[str]
    doc_year: Optional[int]

    # Spine classification
    ai_doc_type: Optional[str]
    ai_tax_year: Optional[int]
    ai_confidence: Optional[float]
    ai_band: Optional[str]
    ai_spine_tier: Optional[str]
    ai_reason: Optional[str]
    ai_model: Optional[str]
    ai_spine_version: Optional[str]

    # Gatekeeper triage
    gatekeeper_doc_type: Optional[str]
    gatekeeper_confidence: Optional[float]
    gatekeeper_tax_year: Optional[int]
    gatekeeper_form_numbers: List[str]
    gatekeeper_route: Optional[str]  # 'STANDARD' | 'GOOGLE_DOC_AI_CORE' | 'NEEDS_REVIEW'
    gatekeeper_needs_review: Optional[bool]
    gatekeeper_reasons: List[str]
    gatekeeper_signals: Optional[Dict[str, Any]]
    gatekeeper_model: Optional[str]
    gatekeeper_prompt_version: Optional[str]
    gatekeeper_prompt_hash: Optional[str]
    gatekeeper_classified_at: Optional[str]
    gatekeeper_error: Optional[str]
    gatekeeper_review_reason_code: Optional[str]


# ============================================================================
# Main Deal State
# ============================================================================

class DealState(TypedDict, total=False):
    """
    The central state of the document engine graph.
    This dict is passed and updated by every node in the graph.
    """
    # Meta Information
    deal_id: str
    tenant_id: str
    status: str  # 'Processing', 'Needs_Review', 'Ready'

    # Inputs
    scenario: IntakeScenario
    as_of: Optional[str]  # ISO date; defaults to today

    # Documents of the deal (stamped in place by each node)
    documents: List[DocumentRow]

    # Node outputs
    classification_results: Dict[str, Dict[str, Any]]  # document id -> spine result
    gatekeeper_results: Dict[str, Dict[str, Any]]  # document id -> gatekeeper result
    readiness: Optional[Dict[str, Any]]
    batch_errors: List[Dict[str, Any]]
