from functools import partial
from typing import Optional

from langgraph.graph import StateGraph, START, END
from dotenv import load_dotenv

# Import State
from state import DealState

# Import Engine
from docengine.audit import AuditSink, build_audit_sink
from docengine.config import EngineConfig
from docengine.gatekeeper import Gatekeeper, GatekeeperClassifier, GatekeeperPrompt, gatekeeper_node
from docengine.gatekeeper_cache import GatekeeperCache, InMemoryGatekeeperCache, JsonFileGatekeeperCache
from docengine.llm_escalator import LLMEscalator, Tier3Prompt
from docengine.readiness import readiness_node
from docengine.spine import SpineClassifier, spine_classifier_node
from document_store import DocumentStore

# Load Env
load_dotenv()


# ============================================================================
# Engine Construction
# ============================================================================

def create_spine_classifier(config: EngineConfig) -> SpineClassifier:
    """Spine classifier with the curated Tier 3 prompt loaded once."""
    escalator = LLMEscalator(Tier3Prompt.from_file(config.confusion_examples_path), config)
    return SpineClassifier(escalator=escalator, config=config)


def create_gatekeeper_cache(config: EngineConfig) -> GatekeeperCache:
    if config.gatekeeper_cache_path:
        return JsonFileGatekeeperCache(config.gatekeeper_cache_path)
    return InMemoryGatekeeperCache()


def create_gatekeeper(
    config: EngineConfig,
    store: Optional[DocumentStore] = None,
    audit_sink: Optional[AuditSink] = None,
) -> Gatekeeper:
    """Gatekeeper with its prompt, cache and audit sink."""
    classifier = GatekeeperClassifier(GatekeeperPrompt(), config)
    return Gatekeeper(
        classifier,
        store=store,
        cache=create_gatekeeper_cache(config),
        audit_sink=audit_sink or build_audit_sink(config.audit_webhook_url),
    )


def persist_documents_node(state: DealState, store: DocumentStore) -> dict:
    """
    Node: Persist

    Merges the stamped document rows into the document store.
    """
    print("--- NODE: Persist Documents ---")
    deal_id = state.get("deal_id", "")
    for doc in state.get("documents", []):
        store.merge_document(doc.get("deal_id") or deal_id, doc)
    print(f"   💾 Saved {len(state.get('documents', []))} documents for deal {deal_id}")
    return {"status": state.get("status") or "Processing"}


def build_graph(
    spine_classifier: SpineClassifier,
    gatekeeper: Gatekeeper,
    store: Optional[DocumentStore] = None,
    config: Optional[EngineConfig] = None,
):
    """
    Constructs the LangGraph state machine.

    spine -> gatekeeper -> persist (when a store is given) -> readiness
    """
    config = config or EngineConfig()
    builder = StateGraph(DealState)

    # 1. Add Nodes
    builder.add_node("spine", partial(spine_classifier_node, classifier=spine_classifier))
    builder.add_node("gatekeeper", partial(
        gatekeeper_node,
        gatekeeper=gatekeeper,
        chunk_size=config.gatekeeper_chunk_size,
        batch_cap=config.gatekeeper_batch_cap,
    ))
    builder.add_node("readiness", readiness_node)
    if store is not None:
        builder.add_node("persist", partial(persist_documents_node, store=store))

    # 2. Add Edges (The Flow)
    # Conditional logic: Does the deal have any documents?
    def check_documents(state):
        if state.get("documents"):
            return "spine"
        return "readiness"

    builder.add_conditional_edges(START, check_documents)
    builder.add_edge("spine", "gatekeeper")
    if store is not None:
        builder.add_edge("gatekeeper", "persist")
        builder.add_edge("persist", "readiness")
    else:
        builder.add_edge("gatekeeper", "readiness")
    builder.add_edge("readiness", END)

    # 3. Compile
    return builder.compile()


if __name__ == "__main__":
    config = EngineConfig.from_env()
    store = DocumentStore(config.document_store_dir)
    app = build_graph(
        create_spine_classifier(config),
        create_gatekeeper(config, store),
        store=store,
        config=config,
    )

    # Simulate an initial run
    print("Starting Document Engine...")
    documents = [
        {
            "id": "doc-1",
            "deal_id": "12345",
            "filename": "2023_1040.pdf",
            "mime_type": "application/pdf",
            "text": "Form 1040\nU.S. Individual Income Tax Return\nTax Year 2023",
        },
    ]
    for doc in documents:
        store.save_document("12345", doc)  # type: ignore[arg-type]

    initial_state: DealState = {
        "deal_id": "12345",
        "tenant_id": "default",
        "status": "Processing",
        "scenario": {"has_business_tax_returns": True, "has_financial_statements": True},
        "as_of": None,
        "documents": documents,  # type: ignore[typeddict-item]
        "classification_results": {},
        "gatekeeper_results": {},
        "readiness": None,
        "batch_errors": [],
    }
    app.invoke(initial_state)
