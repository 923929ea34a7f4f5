"""
Tests for the gatekeeper classifier and orchestrator.

The chat model is a MagicMock returning AIMessage JSON; the document store
is a real DocumentStore under tmp_path.
"""

import json
import logging
import os
from unittest.mock import MagicMock, patch

import pytest
from langchain_core.messages import AIMessage

from docengine import audit
from docengine.audit import AuditSink, InMemoryAuditSink
from docengine.config import EngineConfig
from docengine.gatekeeper import (
    HEAD_CHARS,
    TAIL_CHARS,
    TRUNCATION_MARKER,
    Gatekeeper,
    GatekeeperClassifier,
    GatekeeperDocInput,
    GatekeeperPrompt,
    compute_prompt_hash,
    gatekeeper_fields,
    gatekeeper_node,
    truncate_text,
)
from docengine.gatekeeper_cache import CachedClassification, GatekeeperCache, InMemoryGatekeeperCache
from docengine.models import ConfigurationError, GatekeeperClassification, GatekeeperRoute, ModelResponseError
from document_store import DocumentStore


RETURN_TEXT = (
    "Form 1120-S U.S. Income Tax Return for an S Corporation\n"
    "For calendar year 2023\nEmployer identification number 12-3456789\n"
    + "Ordinary business income (loss) 125,000\n" * 5
)

BUSINESS_RETURN_RESPONSE = {
    "doc_type": "BUSINESS_TAX_RETURN",
    "confidence": 0.95,
    "tax_year": 2023,
    "reasons": ["Form 1120-S header visible"],
    "detected_signals": {"form_numbers": ["1120-S"], "has_ein": True, "has_ssn": False},
}


def _llm(payload=None, usage=None) -> MagicMock:
    llm = MagicMock()
    content = json.dumps(payload or BUSINESS_RETURN_RESPONSE)
    if usage:
        llm.invoke.return_value = AIMessage(content=content, usage_metadata=usage)
    else:
        llm.invoke.return_value = AIMessage(content=content)
    return llm


def _doc_input(**overrides) -> GatekeeperDocInput:
    values = dict(
        document_id="doc-1",
        deal_id="deal-1",
        tenant_id="tenant-1",
        mime_type="application/pdf",
        sha256="abc123",
        ocr_text=RETURN_TEXT,
    )
    values.update(overrides)
    return GatekeeperDocInput(**values)


@pytest.fixture
def store(tmp_path):
    store = DocumentStore(str(tmp_path / "docs"))
    store.save_document("deal-1", {"id": "doc-1", "filename": "return.pdf", "text": RETURN_TEXT})
    return store


def _gatekeeper(llm, store=None, cache=None, sink=None) -> Gatekeeper:
    classifier = GatekeeperClassifier(GatekeeperPrompt(), EngineConfig(), llm=llm)
    return Gatekeeper(
        classifier,
        store=store,
        cache=cache if cache is not None else InMemoryGatekeeperCache(),
        audit_sink=sink if sink is not None else InMemoryAuditSink(),
    )


# ============================================================================
# Prompt Tests
# ============================================================================

class TestGatekeeperPrompt:
    """Tests for prompt hashing and truncation."""

    def test_prompt_hash_is_stable(self):
        """Same prompt and schema give the same 16-char hash."""
        first = GatekeeperPrompt()
        second = GatekeeperPrompt()
        assert first.prompt_hash == second.prompt_hash
        assert len(first.prompt_hash) == 16
        int(first.prompt_hash, 16)

    def test_prompt_hash_changes_with_prompt(self):
        """Editing the prompt changes the hash."""
        assert GatekeeperPrompt("other prompt").prompt_hash != GatekeeperPrompt().prompt_hash

    def test_prompt_hash_changes_with_schema(self):
        """Editing the schema changes the hash."""
        assert compute_prompt_hash("p", {"a": 1}) != compute_prompt_hash("p", {"a": 2})

    def test_schema_offers_eleven_types(self):
        """The schema enum has the eleven prompt types."""
        schema = GatekeeperPrompt().schema
        doc_types = schema["properties"]["doc_type"]["enum"]
        assert len(doc_types) == 11
        assert "PERSONAL_FINANCIAL_STATEMENT" not in doc_types

    def test_full_system_prompt_includes_schema(self):
        """The schema is appended to the system prompt."""
        prompt = GatekeeperPrompt()
        assert prompt.full_system_prompt.startswith(prompt.system_prompt)
        assert "JSON SCHEMA:" in prompt.full_system_prompt

    def test_truncate_short_text(self):
        """Short text is unchanged."""
        assert truncate_text("short") == "short"

    def test_truncate_long_text(self):
        """Long text keeps head and tail."""
        text = "H" * 10000 + "T" * 10000
        truncated = truncate_text(text)
        assert len(truncated) == HEAD_CHARS + len(TRUNCATION_MARKER) + TAIL_CHARS
        assert truncated.startswith("H" * HEAD_CHARS)
        assert truncated.endswith("T" * TAIL_CHARS)


# ============================================================================
# Classifier Tests
# ============================================================================

class TestGatekeeperClassifier:
    """Tests for GatekeeperClassifier."""

    def test_classify_text(self):
        """Text path sends the truncated OCR text."""
        llm = _llm(usage={"input_tokens": 900, "output_tokens": 60, "total_tokens": 960})
        output = GatekeeperClassifier(GatekeeperPrompt(), EngineConfig(), llm=llm).classify_text(RETURN_TEXT)

        messages = llm.invoke.call_args[0][0]
        assert "JSON SCHEMA:" in messages[0].content
        assert messages[1].content.startswith("Classify this document:\n\n")
        assert output.classification.doc_type == "BUSINESS_TAX_RETURN"
        assert output.classification.detected_signals.has_ein is True
        assert output.prompt_tokens == 900
        assert output.completion_tokens == 60
        assert output.model == "gpt-4o-mini"

    def test_classify_vision(self):
        """Vision path sends a low-detail data URL."""
        llm = _llm()
        GatekeeperClassifier(GatekeeperPrompt(), EngineConfig(), llm=llm).classify_vision(b"\x89PNG", "image/png")

        content = llm.invoke.call_args[0][0][1].content
        image_part = content[1]
        assert image_part["type"] == "image_url"
        assert image_part["image_url"]["detail"] == "low"
        assert image_part["image_url"]["url"].startswith("data:image/png;base64,")

    def test_schema_violation(self):
        """An out-of-enum type is rejected."""
        llm = _llm({"doc_type": "T12", "confidence": 0.9})
        classifier = GatekeeperClassifier(GatekeeperPrompt(), EngineConfig(), llm=llm)
        with pytest.raises(ModelResponseError):
            classifier.classify_text(RETURN_TEXT)

    def test_confidence_out_of_range(self):
        """Confidence above 1 is rejected."""
        llm = _llm({"doc_type": "W2", "confidence": 1.5})
        classifier = GatekeeperClassifier(GatekeeperPrompt(), EngineConfig(), llm=llm)
        with pytest.raises(ModelResponseError):
            classifier.classify_text(RETURN_TEXT)

    def test_missing_key(self):
        """No injected model and no key is a configuration error."""
        classifier = GatekeeperClassifier(GatekeeperPrompt(), EngineConfig())
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError):
                classifier.classify_text(RETURN_TEXT)


# ============================================================================
# Orchestrator Tests
# ============================================================================

class TestGatekeeperRun:
    """Tests for Gatekeeper.run."""

    def test_text_path(self, store):
        """OCR text is classified, routed, stamped, cached and audited."""
        llm = _llm()
        cache = InMemoryGatekeeperCache()
        sink = InMemoryAuditSink()
        result = _gatekeeper(llm, store, cache, sink).run(_doc_input())

        assert result.doc_type == "BUSINESS_TAX_RETURN"
        assert result.route == GatekeeperRoute.GOOGLE_DOC_AI_CORE
        assert result.needs_review is False
        assert result.input_path == "text"
        assert result.cache_hit is False

        row = store.get_document("deal-1", "doc-1")
        assert row["gatekeeper_route"] == "GOOGLE_DOC_AI_CORE"
        assert row["gatekeeper_tax_year"] == 2023
        assert row["gatekeeper_form_numbers"] == ["1120-S"]
        assert row["gatekeeper_classified_at"]
        assert row["gatekeeper_error"] is None

        assert len(cache) == 1
        assert sink.kinds() == [
            audit.DOC_GATEKEEPER_CLASSIFY_REQUESTED,
            audit.DOC_GATEKEEPER_CLASSIFIED,
            audit.DOC_ROUTED_TO_GOOGLE_DOCAI,
        ]

    def test_idempotent(self, store):
        """A stamped document is not reclassified."""
        llm = _llm()
        gatekeeper = _gatekeeper(llm, store)
        gatekeeper.run(_doc_input())
        second = gatekeeper.run(_doc_input())

        assert second.input_path == "already_classified"
        assert second.doc_type == "BUSINESS_TAX_RETURN"
        assert second.route == GatekeeperRoute.GOOGLE_DOC_AI_CORE
        assert llm.invoke.call_count == 1

    def test_idempotent_from_row_without_store(self):
        """A stamp carried on the caller's row is honoured with no store wired."""
        llm = _llm()
        row = {
            "id": "doc-1",
            "deal_id": "deal-1",
            "mime_type": "application/pdf",
            "text": RETURN_TEXT,
            "gatekeeper_doc_type": "OTHER",
            "gatekeeper_confidence": 0.4,
            "gatekeeper_route": "NEEDS_REVIEW",
            "gatekeeper_needs_review": True,
            "gatekeeper_review_reason_code": "LOW_CONFIDENCE",
            "gatekeeper_classified_at": "2026-01-01T00:00:00+00:00",
        }
        result = _gatekeeper(llm).run(GatekeeperDocInput.from_row(row, "tenant-1"))

        assert result.input_path == "already_classified"
        assert result.needs_review is True
        assert result.classified_at == "2026-01-01T00:00:00+00:00"
        llm.invoke.assert_not_called()

    def test_force_reclassify_uses_cache(self, store):
        """Forcing skips the idempotency check but still hits the cache."""
        llm = _llm()
        gatekeeper = _gatekeeper(llm, store)
        gatekeeper.run(_doc_input())
        forced = gatekeeper.run(_doc_input(force_reclassify=True))

        assert forced.input_path == "cache"
        assert forced.cache_hit is True
        assert llm.invoke.call_count == 1

    def test_cache_hit_recomputes_route(self):
        """Routes come from current rules, not from the cache."""
        cache = InMemoryGatekeeperCache()
        prompt = GatekeeperPrompt()
        cache.write("tenant-1", "abc123", prompt.prompt_hash, CachedClassification(
            classification=GatekeeperClassification(doc_type="BUSINESS_TAX_RETURN", confidence=0.95, tax_year=None),
            model="gpt-4o-mini",
            prompt_version="gatekeeper_v1",
        ))
        llm = _llm()
        result = _gatekeeper(llm, cache=cache).run(_doc_input())

        assert result.input_path == "cache"
        assert result.route == GatekeeperRoute.NEEDS_REVIEW
        assert result.review_reason_code == "MISSING_TAX_YEAR"
        llm.invoke.assert_not_called()

    def test_no_sha_skips_cache(self):
        """Without a content hash, the cache is neither read nor written."""
        cache = InMemoryGatekeeperCache()
        _gatekeeper(_llm(), cache=cache).run(_doc_input(sha256=None))
        assert len(cache) == 0

    def test_vision_path(self):
        """Images without OCR text go through vision."""
        llm = _llm({"doc_type": "DRIVERS_LICENSE", "confidence": 0.9})
        result = _gatekeeper(llm).run(_doc_input(ocr_text=None, mime_type="image/png", image_bytes=b"\x89PNG"))

        assert result.input_path == "vision"
        assert result.route == GatekeeperRoute.STANDARD

    def test_vision_reads_storage_path(self, tmp_path):
        """Image bytes are read from the storage path."""
        image = tmp_path / "license.jpg"
        image.write_bytes(b"\xff\xd8\xff")
        llm = _llm({"doc_type": "DRIVERS_LICENSE", "confidence": 0.9})
        result = _gatekeeper(llm).run(_doc_input(ocr_text=None, mime_type="image/jpeg", storage_path=str(image)))

        assert result.input_path == "vision"

    def test_no_ocr_no_image(self, store, caplog):
        """A PDF without OCR text goes to review without a model call."""
        llm = _llm()
        sink = InMemoryAuditSink()
        with caplog.at_level(logging.WARNING, logger="docengine.gatekeeper"):
            result = _gatekeeper(llm, store, sink=sink).run(_doc_input(ocr_text=None))

        assert result.doc_type == "UNKNOWN"
        assert result.route == GatekeeperRoute.NEEDS_REVIEW
        assert result.input_path == "no_ocr_no_image"
        assert result.review_reason_code == "NO_OCR_NO_IMAGE"
        llm.invoke.assert_not_called()
        assert sink.kinds() == [
            audit.DOC_GATEKEEPER_CLASSIFY_REQUESTED,
            audit.DOC_GATEKEEPER_CLASSIFY_FAILED,
            audit.DOC_ROUTED_TO_REVIEW,
        ]
        assert "no OCR text" in caplog.text
        assert store.get_document("deal-1", "doc-1")["gatekeeper_route"] == "NEEDS_REVIEW"

    def test_short_ocr_text_is_not_text_path(self):
        """100 characters or fewer does not count as OCR text."""
        result = _gatekeeper(_llm()).run(_doc_input(ocr_text="x" * 100))
        assert result.input_path == "no_ocr_no_image"

    def test_model_error_fails_closed(self, store):
        """A model error becomes UNKNOWN / NEEDS_REVIEW with the error stamped."""
        llm = MagicMock()
        llm.invoke.side_effect = RuntimeError("boom")
        sink = InMemoryAuditSink()
        result = _gatekeeper(llm, store, sink=sink).run(_doc_input())

        assert result.doc_type == "UNKNOWN"
        assert result.confidence == 0.0
        assert result.route == GatekeeperRoute.NEEDS_REVIEW
        assert result.model == "error"
        assert result.input_path == "error"
        assert result.reasons == ["boom"]
        assert result.review_reason_code == "CLASSIFY_ERROR"
        assert store.get_document("deal-1", "doc-1")["gatekeeper_error"] == "boom"
        assert audit.DOC_GATEKEEPER_CLASSIFY_FAILED in sink.kinds()

    def test_configuration_error_propagates(self):
        """Missing credentials are raised, not hidden."""
        gatekeeper = Gatekeeper(GatekeeperClassifier(GatekeeperPrompt(), EngineConfig()))
        with patch.dict(os.environ, {}, clear=True):
            with pytest.raises(ConfigurationError):
                gatekeeper.run(_doc_input())

    def test_collaborator_failures_are_not_fatal(self):
        """Cache, store and audit failures never change the result."""
        cache = MagicMock(spec=GatekeeperCache)
        cache.read.return_value = None
        cache.write.side_effect = OSError("read-only")
        store = MagicMock(spec=DocumentStore)
        store.get_document.return_value = None
        store.update_document.side_effect = OSError("disk full")
        sink = MagicMock(spec=AuditSink)
        sink.emit.side_effect = RuntimeError("webhook down")

        result = _gatekeeper(_llm(), store, cache, sink).run(_doc_input())

        assert result.route == GatekeeperRoute.GOOGLE_DOC_AI_CORE
        assert result.input_path == "text"


class TestGatekeeperHelpers:
    """Tests for stamping helpers and the batch runner."""

    def test_gatekeeper_fields(self):
        """All gatekeeper_* fields are produced."""
        result = _gatekeeper(_llm()).run(_doc_input())
        fields = gatekeeper_fields(result, classified_at="2026-01-01T00:00:00+00:00")

        assert fields["gatekeeper_doc_type"] == "BUSINESS_TAX_RETURN"
        assert fields["gatekeeper_needs_review"] is False
        assert fields["gatekeeper_classified_at"] == "2026-01-01T00:00:00+00:00"
        assert fields["gatekeeper_signals"]["has_ein"] is True
        assert fields["gatekeeper_review_reason_code"] is None
        assert len(fields) == 14

    def test_from_row(self):
        """Document rows become inputs."""
        doc = GatekeeperDocInput.from_row(
            {"id": "d1", "deal_id": "deal-1", "mime_type": "image/png", "text": "abc"}, tenant_id="t9"
        )
        assert doc.tenant_id == "t9"
        assert doc.ocr_text == "abc"
        assert doc.has_ocr_text is False

    def test_run_batch(self):
        """Batch outcomes per document, in order."""
        outcomes = _gatekeeper(_llm()).run_batch([
            _doc_input(document_id="a", sha256="1"),
            _doc_input(document_id="b", sha256="2"),
        ])
        assert [o.document_id for o in outcomes] == ["a", "b"]
        assert all(o.ok for o in outcomes)


class TestGatekeeperNode:
    """Tests for the graph node."""

    def test_stamps_documents(self):
        """Rows in state get gatekeeper_* fields."""
        state = {
            "deal_id": "deal-1",
            "tenant_id": "tenant-1",
            "documents": [
                {"id": "doc-1", "filename": "return.pdf", "mime_type": "application/pdf", "text": RETURN_TEXT},
                {"id": "doc-2", "filename": "scan.pdf", "mime_type": "application/pdf"},
            ],
            "batch_errors": [],
        }
        update = gatekeeper_node(state, gatekeeper=_gatekeeper(_llm()))

        docs = {d["id"]: d for d in update["documents"]}
        assert docs["doc-1"]["gatekeeper_route"] == "GOOGLE_DOC_AI_CORE"
        assert docs["doc-2"]["gatekeeper_route"] == "NEEDS_REVIEW"
        assert set(update["gatekeeper_results"]) == {"doc-1", "doc-2"}
        assert update["batch_errors"] == []

    def test_stamped_rows_keep_original_stamp(self):
        """A row already stamped in state keeps its fields and timestamp."""
        llm = _llm()
        gatekeeper = _gatekeeper(llm)
        first = gatekeeper_node({
            "deal_id": "deal-1",
            "documents": [{"id": "doc-1", "mime_type": "application/pdf", "text": RETURN_TEXT}],
        }, gatekeeper=gatekeeper)
        stamped = first["documents"][0]

        second = gatekeeper_node({"deal_id": "deal-1", "documents": [stamped]}, gatekeeper=gatekeeper)

        doc = second["documents"][0]
        assert doc["gatekeeper_classified_at"] == stamped["gatekeeper_classified_at"]
        assert doc["gatekeeper_route"] == "GOOGLE_DOC_AI_CORE"
        assert doc["gatekeeper_tax_year"] == 2023
        assert second["gatekeeper_results"]["doc-1"]["input_path"] == "already_classified"
        assert llm.invoke.call_count == 1
