"""
Tests for the confidence gate.
"""

from docengine.gate import TIER2_ACCEPT_THRESHOLD, apply_confidence_gate
from docengine.models import EvidenceItem, SpineDocType, Tier1Result, Tier2Result


def _tier1(doc_type=SpineDocType.IRS_PERSONAL) -> Tier1Result:
    return Tier1Result(
        matched=True,
        doc_type=doc_type,
        confidence=0.97,
        anchor_id="IRS_1040_FORM_HEADER",
        evidence=[EvidenceItem("form_match", "IRS_1040_FORM_HEADER", "Form 1040", 0.97)],
        form_numbers=["1040"],
        tax_year=2023,
        entity_type="personal",
    )


def _tier2(confidence: float) -> Tier2Result:
    return Tier2Result(
        matched=True,
        doc_type=SpineDocType.BANK_STATEMENT,
        confidence=confidence,
        pattern_id="BANK_STMT_TRANSACTION_LOG",
    )


# ============================================================================
# Gate Tests
# ============================================================================

class TestConfidenceGate:
    """Tests for apply_confidence_gate."""

    def test_tier1_always_accepted(self):
        """A Tier 1 match is accepted and carries its year and forms."""
        decision = apply_confidence_gate(_tier1(), Tier2Result(matched=False))
        assert decision.accepted is True
        assert decision.source == "tier1"
        assert decision.doc_type == SpineDocType.IRS_PERSONAL
        assert decision.tax_year == 2023
        assert decision.form_numbers == ["1040"]

    def test_tier1_wins_over_tier2(self):
        """Tier 2 never overrides Tier 1."""
        decision = apply_confidence_gate(_tier1(), _tier2(0.89))
        assert decision.source == "tier1"
        assert decision.doc_type == SpineDocType.IRS_PERSONAL

    def test_tier2_at_threshold_accepted(self):
        """0.80 is inclusive."""
        decision = apply_confidence_gate(Tier1Result(matched=False), _tier2(TIER2_ACCEPT_THRESHOLD))
        assert decision.accepted is True
        assert decision.source == "tier2"
        assert decision.doc_type == SpineDocType.BANK_STATEMENT

    def test_tier2_just_below_threshold_escalates(self):
        """0.799 escalates."""
        decision = apply_confidence_gate(Tier1Result(matched=False), _tier2(0.799))
        assert decision.accepted is False
        assert "below" in decision.reason

    def test_no_match_escalates(self):
        """Neither tier matched."""
        decision = apply_confidence_gate(Tier1Result(matched=False), Tier2Result(matched=False))
        assert decision.accepted is False
        assert decision.source is None
        assert decision.reason == "No deterministic match"
