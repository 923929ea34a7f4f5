"""
Confidence gate between deterministic tiers and the LLM escalator.
"""

from docengine.models import GateDecision, Tier1Result, Tier2Result


# Tier 2 matches at or above this confidence are accepted without Tier 3
TIER2_ACCEPT_THRESHOLD = 0.80


def apply_confidence_gate(tier1: Tier1Result, tier2: Tier2Result) -> GateDecision:
    """
    Decide whether deterministic output is accepted.

    Tier 1 match: always accepted.
    Tier 2 match with confidence >= 0.80: accepted.
    Anything else: escalate.
    """
    if tier1.matched:
        return GateDecision(
            accepted=True,
            source="tier1",
            doc_type=tier1.doc_type,
            confidence=tier1.confidence,
            evidence=list(tier1.evidence),
            form_numbers=tier1.form_numbers,
            tax_year=tier1.tax_year,
            entity_type=tier1.entity_type,
            reason=f"Tier 1 anchor {tier1.anchor_id} matched",
        )

    if tier2.matched and tier2.confidence >= TIER2_ACCEPT_THRESHOLD:
        return GateDecision(
            accepted=True,
            source="tier2",
            doc_type=tier2.doc_type,
            confidence=tier2.confidence,
            evidence=list(tier2.evidence),
            reason=f"Tier 2 pattern {tier2.pattern_id} at {tier2.confidence} >= {TIER2_ACCEPT_THRESHOLD}",
        )

    if tier2.matched:
        reason = f"Tier 2 pattern {tier2.pattern_id} at {tier2.confidence} below {TIER2_ACCEPT_THRESHOLD}"
    else:
        reason = "No deterministic match"

    return GateDecision(accepted=False, reason=reason)
