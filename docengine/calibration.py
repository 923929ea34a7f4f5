"""
Confidence calibration.

Applies explicit penalty terms to a tier's raw confidence, clamps the result
to [FLOOR, CEILING] and derives a band. Every applied penalty is recorded.
The band depends only on the clamped confidence, never on tier identity.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from docengine.models import CalibratedConfidence, ConfidenceBand, PenaltyRecord


CONFIDENCE_FLOOR = 0.35
CONFIDENCE_CEILING = 0.97

HIGH_BAND_MIN = 0.88
MEDIUM_BAND_MIN = 0.75

PENALTY_AMBIGUITY = 0.10
PENALTY_NO_YEAR = 0.07
PENALTY_UNRESOLVED_YEAR = 0.04
PENALTY_MULTI_FORM = 0.12
PENALTY_LOW_TEXT_DENSITY = 0.08

LOW_TEXT_DENSITY_CHARS = 200

# A K-1 names the return it was issued from; that form is not a second document
K1_FORM_KEYS = frozenset({"K1", "SCHEDULEK1"})
K1_PARENT_FORMS = frozenset({"1065", "1120S", "1041"})


@dataclass
class CalibrationInput:
    """Signals the calibrator needs about one classification."""
    raw_confidence: float
    confusion_candidates: Sequence[str] = field(default_factory=list)
    tax_year: Optional[int] = None
    detected_years: Sequence[int] = field(default_factory=list)
    form_numbers: Sequence[str] = field(default_factory=list)
    text_length: int = 0


def distinct_form_numbers(form_numbers: Sequence[str]) -> List[str]:
    """Form numbers that indicate separate documents."""
    keys = [re.sub(r"[^A-Z0-9]", "", str(f).upper()) for f in form_numbers]
    if not K1_FORM_KEYS.intersection(keys):
        return list(form_numbers)
    return [f for f, key in zip(form_numbers, keys) if key not in K1_PARENT_FORMS]


def band_for(confidence: float) -> ConfidenceBand:
    """Map a calibrated confidence to its band."""
    if confidence >= HIGH_BAND_MIN:
        return ConfidenceBand.HIGH
    if confidence >= MEDIUM_BAND_MIN:
        return ConfidenceBand.MEDIUM
    return ConfidenceBand.LOW


def calibrate_confidence(inputs: CalibrationInput) -> CalibratedConfidence:
    """
    Produce an audited, banded confidence.

    Penalties are independent except the two year penalties, which are
    mutually exclusive: no year anywhere (-0.07) or years present in the text
    but none resolved as the document year (-0.04).
    """
    penalties: List[PenaltyRecord] = []

    if inputs.confusion_candidates:
        penalties.append(PenaltyRecord(
            name="ambiguity",
            amount=PENALTY_AMBIGUITY,
            reason=f"Confusion candidates present: {', '.join(inputs.confusion_candidates)}",
        ))

    if inputs.tax_year is None:
        if inputs.detected_years:
            penalties.append(PenaltyRecord(
                name="year_unresolved",
                amount=PENALTY_UNRESOLVED_YEAR,
                reason=f"Years detected ({', '.join(str(y) for y in inputs.detected_years)}) but none resolved",
            ))
        else:
            penalties.append(PenaltyRecord(
                name="year_missing",
                amount=PENALTY_NO_YEAR,
                reason="No year found anywhere in the document",
            ))

    if len(distinct_form_numbers(inputs.form_numbers)) > 1:
        penalties.append(PenaltyRecord(
            name="multi_form",
            amount=PENALTY_MULTI_FORM,
            reason=f"Multiple form numbers detected: {', '.join(inputs.form_numbers)}",
        ))

    if inputs.text_length < LOW_TEXT_DENSITY_CHARS:
        penalties.append(PenaltyRecord(
            name="low_text_density",
            amount=PENALTY_LOW_TEXT_DENSITY,
            reason=f"Only {inputs.text_length} characters of text",
        ))

    adjusted = inputs.raw_confidence - sum(p.amount for p in penalties)
    confidence = round(min(CONFIDENCE_CEILING, max(CONFIDENCE_FLOOR, adjusted)), 4)

    return CalibratedConfidence(
        confidence=confidence,
        band=band_for(confidence),
        penalties=penalties,
        raw_confidence=inputs.raw_confidence,
    )
