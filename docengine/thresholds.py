"""
Adaptive auto-attach thresholds.

Maps (spine tier, confidence band, historical override-rate curve) to the
confidence cutoff above which a classification may auto-populate a checklist
slot. A threshold only gets easier when the observed human override rate for
that cell supports it. The LOW band and the fallback tier are locked at 0.99.

Pure functions: no clock, no randomness, no I/O.
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Union

from docengine.models import ConfidenceBand, SpineClassificationResult, SpineTier


ADAPTIVE_THRESHOLD_VERSION = "adaptive_v1"

LOCKED_THRESHOLD = 0.99

BASELINE_THRESHOLDS: Dict[SpineTier, Dict[ConfidenceBand, float]] = {
    SpineTier.TIER1_ANCHOR: {
        ConfidenceBand.HIGH: 0.90,
        ConfidenceBand.MEDIUM: 0.94,
        ConfidenceBand.LOW: LOCKED_THRESHOLD,
    },
    SpineTier.TIER2_STRUCTURAL: {
        ConfidenceBand.HIGH: 0.92,
        ConfidenceBand.MEDIUM: 0.96,
        ConfidenceBand.LOW: LOCKED_THRESHOLD,
    },
    SpineTier.TIER3_LLM: {
        ConfidenceBand.HIGH: 0.95,
        ConfidenceBand.MEDIUM: 0.97,
        ConfidenceBand.LOW: LOCKED_THRESHOLD,
    },
    SpineTier.FALLBACK: {
        ConfidenceBand.HIGH: LOCKED_THRESHOLD,
        ConfidenceBand.MEDIUM: LOCKED_THRESHOLD,
        ConfidenceBand.LOW: LOCKED_THRESHOLD,
    },
}


@dataclass(frozen=True)
class AdaptivePolicy:
    """Bounds and step sizes for loosening a baseline threshold."""
    floor: float = 0.85
    ceiling: float = 0.99
    min_samples: int = 50
    target_override_rate: float = 0.05
    loosen_step: float = 0.01
    max_loosen: float = 0.03
    override_rate_per_step: float = 0.01


DEFAULT_ADAPTIVE_POLICY = AdaptivePolicy()


@dataclass(frozen=True)
class CalibrationCell:
    """Aggregated override history for one (tier, band) cell."""
    tier: SpineTier
    band: ConfidenceBand
    total: int
    overrides: int
    override_rate: float

    @classmethod
    def from_dict(cls, data: Dict) -> "CalibrationCell":
        total = int(data.get("total", 0))
        overrides = int(data.get("overrides", 0))
        rate = data.get("override_rate")
        if rate is None:
            rate = overrides / total if total else 0.0
        return cls(
            tier=SpineTier.from_string(str(data["tier"])),
            band=ConfidenceBand.from_string(str(data["band"])),
            total=total,
            overrides=overrides,
            override_rate=float(rate),
        )


@dataclass(frozen=True)
class ThresholdResolution:
    """Resolved cutoff for one cell."""
    threshold: float
    adapted: bool
    baseline: float
    reason: str
    version: str = ADAPTIVE_THRESHOLD_VERSION

    def to_dict(self) -> Dict:
        return {
            "threshold": self.threshold,
            "adapted": self.adapted,
            "baseline": self.baseline,
            "reason": self.reason,
            "version": self.version,
        }


def _coerce_tier(tier: Union[SpineTier, str]) -> SpineTier:
    return tier if isinstance(tier, SpineTier) else SpineTier.from_string(tier)


def _coerce_band(band: Union[ConfidenceBand, str]) -> ConfidenceBand:
    return band if isinstance(band, ConfidenceBand) else ConfidenceBand.from_string(band)


def is_locked(tier: SpineTier, band: ConfidenceBand) -> bool:
    """LOW band and fallback tier cells never loosen."""
    return band == ConfidenceBand.LOW or tier == SpineTier.FALLBACK


def resolve_auto_attach_threshold(
    tier: Union[SpineTier, str],
    band: Union[ConfidenceBand, str],
    curve: Iterable[CalibrationCell] = (),
    policy: AdaptivePolicy = DEFAULT_ADAPTIVE_POLICY,
) -> ThresholdResolution:
    """
    Resolve the auto-attach cutoff for a tier and band.

    Returns the baseline unless the matching calibration cell has at least
    `min_samples` decisions and an override rate at or below target. Then
    the baseline is loosened by one `loosen_step` per full
    `override_rate_per_step` below target, capped at `max_loosen` and
    clamped to [floor, ceiling].
    """
    tier = _coerce_tier(tier)
    band = _coerce_band(band)
    baseline = BASELINE_THRESHOLDS[tier][band]

    def unchanged(reason: str) -> ThresholdResolution:
        return ThresholdResolution(threshold=baseline, adapted=False, baseline=baseline, reason=reason)

    if is_locked(tier, band):
        return unchanged("locked")

    cell: Optional[CalibrationCell] = None
    for candidate in curve:
        if candidate.tier == tier and candidate.band == band:
            cell = candidate
            break

    if cell is None:
        return unchanged("no_calibration_data")
    if cell.total < policy.min_samples:
        return unchanged("insufficient_samples")
    if cell.override_rate > policy.target_override_rate:
        return unchanged("override_rate_above_target")

    gap = policy.target_override_rate - cell.override_rate
    steps = math.floor(round(gap / policy.override_rate_per_step, 9))
    loosen = min(policy.max_loosen, steps * policy.loosen_step)

    threshold = round(min(policy.ceiling, max(policy.floor, baseline - loosen)), 4)
    adapted = threshold < baseline

    return ThresholdResolution(
        threshold=threshold,
        adapted=adapted,
        baseline=baseline,
        reason="loosened" if adapted else "no_loosening_warranted",
    )


def should_auto_attach(
    result: SpineClassificationResult,
    curve: Iterable[CalibrationCell] = (),
    policy: AdaptivePolicy = DEFAULT_ADAPTIVE_POLICY,
) -> bool:
    """Whether a spine result clears its cell's auto-attach cutoff."""
    resolution = resolve_auto_attach_threshold(result.spine_tier, result.band, curve, policy)
    return result.confidence >= resolution.threshold
