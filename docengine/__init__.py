"""
Loan-underwriting document classification and completeness engine.

Modules:
- normalizer / anchors / structural / gate / llm_escalator / calibration / spine:
  the tiered deterministic-first classification pipeline
- thresholds: adaptive auto-attach confidence cutoffs
- gatekeeper / routing / gatekeeper_cache: fail-closed triage classifier
- resolver: effective type/year resolution for downstream consumers
- readiness: scenario requirements and deal completeness matching
"""
