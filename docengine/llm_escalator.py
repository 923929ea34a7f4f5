"""
Tier 3 LLM escalator.

Only reached when Tier 1 and Tier 2 fail to produce an accepted
classification. Builds a domain prompt (taxonomy, named confusion pairs,
trailing-twelve prohibition, curated misclassification examples) and asks
the model for strict JSON over the first two pages.

Model failures never raise: they become an unmatched OTHER result at 0.1.
Missing credentials raise ConfigurationError.
"""

import os
import re
import json
import logging
from typing import List, Dict, Any, Optional, Sequence

from langchain_anthropic import ChatAnthropic
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from docengine.config import EngineConfig
from docengine.models import (
    EVIDENCE_KEYWORD_MATCH,
    ConfigurationError,
    EvidenceItem,
    ModelResponseError,
    NormalizedDocument,
    SpineDocType,
    Tier3Result,
)

logger = logging.getLogger(__name__)


# LLM output at or above this confidence counts as a match
TIER3_MATCH_THRESHOLD = 0.40

TIER3_FAILURE_CONFIDENCE = 0.1
TIER3_DEFAULT_CONFIDENCE = 0.5

TIER3_EVIDENCE_ANCHOR = "tier3_llm"


# ============================================================================
# Prompt
# ============================================================================

TIER3_SYSTEM_PROMPT = """You are a document classifier for a commercial bank underwriting pipeline.
Given a document (text), classify it into exactly one doc_type.
Return ONLY valid JSON matching the schema below.

DOCUMENT TYPES (choose the most specific match):
- IRS_BUSINESS: Business tax returns (Form 1120, 1120S, 1065, and their schedules, but NOT K-1)
- IRS_PERSONAL: Personal tax returns (Form 1040 and schedules, but NOT K-1, W-2 or 1099)
- PFS: Personal Financial Statement / SBA Form 413 / guarantor statement showing personal assets, liabilities, net worth
- RENT_ROLL: Rent roll / tenant list showing tenants, units, rents, expirations
- INCOME_STATEMENT: Income statement, P&L, operating statement, monthly financials
- BALANCE_SHEET: Balance sheet / statement of financial position (business)
- BANK_STATEMENT: Bank account statement with transactions
- K1: Schedule K-1 (from 1065, 1120-S, or trust)
- W2: W-2 wage and tax statement
- 1099: 1099 form (any variant)
- DRIVERS_LICENSE: Government-issued photo ID
- ARTICLES: Articles of incorporation/organization
- OPERATING_AGREEMENT: LLC operating agreement
- INSURANCE: Insurance certificate or policy
- APPRAISAL: Property appraisal report
- LEASE: Commercial lease agreement
- OTHER: Cannot determine type

CRITICAL CONFUSION PAIRS (pay careful attention):

1. Form 1065 vs Schedule K-1:
   - Form 1065 is the PARTNERSHIP RETURN itself (classify as IRS_BUSINESS)
   - Schedule K-1 is a PARTNER'S DISTRIBUTIVE SHARE (classify as K1)
   - If you see "Schedule K-1 (Form 1065)", this is a K-1, NOT a 1065

2. PFS vs Balance Sheet:
   - PFS has PERSONAL assets/liabilities/net worth for an INDIVIDUAL guarantor
   - Balance Sheet is a BUSINESS financial statement with business assets/liabilities
   - If it mentions a person's name with personal real estate, bank accounts: PFS
   - If it mentions a company with business equipment, accounts receivable: BALANCE_SHEET

3. YTD P&L vs Annual P&L:
   - Both are INCOME_STATEMENT (not different types)
   - Check period dates to determine partial vs full year

4. Bank Statement vs Transaction Export:
   - Bank statements have bank branding, account numbers, running balances
   - CSV/Excel exports with just transactions are still BANK_STATEMENT

IMPORTANT: Do NOT classify any document as T12. Use INCOME_STATEMENT for P&L and operating statement documents.

CONFIDENCE RULES:
- 0.85+: High confidence (clear signals)
- 0.60-0.84: Moderate (some ambiguity)
- Below 0.60: Low (unclear)

Required JSON output:
{
  "doc_type": "IRS_BUSINESS",
  "confidence": 0.95,
  "reasoning": "Form 1120S visible on page 1",
  "anchor_evidence": ["Form 1120S header", "Tax year 2023"],
  "confusion_candidates": ["IRS_PERSONAL"],
  "tax_year": 2023,
  "entity_name": "ABC Corp",
  "entity_type": "business",
  "form_numbers": ["1120S"],
  "issuer": "IRS",
  "period_start": "2023-01-01",
  "period_end": "2023-12-31"
}"""

CONFUSION_EXAMPLES_HEADER = "\n\nHISTORICAL MISCLASSIFICATION EXAMPLES (learn from these):\n"


class ConfusionExample(BaseModel):
    """A human-curated misclassification the model should learn from."""
    original_type: str = Field(min_length=1)
    corrected_type: str = Field(min_length=1)
    signals: List[str] = Field(default_factory=list)

    def prompt_line(self) -> str:
        return (
            f"- Was classified as {self.original_type}, actually {self.corrected_type}. "
            f"Signals: {'; '.join(self.signals)}"
        )


_CONFUSION_EXAMPLES_ADAPTER = TypeAdapter(List[ConfusionExample])


def load_confusion_examples(path: str) -> List[ConfusionExample]:
    """
    Load and validate the curated examples file.

    Raises:
        ConfigurationError: If the file is missing, not JSON, or fails validation
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Confusion examples file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Confusion examples file is not valid JSON: {path}: {e}") from e

    try:
        examples = _CONFUSION_EXAMPLES_ADAPTER.validate_python(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Confusion examples file failed validation: {path}: {e}") from e

    logger.info(f"Loaded {len(examples)} confusion examples from {path}")
    return examples


class Tier3Prompt:
    """
    Compiled Tier 3 system prompt.

    Built once at startup and passed to each LLMEscalator.
    """

    def __init__(self, examples: Sequence[ConfusionExample] = ()):
        self.examples = list(examples)
        self.system_prompt = TIER3_SYSTEM_PROMPT + self._examples_block()

    def _examples_block(self) -> str:
        if not self.examples:
            return ""
        return CONFUSION_EXAMPLES_HEADER + "\n".join(e.prompt_line() for e in self.examples)

    @classmethod
    def from_file(cls, path: str) -> "Tier3Prompt":
        return cls(load_confusion_examples(path))

    @staticmethod
    def user_message(doc: NormalizedDocument) -> str:
        return (
            f"Filename: {doc.filename}\n"
            f"MIME type: {doc.mime_type or 'unknown'}\n\n"
            f"Document content (first two pages):\n---\n"
            f"{doc.first_two_pages_text}\n---\n\n"
            f"Classify this document and extract key information. Respond with JSON only."
        )


# ============================================================================
# Model Client
# ============================================================================

def build_chat_model(
    provider: str,
    model: str,
    temperature: float = 0.0,
    max_tokens: int = 800,
) -> BaseChatModel:
    """
    Create a LangChain chat model.

    Raises:
        ConfigurationError: If the provider's API key is unset or the provider is unknown
    """
    if provider == "openai":
        if not os.getenv("OPENAI_API_KEY"):
            raise ConfigurationError("OPENAI_API_KEY not set")
        return ChatOpenAI(
            model=model,
            temperature=temperature,
            max_completion_tokens=max_tokens,
        )
    if provider == "anthropic":
        if not os.getenv("ANTHROPIC_API_KEY"):
            raise ConfigurationError("ANTHROPIC_API_KEY not set")
        return ChatAnthropic(  # type: ignore[call-arg]
            model_name=model,
            temperature=temperature,
        )
    raise ConfigurationError(f"Unknown LLM provider: {provider}")


def response_text(response: Any) -> str:
    """Flatten a chat model response into plain text."""
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, dict):
                parts.append(str(part.get("text", "")))
            else:
                parts.append(str(part))
        return "".join(parts)
    return str(content or "")


def parse_json_object(text: str) -> Dict[str, Any]:
    """
    Extract the JSON object from a model response.

    Raises:
        ModelResponseError: If the response is empty or holds no JSON object
    """
    if not text.strip():
        raise ModelResponseError("Empty model response")

    # Handle potential markdown code blocks
    if "```json" in text:
        text = text.split("```json")[1].split("```")[0]
    elif "```" in text:
        text = text.split("```")[1].split("```")[0]

    match = re.search(r"\{[\s\S]*\}", text)
    if not match:
        raise ModelResponseError("No JSON object found in model response")

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise ModelResponseError(f"Malformed JSON in model response: {e}") from e

    if not isinstance(parsed, dict):
        raise ModelResponseError("Model response JSON is not an object")
    return parsed


def _optional_str(value: Any) -> Optional[str]:
    return str(value) if value else None


def _optional_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value else None
    except (TypeError, ValueError):
        return None


def _clamped_confidence(value: Any) -> float:
    try:
        confidence = float(value) if value is not None else TIER3_DEFAULT_CONFIDENCE
    except (TypeError, ValueError):
        confidence = TIER3_DEFAULT_CONFIDENCE
    return min(1.0, max(0.0, confidence))


# ============================================================================
# Escalator
# ============================================================================

class LLMEscalator:
    """
    Tier 3 classifier over a LangChain chat model.

    The chat model is created on first use unless one is injected.
    """

    def __init__(
        self,
        prompt: Tier3Prompt,
        config: Optional[EngineConfig] = None,
        llm: Optional[BaseChatModel] = None,
    ):
        self.prompt = prompt
        self.config = config or EngineConfig()
        self._llm = llm

    @property
    def model_name(self) -> str:
        return self.config.llm_model

    def _get_llm(self) -> BaseChatModel:
        if self._llm is None:
            self._llm = build_chat_model(
                self.config.llm_provider,
                self.config.llm_model,
                self.config.llm_temperature,
                self.config.llm_max_tokens,
            )
        return self._llm

    def _failure(self, reason: str) -> Tier3Result:
        return Tier3Result(
            matched=False,
            doc_type=SpineDocType.OTHER,
            confidence=TIER3_FAILURE_CONFIDENCE,
            reason=reason,
            model=self.model_name,
        )

    def escalate(self, doc: NormalizedDocument) -> Tier3Result:
        """
        Classify a document with the LLM.

        Returns:
            Tier3Result; an unmatched OTHER result on any model failure

        Raises:
            ConfigurationError: If the chat model cannot be configured
        """
        if not self.config.use_llm:
            return self._failure("Tier 3 LLM disabled")

        llm = self._get_llm()

        messages = [
            SystemMessage(content=self.prompt.system_prompt),
            HumanMessage(content=self.prompt.user_message(doc)),
        ]

        try:
            response = llm.invoke(messages)
            parsed = parse_json_object(response_text(response))
        except Exception as e:
            logger.error(f"Tier 3 LLM classification failed for {doc.artifact_id} ({doc.filename}): {e}")
            return self._failure(f"Tier 3 LLM failed: {e}")

        return self._to_result(parsed)

    def _to_result(self, parsed: Dict[str, Any]) -> Tier3Result:
        # Trailing-twelve labels are rewritten to INCOME_STATEMENT by from_string
        doc_type = SpineDocType.from_string(str(parsed.get("doc_type") or "OTHER"))
        confidence = _clamped_confidence(parsed.get("confidence"))

        anchor_evidence = parsed.get("anchor_evidence")
        evidence = [
            EvidenceItem(
                type=EVIDENCE_KEYWORD_MATCH,
                anchor_id=TIER3_EVIDENCE_ANCHOR,
                matched_text=str(e),
                confidence=confidence,
            )
            for e in (anchor_evidence if isinstance(anchor_evidence, list) else [])
        ]

        candidates = parsed.get("confusion_candidates")
        form_numbers = parsed.get("form_numbers")
        entity_type = parsed.get("entity_type")

        return Tier3Result(
            matched=confidence >= TIER3_MATCH_THRESHOLD,
            doc_type=doc_type,
            confidence=confidence,
            reason=str(parsed.get("reasoning") or ""),
            model=self.model_name,
            confusion_candidates=[str(c) for c in candidates] if isinstance(candidates, list) else [],
            evidence=evidence,
            tax_year=_optional_int(parsed.get("tax_year")),
            entity_name=_optional_str(parsed.get("entity_name")),
            entity_type=entity_type if entity_type in ("business", "personal") else None,
            form_numbers=[str(f) for f in form_numbers] if isinstance(form_numbers, list) else None,
            issuer=_optional_str(parsed.get("issuer")),
            period_start=_optional_str(parsed.get("period_start")),
            period_end=_optional_str(parsed.get("period_end")),
        )
