"""
Engine configuration.

Every tunable has a default; EngineConfig.from_env() applies environment
overrides. Credentials are not held here: they are read when a model client
is built so that a missing key surfaces at call time.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


DEFAULT_CONFUSION_EXAMPLES_PATH = str(Path(__file__).parent / "data" / "confusion_examples.json")


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


@dataclass
class EngineConfig:
    """Configuration for spine classification, gatekeeper triage and storage."""

    # Tier 3 LLM settings
    use_llm: bool = True
    llm_provider: str = "openai"  # "openai", "anthropic"
    llm_model: str = "gpt-4o-mini"  # or "claude-3-haiku-20240307"
    llm_temperature: float = 0.0
    llm_max_tokens: int = 800

    # Gatekeeper model settings
    gatekeeper_model: str = "gpt-4o-mini"
    gatekeeper_max_tokens: int = 512

    # Curated misclassification examples for the Tier 3 prompt
    confusion_examples_path: str = DEFAULT_CONFUSION_EXAMPLES_PATH

    # File-backed stores
    document_store_dir: str = "deal_documents"
    gatekeeper_cache_path: Optional[str] = None

    # Audit delivery
    audit_webhook_url: Optional[str] = None

    # Batch classification windows
    gatekeeper_chunk_size: int = 3
    gatekeeper_batch_cap: int = 20

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Build configuration from environment variables."""
        defaults = cls()
        return cls(
            use_llm=_env_bool("CLASSIFIER_USE_LLM", "true"),
            llm_provider=os.getenv("CLASSIFIER_LLM_PROVIDER", defaults.llm_provider),
            llm_model=os.getenv("CLASSIFIER_LLM_MODEL", defaults.llm_model),
            gatekeeper_model=os.getenv("OPENAI_GATEKEEPER_MODEL", defaults.gatekeeper_model),
            confusion_examples_path=os.getenv(
                "CONFUSION_EXAMPLES_PATH", defaults.confusion_examples_path
            ),
            document_store_dir=os.getenv("DOCUMENT_STORE_DIR", defaults.document_store_dir),
            gatekeeper_cache_path=os.getenv("GATEKEEPER_CACHE_PATH") or None,
            audit_webhook_url=os.getenv("AUDIT_WEBHOOK_URL") or None,
            gatekeeper_chunk_size=int(os.getenv("GATEKEEPER_CHUNK_SIZE", "3")),
            gatekeeper_batch_cap=int(os.getenv("GATEKEEPER_BATCH_CAP", "20")),
        )
