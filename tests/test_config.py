"""
Tests for engine configuration.
"""

import os
from pathlib import Path
from unittest.mock import patch

from docengine.config import EngineConfig


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_defaults(self):
        """Test default configuration values."""
        config = EngineConfig()

        assert config.use_llm is True
        assert config.llm_provider == "openai"
        assert config.llm_model == "gpt-4o-mini"
        assert config.gatekeeper_model == "gpt-4o-mini"
        assert config.gatekeeper_chunk_size == 3
        assert config.gatekeeper_batch_cap == 20
        assert config.gatekeeper_cache_path is None
        assert Path(config.confusion_examples_path).name == "confusion_examples.json"

    def test_from_env_empty(self):
        """An empty environment gives the defaults."""
        with patch.dict(os.environ, {}, clear=True):
            assert EngineConfig.from_env() == EngineConfig()

    def test_from_env(self):
        """Environment variables override defaults."""
        env = {
            "CLASSIFIER_USE_LLM": "false",
            "CLASSIFIER_LLM_PROVIDER": "anthropic",
            "CLASSIFIER_LLM_MODEL": "claude-3-haiku-20240307",
            "OPENAI_GATEKEEPER_MODEL": "gpt-4o",
            "DOCUMENT_STORE_DIR": "/data/docs",
            "GATEKEEPER_CACHE_PATH": "/data/gatekeeper.json",
            "AUDIT_WEBHOOK_URL": "https://audit.example.com/events",
            "GATEKEEPER_CHUNK_SIZE": "5",
            "GATEKEEPER_BATCH_CAP": "40",
        }
        with patch.dict(os.environ, env, clear=True):
            config = EngineConfig.from_env()

        assert config.use_llm is False
        assert config.llm_provider == "anthropic"
        assert config.llm_model == "claude-3-haiku-20240307"
        assert config.gatekeeper_model == "gpt-4o"
        assert config.document_store_dir == "/data/docs"
        assert config.gatekeeper_cache_path == "/data/gatekeeper.json"
        assert config.audit_webhook_url == "https://audit.example.com/events"
        assert config.gatekeeper_chunk_size == 5
        assert config.gatekeeper_batch_cap == 40

    def test_empty_cache_path_is_none(self):
        """An empty cache path means no file cache."""
        with patch.dict(os.environ, {"GATEKEEPER_CACHE_PATH": ""}, clear=True):
            assert EngineConfig.from_env().gatekeeper_cache_path is None
