from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from flashdeck.config import get_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache():
  get_settings.cache_clear()
  yield
  get_settings.cache_clear()


def test_defaults_run_fully_offline() -> None:
  settings = get_settings()

  assert settings.llm_mode == "mock"
  assert settings.embedding_provider == "mock"
  assert settings.qdrant_url == ":memory:"
  assert settings.min_viable_cards == 10
  assert dict(settings.stage_timeouts)["transcribe"] == 300.0
  assert settings.chunk_encoding == "cl100k_base"


def test_stage_timeout_override() -> None:
  with patch.dict(os.environ, {"FLASHDECK_VERIFY_TIMEOUT_SECONDS": "2.5"}):
    assert dict(get_settings().stage_timeouts)["verify"] == 2.5


def test_wildcard_origin_is_rejected() -> None:
  with patch.dict(os.environ, {"FLASHDECK_ALLOWED_ORIGINS": "*"}), pytest.raises(ValueError, match="wildcard"):
    get_settings()


def test_real_mode_requires_provider_key() -> None:
  with patch.dict(os.environ, {"FLASHDECK_LLM_MODE": "real", "FLASHDECK_LLM_PROVIDER": "gemini", "FLASHDECK_EMBEDDING_PROVIDER": "openai", "GEMINI_API_KEY": ""}), pytest.raises(ValueError, match="GEMINI_API_KEY"):
    get_settings()


def test_unknown_choice_is_rejected() -> None:
  with patch.dict(os.environ, {"FLASHDECK_EMBEDDING_PROVIDER": "cohere"}), pytest.raises(ValueError, match="FLASHDECK_EMBEDDING_PROVIDER"):
    get_settings()


def test_mock_fail_stages_are_parsed() -> None:
  with patch.dict(os.environ, {"FLASHDECK_MOCK_FAIL_STAGES": "Stage_A, verify"}):
    assert get_settings().mock_fail_stages == frozenset({"stage_a", "verify"})


def test_card_count_ceiling() -> None:
  with patch.dict(os.environ, {"FLASHDECK_DEFAULT_CARD_COUNT": "101"}), pytest.raises(ValueError, match="must not exceed 100"):
    get_settings()


def test_real_mode_rejects_mock_embeddings() -> None:
  env = {"FLASHDECK_LLM_MODE": "real", "FLASHDECK_LLM_PROVIDER": "gemini", "GEMINI_API_KEY": "test-key"}
  with patch.dict(os.environ, env), pytest.raises(ValueError, match="FLASHDECK_EMBEDDING_PROVIDER must be set"):
    get_settings()


def test_real_mode_accepts_explicit_embedding_provider() -> None:
  env = {"FLASHDECK_LLM_MODE": "real", "FLASHDECK_LLM_PROVIDER": "gemini", "FLASHDECK_EMBEDDING_PROVIDER": "gemini", "GEMINI_API_KEY": "test-key"}
  with patch.dict(os.environ, env):
    settings = get_settings()

  assert settings.embedding_provider == "gemini"
