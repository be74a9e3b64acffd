import json

import pytest

from src.backend.config import Settings
from src.backend.settings_store import (
    CLEAR_SENTINEL,
    MASK_SET,
    MASK_UNSET,
    SECRET_KEYS,
    InMemorySettingsStore,
    bootstrap_settings,
    default_settings,
    mask_secrets,
    merge_settings_preserving_secrets,
    thresholds_from_settings,
    validate_settings,
)
from src.ingest.routing import PolicyThresholds


@pytest.fixture
def settings(monkeypatch):
    monkeypatch.setenv("ROUTING_MIN_TEXT_COVERAGE", "0.4")
    monkeypatch.setenv("BACKEND_MAX_UPLOAD_MB", "25")
    return Settings.from_env()


def test_default_settings_seed_from_environment(settings):
    defaults = default_settings(settings)
    assert defaults["routing_min_text_coverage"] == "0.4"
    assert defaults["smart_upload_max_file_size_mb"] == "25"
    assert json.loads(defaults["smart_upload_allowed_mime_types"]) == ["application/pdf"]
    assert not set(defaults) & set(SECRET_KEYS)
    assert validate_settings(defaults) == []


def test_mask_secrets():
    masked = mask_secrets({"llm_openai_api_key": "sk-live", "llm_gemini_api_key": None, "llm_provider": "ollama"})
    assert masked == {
        "llm_openai_api_key": MASK_SET,
        "llm_gemini_api_key": MASK_UNSET,
        "llm_provider": "ollama",
    }


def test_merge_preserves_masked_secrets():
    existing = {"llm_openai_api_key": "sk-old", "llm_anthropic_api_key": "ak-old", "llm_provider": "ollama"}
    merged = merge_settings_preserving_secrets(
        existing,
        {
            "llm_openai_api_key": MASK_SET,
            "llm_anthropic_api_key": "   ",
            "llm_provider": "openai",
        },
    )
    assert merged["llm_openai_api_key"] == "sk-old"
    assert merged["llm_anthropic_api_key"] == "ak-old"
    assert merged["llm_provider"] == "openai"


def test_merge_replaces_and_clears_secrets():
    existing = {"llm_openai_api_key": "sk-old", "llm_gemini_api_key": "g-old"}
    merged = merge_settings_preserving_secrets(
        existing, {"llm_openai_api_key": "sk-new", "llm_gemini_api_key": CLEAR_SENTINEL}
    )
    assert merged == {"llm_openai_api_key": "sk-new", "llm_gemini_api_key": None}


def test_validate_settings_reports_bad_values():
    errors = validate_settings(
        {
            "routing_min_text_coverage": "1.5",
            "smart_upload_allowed_mime_types": '"application/pdf"',
            "not_a_setting": "x",
        }
    )
    assert len(errors) == 3
    assert any(error.startswith("routing_min_text_coverage") for error in errors)
    assert any(error.startswith("smart_upload_allowed_mime_types") for error in errors)
    assert any(error.startswith("not_a_setting") for error in errors)


def test_validate_settings_ignores_blank_values():
    assert validate_settings({"routing_min_parts_for_auto_commit": "", "llm_openai_api_key": None}) == []


def test_thresholds_from_settings_overlay():
    base = PolicyThresholds()
    thresholds = thresholds_from_settings(
        {
            "routing_min_auto_commit_confidence": "75",
            "routing_min_parts_for_auto_commit": "3",
            "smart_upload_enable_autonomous_mode": "false",
            "routing_min_text_coverage": "",
        },
        base,
    )
    assert thresholds.min_auto_commit_confidence == 75.0
    assert thresholds.min_parts_for_auto_commit == 3
    assert thresholds.autonomous_mode_enabled is False
    assert thresholds.min_text_coverage == base.min_text_coverage
    assert thresholds_from_settings({}, base) == base


def test_bootstrap_only_fills_missing_keys(settings):
    store = InMemorySettingsStore()
    store.save({"llm_provider": "gemini"})

    actions = bootstrap_settings(store, settings, updated_by="system")
    record = store.load()

    assert "initialized llm_provider" not in actions
    assert "initialized routing_min_text_coverage" in actions
    assert record["llm_provider"] == "gemini"
    assert bootstrap_settings(store, settings) == []
