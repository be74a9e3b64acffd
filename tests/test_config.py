import pytest

from src.backend.config import Settings
from src.ingest.routing import PolicyThresholds

_ENV_KEYS = (
    "APP_ENV",
    "ENV",
    "GOOGLE_CLOUD_PROJECT",
    "GCLOUD_PROJECT",
    "PROJECT_ID",
    "STORAGE_BUCKET",
    "BACKEND_AUTH_DISABLED",
    "BACKEND_USE_FIRESTORE",
    "BACKEND_MAX_UPLOAD_MB",
    "ROUTING_MIN_TEXT_COVERAGE",
    "ROUTING_MIN_AUTO_COMMIT_CONFIDENCE",
    "ROUTING_MIN_SKIP_SECOND_PASS_CONFIDENCE",
    "ROUTING_MIN_PARTS_FOR_AUTO_COMMIT",
    "ROUTING_AUTONOMOUS_MODE_ENABLED",
    "QUALITY_MAX_PAGES_PER_PART",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_defaults():
    settings = Settings.from_env()
    assert settings.app_env == "dev"
    assert settings.is_production is False
    assert settings.backend_auth_disabled is False
    assert settings.backend_use_firestore is False
    assert settings.max_upload_bytes == 50 * 1024 * 1024
    assert settings.routing_thresholds == PolicyThresholds()
    assert settings.max_pages_per_part == 12
    assert settings.sessions_collection == "ingest_sessions"
    assert settings.storage_bucket == ""


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("APP_ENV", "production")
    monkeypatch.setenv("GOOGLE_CLOUD_PROJECT", "band-library")
    monkeypatch.setenv("BACKEND_MAX_UPLOAD_MB", "10")
    monkeypatch.setenv("ROUTING_MIN_TEXT_COVERAGE", "0.5")
    monkeypatch.setenv("ROUTING_MIN_PARTS_FOR_AUTO_COMMIT", "2")
    monkeypatch.setenv("ROUTING_AUTONOMOUS_MODE_ENABLED", "no")
    monkeypatch.setenv("QUALITY_MAX_PAGES_PER_PART", "20")

    settings = Settings.from_env()

    assert settings.is_production is True
    assert settings.project_id == "band-library"
    assert settings.storage_bucket == "band-library.appspot.com"
    assert settings.max_upload_bytes == 10 * 1024 * 1024
    assert settings.routing_thresholds.min_text_coverage == 0.5
    assert settings.routing_thresholds.min_parts_for_auto_commit == 2
    assert settings.routing_thresholds.autonomous_mode_enabled is False
    assert settings.max_pages_per_part == 20


def test_blank_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("ROUTING_MIN_AUTO_COMMIT_CONFIDENCE", "")
    assert Settings.from_env().routing_thresholds.min_auto_commit_confidence == 80.0


@pytest.mark.parametrize("value", ["1.5", "-0.1"])
def test_text_coverage_out_of_range_is_rejected(monkeypatch, value):
    monkeypatch.setenv("ROUTING_MIN_TEXT_COVERAGE", value)
    with pytest.raises(ValueError, match="ROUTING_MIN_TEXT_COVERAGE"):
        Settings.from_env()
