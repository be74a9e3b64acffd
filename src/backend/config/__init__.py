from __future__ import annotations

"""Backend settings loader from environment variables."""

from dataclasses import dataclass
from pathlib import Path
import os

from src.ingest.routing import PolicyThresholds
from src.ingest.quality_gates import DEFAULT_MAX_PAGES_PER_PART, DEFAULT_SEGMENTATION_THRESHOLD

PROJECT_ROOT = Path(__file__).resolve().parents[3]


def _env_int(name: str, default: int) -> int:
    """Read an int env var with a default."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    """Read a float env var with a default."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in {"1", "true", "yes"}


def resolve_project_id() -> str | None:
    """Return the active GCP project ID if set."""
    for key in ("GOOGLE_CLOUD_PROJECT", "GCLOUD_PROJECT", "PROJECT_ID"):
        value = os.getenv(key)
        if value:
            return value
    return None


def _app_env() -> str:
    """Return the application environment name."""
    return os.getenv("APP_ENV") or os.getenv("ENV") or "dev"


@dataclass(frozen=True)
class Settings:
    """Configuration values parsed from the environment."""
    project_root: Path
    app_env: str
    project_id: str | None
    backend_debug: bool
    backend_auth_disabled: bool
    dev_user_id: str
    backend_use_firestore: bool
    sessions_collection: str
    settings_collection: str
    backend_use_storage: bool
    storage_bucket: str
    max_upload_bytes: int
    routing_thresholds: PolicyThresholds
    max_pages_per_part: int
    segmentation_threshold: float

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() in {"prod", "production"}

    @classmethod
    def from_env(cls) -> "Settings":
        """Construct settings from environment variables."""
        defaults = PolicyThresholds()
        routing_thresholds = PolicyThresholds(
            min_text_coverage=_env_float("ROUTING_MIN_TEXT_COVERAGE", defaults.min_text_coverage),
            min_auto_commit_confidence=_env_float(
                "ROUTING_MIN_AUTO_COMMIT_CONFIDENCE", defaults.min_auto_commit_confidence
            ),
            min_skip_second_pass_confidence=_env_float(
                "ROUTING_MIN_SKIP_SECOND_PASS_CONFIDENCE", defaults.min_skip_second_pass_confidence
            ),
            min_parts_for_auto_commit=_env_int(
                "ROUTING_MIN_PARTS_FOR_AUTO_COMMIT", defaults.min_parts_for_auto_commit
            ),
            autonomous_mode_enabled=_env_bool(
                "ROUTING_AUTONOMOUS_MODE_ENABLED", defaults.autonomous_mode_enabled
            ),
        )
        if not 0.0 <= routing_thresholds.min_text_coverage <= 1.0:
            raise ValueError("ROUTING_MIN_TEXT_COVERAGE must be between 0 and 1.")
        max_upload_mb = _env_int("BACKEND_MAX_UPLOAD_MB", 50)
        project_id = resolve_project_id()
        default_bucket = f"{project_id}.appspot.com" if project_id else ""
        return cls(
            project_root=PROJECT_ROOT,
            app_env=_app_env(),
            project_id=project_id,
            backend_debug=_env_bool("BACKEND_DEBUG", False),
            backend_auth_disabled=_env_bool("BACKEND_AUTH_DISABLED", False),
            dev_user_id=os.getenv("BACKEND_DEV_USER_ID", "dev-user").strip(),
            backend_use_firestore=_env_bool("BACKEND_USE_FIRESTORE", False),
            sessions_collection=os.getenv("INGEST_SESSIONS_COLLECTION", "ingest_sessions"),
            settings_collection=os.getenv("INGEST_SETTINGS_COLLECTION", "ingest_settings"),
            backend_use_storage=_env_bool("BACKEND_USE_STORAGE", False),
            storage_bucket=os.getenv("STORAGE_BUCKET", default_bucket),
            max_upload_bytes=max_upload_mb * 1024 * 1024,
            routing_thresholds=routing_thresholds,
            max_pages_per_part=_env_int("QUALITY_MAX_PAGES_PER_PART", DEFAULT_MAX_PAGES_PER_PART),
            segmentation_threshold=_env_float(
                "QUALITY_SEGMENTATION_THRESHOLD", DEFAULT_SEGMENTATION_THRESHOLD
            ),
        )
