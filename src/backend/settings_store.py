from __future__ import annotations

"""Runtime-editable ingestion settings with masked secrets.

Values are stored as strings keyed by setting name. Secret values never leave
the store in clear text: reads report __SET__ or __UNSET__, and updates that
echo a mask back keep the stored value.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple
import json
import threading

from firebase_admin import firestore
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from src.backend.config import Settings
from src.backend.firebase_app import get_firestore_client
from src.backend.logging_utils import get_logger
from src.ingest.routing import PolicyThresholds

logger = get_logger(__name__)

SCHEMA_VERSION = "1.0.0"

SECRET_KEYS: Tuple[str, ...] = (
    "llm_openai_api_key",
    "llm_anthropic_api_key",
    "llm_openrouter_api_key",
    "llm_gemini_api_key",
    "llm_custom_api_key",
)

SETTING_KEYS: Tuple[str, ...] = (
    "llm_provider",
    "llm_endpoint_url",
    "llm_vision_model",
    "llm_verification_model",
    *SECRET_KEYS,
    "llm_two_pass_enabled",
    "smart_upload_max_pages",
    "smart_upload_max_file_size_mb",
    "smart_upload_allowed_mime_types",
    "smart_upload_enable_autonomous_mode",
    "routing_min_text_coverage",
    "routing_min_auto_commit_confidence",
    "routing_min_skip_second_pass_confidence",
    "routing_min_parts_for_auto_commit",
    "quality_max_pages_per_part",
    "quality_segmentation_threshold",
    "smart_upload_schema_version",
)

MASK_SET = "__SET__"
MASK_UNSET = "__UNSET__"
CLEAR_SENTINEL = "__CLEAR__"
_KEEP_SENTINELS = frozenset({"***", "******", MASK_SET, MASK_UNSET})

SettingsRecord = Dict[str, Optional[str]]


def _bool_text(value: bool) -> str:
    return "true" if value else "false"


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in {"1", "true", "yes"}


def default_settings(settings: Settings) -> SettingsRecord:
    """Defaults for every non-secret key, seeded from the environment config."""
    thresholds = settings.routing_thresholds
    return {
        "llm_provider": "ollama",
        "llm_vision_model": "llama3.2-vision",
        "llm_verification_model": "llama3.2-vision",
        "llm_two_pass_enabled": "true",
        "smart_upload_max_pages": "20",
        "smart_upload_max_file_size_mb": str(settings.max_upload_bytes // (1024 * 1024)),
        "smart_upload_allowed_mime_types": json.dumps(["application/pdf"]),
        "smart_upload_enable_autonomous_mode": _bool_text(thresholds.autonomous_mode_enabled),
        "routing_min_text_coverage": str(thresholds.min_text_coverage),
        "routing_min_auto_commit_confidence": str(thresholds.min_auto_commit_confidence),
        "routing_min_skip_second_pass_confidence": str(thresholds.min_skip_second_pass_confidence),
        "routing_min_parts_for_auto_commit": str(thresholds.min_parts_for_auto_commit),
        "quality_max_pages_per_part": str(settings.max_pages_per_part),
        "quality_segmentation_threshold": str(settings.segmentation_threshold),
        "smart_upload_schema_version": SCHEMA_VERSION,
    }


def mask_secrets(record: Mapping[str, Optional[str]]) -> SettingsRecord:
    """Replace secret values with __SET__ / __UNSET__ for display."""
    masked = dict(record)
    for key in SECRET_KEYS:
        if key in masked:
            masked[key] = MASK_SET if masked[key] else MASK_UNSET
    return masked


def merge_settings_preserving_secrets(
    existing: Mapping[str, Optional[str]],
    updates: Mapping[str, Optional[str]],
) -> SettingsRecord:
    """Apply an update, honouring mask sentinels on secret keys.

    For secrets: a mask keeps the stored value, __CLEAR__ removes it, blank
    input is ignored and any other string replaces it. Other keys are
    replaced as given.
    """
    merged = dict(existing)
    for key, value in updates.items():
        if key in SECRET_KEYS:
            if value is None or not value.strip() or value in _KEEP_SENTINELS:
                continue
            if value == CLEAR_SENTINEL:
                merged[key] = None
                continue
        merged[key] = value
    return merged


class IngestSettingsModel(BaseModel):
    """Validation for the typed subset of the settings record."""
    model_config = ConfigDict(extra="forbid")

    llm_provider: Optional[str] = None
    llm_endpoint_url: Optional[str] = None
    llm_vision_model: Optional[str] = None
    llm_verification_model: Optional[str] = None
    llm_openai_api_key: Optional[str] = None
    llm_anthropic_api_key: Optional[str] = None
    llm_openrouter_api_key: Optional[str] = None
    llm_gemini_api_key: Optional[str] = None
    llm_custom_api_key: Optional[str] = None
    llm_two_pass_enabled: Optional[bool] = None
    smart_upload_max_pages: Optional[int] = Field(default=None, ge=1)
    smart_upload_max_file_size_mb: Optional[int] = Field(default=None, ge=1)
    smart_upload_allowed_mime_types: Optional[str] = None
    smart_upload_enable_autonomous_mode: Optional[bool] = None
    routing_min_text_coverage: Optional[float] = Field(default=None, ge=0, le=1)
    routing_min_auto_commit_confidence: Optional[float] = Field(default=None, ge=0, le=100)
    routing_min_skip_second_pass_confidence: Optional[float] = Field(default=None, ge=0, le=100)
    routing_min_parts_for_auto_commit: Optional[int] = Field(default=None, ge=0)
    quality_max_pages_per_part: Optional[int] = Field(default=None, ge=1)
    quality_segmentation_threshold: Optional[float] = Field(default=None, ge=0, le=100)
    smart_upload_schema_version: Optional[str] = None

    @field_validator("smart_upload_allowed_mime_types")
    @classmethod
    def _mime_types_json(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        parsed = json.loads(value)
        if not isinstance(parsed, list) or not all(isinstance(item, str) for item in parsed):
            raise ValueError("must be a JSON array of strings")
        return value


def validate_settings(record: Mapping[str, Optional[str]]) -> List[str]:
    """Return human-readable validation errors; empty when the record is valid."""
    payload = {key: value for key, value in record.items() if value is not None and value != ""}
    try:
        IngestSettingsModel.model_validate(payload)
    except ValidationError as exc:
        return [
            f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in exc.errors()
        ]
    return []


def thresholds_from_settings(record: Mapping[str, Optional[str]], base: PolicyThresholds) -> PolicyThresholds:
    """Overlay stored routing settings on the environment defaults."""

    def _number(key: str, default: float) -> float:
        value = record.get(key)
        return float(value) if value not in (None, "") else default

    return PolicyThresholds(
        min_text_coverage=_number("routing_min_text_coverage", base.min_text_coverage),
        min_auto_commit_confidence=_number(
            "routing_min_auto_commit_confidence", base.min_auto_commit_confidence
        ),
        min_skip_second_pass_confidence=_number(
            "routing_min_skip_second_pass_confidence", base.min_skip_second_pass_confidence
        ),
        min_parts_for_auto_commit=int(
            _number("routing_min_parts_for_auto_commit", base.min_parts_for_auto_commit)
        ),
        autonomous_mode_enabled=_parse_bool(
            record.get("smart_upload_enable_autonomous_mode"), base.autonomous_mode_enabled
        ),
    )


class InMemorySettingsStore:
    def __init__(self) -> None:
        self._record: SettingsRecord = {}
        self._lock = threading.Lock()

    def load(self) -> SettingsRecord:
        with self._lock:
            return dict(self._record)

    def save(self, record: Mapping[str, Optional[str]], *, updated_by: Optional[str] = None) -> None:
        with self._lock:
            self._record = dict(record)


@dataclass
class FirestoreSettingsStore:
    """One settings document per key, mirroring a key/value settings table."""
    collection: str = "ingest_settings"
    _client: Optional[firestore.Client] = field(default=None, init=False, repr=False)

    def _ensure_client(self) -> firestore.Client:
        if self._client is None:
            self._client = get_firestore_client()
        return self._client

    def load(self) -> SettingsRecord:
        record: SettingsRecord = {}
        for doc in self._ensure_client().collection(self.collection).stream():
            data = doc.to_dict() or {}
            record[doc.id] = data.get("value")
        return record

    def save(self, record: Mapping[str, Optional[str]], *, updated_by: Optional[str] = None) -> None:
        client = self._ensure_client()
        batch = client.batch()
        for key, value in record.items():
            ref = client.collection(self.collection).document(key)
            payload: Dict[str, Any] = {"value": value, "updatedAt": firestore.SERVER_TIMESTAMP}
            if updated_by:
                payload["updatedBy"] = updated_by
            batch.set(ref, payload, merge=True)
        batch.commit()


def bootstrap_settings(store: Any, settings: Settings, *, updated_by: Optional[str] = None) -> List[str]:
    """Fill in any missing setting with its default and report what was written."""
    existing = store.load()
    actions: List[str] = []
    updated = dict(existing)
    for key, value in default_settings(settings).items():
        if existing.get(key) in (None, ""):
            updated[key] = value
            actions.append(f"initialized {key}")
    if actions:
        store.save(updated, updated_by=updated_by)
        logger.info("settings_bootstrapped actions=%s", len(actions))
    return actions
