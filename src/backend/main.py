from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, List, Literal, Optional, Tuple, TypeVar, Union
import asyncio
import os
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.backend.config import Settings
from src.backend.errors import (
    FORBIDDEN,
    INVALID_STATE,
    VALIDATION_ERROR,
    ApiError,
    install_error_handlers,
)
from src.backend.firebase_app import verify_id_token
from src.backend.logging_utils import (
    clear_log_context,
    configure_logging,
    get_logger,
    set_log_context,
)
from src.backend.pipeline import IngestPipeline, RetryNotAllowedError, build_pipeline
from src.backend.session_store import SessionNotFoundError
from src.backend.settings_store import (
    bootstrap_settings,
    mask_secrets,
    merge_settings_preserving_secrets,
    validate_settings,
)
from src.ingest.commit import CommitOverrides, is_autonomous_actor
from src.ingest.models import CuttingInstruction, ExtractedMetadata, MetadataPart, ParsedPartRecord
from src.ingest.session_errors import ErrorCode, FailureStage

T = TypeVar("T")


class CreateSessionRequest(BaseModel):
    file_name: str = Field(min_length=1)
    storage_key: str = Field(min_length=1)
    file_size: int = Field(default=0, ge=0)
    mime_type: str = "application/pdf"
    source_sha256: Optional[str] = None


class StatusRequest(BaseModel):
    field: Literal["workflow_status", "ocr_status", "second_pass_status", "commit_status"]
    to: str


class _WireModel(BaseModel):
    """Accepts the camelCase keys the recognizer emits as well as field names."""

    model_config = ConfigDict(populate_by_name=True)


def _chair_text(value: Union[str, int, None]) -> Optional[str]:
    return None if value is None else str(value)


def _ordered_page_range(value: Optional[Tuple[int, int]]) -> Optional[Tuple[int, int]]:
    if value is not None:
        start, end = value
        if start < 1 or end < start:
            raise ValueError("pageRange must be 1-indexed with start <= end")
    return value


class CuttingInstructionModel(_WireModel):
    instrument: str
    part_name: str = Field(default="", alias="partName")
    part_number: Union[str, int, None] = Field(default=None, alias="partNumber")
    page_range: Tuple[int, int] = Field(alias="pageRange")

    @field_validator("page_range")
    @classmethod
    def _check_page_range(cls, value: Tuple[int, int]) -> Tuple[int, int]:
        return _ordered_page_range(value)

    def to_instruction(self) -> CuttingInstruction:
        return CuttingInstruction(
            instrument=self.instrument,
            part_name=self.part_name or self.instrument,
            page_range=self.page_range,
            part_number=_chair_text(self.part_number),
        )


class MetadataPartModel(_WireModel):
    instrument: str = ""
    part_name: str = Field(default="", alias="partName")


class MetadataModel(_WireModel):
    title: str = ""
    subtitle: Optional[str] = None
    composer: Optional[str] = None
    arranger: Optional[str] = None
    publisher: Optional[str] = None
    ensemble_type: Optional[str] = Field(default=None, alias="ensembleType")
    instrument: Optional[str] = None
    part_number: Union[str, int, None] = Field(default=None, alias="partNumber")
    key_signature: Optional[str] = Field(default=None, alias="keySignature")
    time_signature: Optional[str] = Field(default=None, alias="timeSignature")
    tempo: Optional[str] = None
    confidence_score: float = Field(default=0.0, ge=0, le=100, alias="confidenceScore")
    file_type: Optional[str] = Field(default=None, alias="fileType")
    is_multi_part: bool = Field(default=False, alias="isMultiPart")
    parts: List[MetadataPartModel] = Field(default_factory=list)
    cutting_instructions: Optional[List[CuttingInstructionModel]] = Field(
        default=None, alias="cuttingInstructions"
    )

    def to_metadata(self) -> ExtractedMetadata:
        return ExtractedMetadata(
            title=self.title,
            subtitle=self.subtitle,
            composer=self.composer,
            arranger=self.arranger,
            publisher=self.publisher,
            ensemble_type=self.ensemble_type,
            instrument=self.instrument,
            part_number=_chair_text(self.part_number),
            key_signature=self.key_signature,
            time_signature=self.time_signature,
            tempo=self.tempo,
            confidence_score=self.confidence_score,
            file_type=self.file_type,
            is_multi_part=self.is_multi_part,
            parts=[MetadataPart(part.instrument, part.part_name) for part in self.parts],
            cutting_instructions=(
                [ci.to_instruction() for ci in self.cutting_instructions]
                if self.cutting_instructions is not None
                else None
            ),
        )


class ParsedPartModel(_WireModel):
    part_name: str = Field(default="", alias="partName")
    instrument: str = ""
    storage_key: str = Field(min_length=1, alias="storageKey")
    file_name: str = Field(default="", alias="fileName")
    file_size: int = Field(default=0, ge=0, alias="fileSize")
    page_count: int = Field(default=0, ge=0, alias="pageCount")
    section: Optional[str] = None
    transposition: Optional[str] = None
    part_number: Union[str, int, None] = Field(default=None, alias="partNumber")
    page_range: Optional[Tuple[int, int]] = Field(default=None, alias="pageRange")

    @field_validator("page_range")
    @classmethod
    def _check_page_range(cls, value: Optional[Tuple[int, int]]) -> Optional[Tuple[int, int]]:
        return _ordered_page_range(value)

    def to_record(self) -> ParsedPartRecord:
        return ParsedPartRecord(
            part_name=self.part_name,
            instrument=self.instrument,
            storage_key=self.storage_key,
            file_name=self.file_name,
            file_size=self.file_size,
            page_count=self.page_count,
            section=self.section,
            transposition=self.transposition,
            part_number=_chair_text(self.part_number),
            page_range=self.page_range,
        )


class ExtractionRequest(BaseModel):
    metadata: MetadataModel
    parsed_parts: Optional[List[ParsedPartModel]] = None
    total_pages: Optional[int] = Field(default=None, ge=0)
    text_coverage: Optional[float] = Field(default=None, ge=0, le=1)
    segmentation_confidence: Optional[float] = Field(default=None, ge=0, le=100)
    metadata_conflicts: Optional[List[str]] = None


class ApproveRequest(BaseModel):
    overrides: Optional[Dict[str, Optional[str]]] = None


class RejectRequest(BaseModel):
    reason: Optional[str] = None


class FailureRequest(BaseModel):
    code: ErrorCode
    stage: FailureStage
    message: str = ""


class SettingsUpdateRequest(BaseModel):
    settings: Dict[str, Optional[str]]


def create_app() -> FastAPI:
    configure_logging()
    settings = Settings.from_env()
    pipeline = build_pipeline(settings)
    logger = get_logger("backend.api")

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        actions = await asyncio.to_thread(
            bootstrap_settings, pipeline.settings_store, settings, updated_by="system:bootstrap"
        )
        if actions:
            logger.info("settings_bootstrap_complete count=%s", len(actions))
        yield

    app = FastAPI(title="Score Ingest Backend", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.pipeline = pipeline
    install_error_handlers(app)

    cors_env = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if cors_env:
        cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
    else:
        cors_origins = ["http://localhost:5173", "http://127.0.0.1:5173"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.monotonic()
        session_id = _session_id_from_path(request.url.path)
        set_log_context(session_id=session_id)
        response = None
        try:
            response = await call_next(request)
        finally:
            duration_ms = (time.monotonic() - start) * 1000.0
            logger.debug(
                "http_request method=%s path=%s status=%s duration_ms=%.2f session_id=%s",
                request.method,
                request.url.path,
                getattr(response, "status_code", "error"),
                duration_ms,
                session_id,
            )
            clear_log_context()
        return response

    @app.post("/sessions", status_code=201)
    async def create_session(request: Request, payload: CreateSessionRequest) -> Dict[str, Any]:
        await _get_user_id_or_401(request)
        session = await asyncio.to_thread(
            _pipeline(request).create_session,
            file_name=payload.file_name,
            storage_key=payload.storage_key,
            file_size=payload.file_size,
            mime_type=payload.mime_type,
            source_sha256=payload.source_sha256,
        )
        return session.to_dict()

    @app.get("/sessions/{session_id}")
    async def get_session(session_id: str, request: Request) -> Dict[str, Any]:
        await _get_user_id_or_401(request)
        session = await _call_or_404(_pipeline(request).get_session, session_id)
        return session.to_dict()

    @app.post("/sessions/{session_id}/status")
    async def advance_status(session_id: str, request: Request, payload: StatusRequest) -> Dict[str, Any]:
        await _get_user_id_or_401(request)
        session = await _call_or_404(_pipeline(request).advance, session_id, payload.field, payload.to)
        return session.to_dict()

    @app.post("/sessions/{session_id}/extraction")
    async def record_extraction(
        session_id: str, request: Request, payload: ExtractionRequest
    ) -> Dict[str, Any]:
        await _get_user_id_or_401(request)
        parsed_parts = None
        if payload.parsed_parts is not None:
            parsed_parts = [item.to_record() for item in payload.parsed_parts]
        pipeline = _pipeline(request)
        session = await _call_or_404(
            lambda: pipeline.record_extraction(
                session_id,
                payload.metadata.to_metadata(),
                parsed_parts=parsed_parts,
                total_pages=payload.total_pages,
                text_coverage=payload.text_coverage,
                segmentation_confidence=payload.segmentation_confidence,
                metadata_conflicts=payload.metadata_conflicts,
            )
        )
        return session.to_dict()

    @app.get("/sessions/{session_id}/route")
    async def preview_route(session_id: str, request: Request) -> Dict[str, Any]:
        await _get_user_id_or_401(request)
        routing = await _call_or_404(_pipeline(request).decide, session_id)
        return routing.to_dict()

    @app.post("/sessions/{session_id}/route")
    async def apply_route(session_id: str, request: Request) -> Dict[str, Any]:
        await _get_user_id_or_401(request)
        outcome = await _call_or_404(_pipeline(request).apply_route, session_id)
        return outcome.to_dict()

    @app.post("/sessions/{session_id}/approve")
    async def approve(session_id: str, request: Request, payload: ApproveRequest) -> Dict[str, Any]:
        user_id = _human_reviewer(await _get_user_id_or_401(request))
        overrides = CommitOverrides.from_dict(payload.overrides)
        result = await _call_or_404(_pipeline(request).approve, session_id, user_id, overrides)
        return result.to_dict()

    @app.post("/sessions/{session_id}/reject")
    async def reject(session_id: str, request: Request, payload: RejectRequest) -> Dict[str, Any]:
        user_id = _human_reviewer(await _get_user_id_or_401(request))
        session = await _call_or_404(_pipeline(request).reject, session_id, user_id, payload.reason)
        return session.to_dict()

    @app.post("/sessions/{session_id}/failure")
    async def record_failure(
        session_id: str, request: Request, payload: FailureRequest
    ) -> Dict[str, Any]:
        await _get_user_id_or_401(request)
        session = await _call_or_404(
            _pipeline(request).record_failure,
            session_id,
            payload.code,
            payload.stage,
            payload.message or payload.code.value,
        )
        return session.to_dict()

    @app.post("/sessions/{session_id}/retry")
    async def retry(session_id: str, request: Request) -> Dict[str, Any]:
        await _get_user_id_or_401(request)
        try:
            session = await _call_or_404(_pipeline(request).retry, session_id)
        except RetryNotAllowedError as exc:
            raise ApiError(INVALID_STATE, str(exc), status_code=409) from exc
        return session.to_dict()

    @app.get("/settings")
    async def get_settings(request: Request) -> Dict[str, Any]:
        await _get_user_id_or_401(request)
        record = await asyncio.to_thread(_pipeline(request).settings_store.load)
        return {"settings": mask_secrets(record)}

    @app.put("/settings")
    async def update_settings(request: Request, payload: SettingsUpdateRequest) -> Dict[str, Any]:
        user_id = await _get_user_id_or_401(request)
        store = _pipeline(request).settings_store
        existing = await asyncio.to_thread(store.load)
        merged = merge_settings_preserving_secrets(existing, payload.settings)
        errors = validate_settings(merged)
        if errors:
            raise ApiError(VALIDATION_ERROR, "Invalid settings.", details={"errors": errors})
        await asyncio.to_thread(store.save, merged, updated_by=user_id)
        logger.info("settings_updated keys=%s", sorted(payload.settings))
        return {"settings": mask_secrets(merged)}

    return app


def _pipeline(request: Request) -> IngestPipeline:
    return request.app.state.pipeline


def _session_id_from_path(path: str) -> Optional[str]:
    parts = [part for part in path.split("/") if part]
    if len(parts) >= 2 and parts[0] == "sessions":
        return parts[1]
    return None


async def _call_or_404(func: Callable[..., T], *args: Any) -> T:
    try:
        return await asyncio.to_thread(func, *args)
    except SessionNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Session not found.") from exc


def _human_reviewer(user_id: str) -> str:
    # "system:" ids are reserved for the autonomous commit path.
    if is_autonomous_actor(user_id):
        raise ApiError(FORBIDDEN, "System identities cannot review sessions.", status_code=403)
    return user_id


def _extract_bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization")
    if not auth_header:
        raise HTTPException(status_code=401, detail="Missing Authorization header.")
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid Authorization header.")
    return parts[1]


async def _get_user_id_or_401(request: Request) -> str:
    settings: Settings = request.app.state.settings
    if settings.backend_auth_disabled:
        user_id = settings.dev_user_id
        set_log_context(user_id=user_id)
        return user_id
    token = _extract_bearer_token(request)
    try:
        user_id = await asyncio.to_thread(verify_id_token, token)
        set_log_context(user_id=user_id)
        return user_id
    except HTTPException:
        raise
    except Exception as exc:
        raise HTTPException(status_code=401, detail="Invalid Firebase token.") from exc


app = create_app()
