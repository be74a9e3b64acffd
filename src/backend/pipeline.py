from __future__ import annotations

"""Composition root for the ingestion decision engine.

IngestPipeline owns the instrument registry and the stores, turns routing
decisions into status transitions and records failures on sessions. Every
status write goes through the transition tables.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional, Sequence, Union

from src.backend.config import Settings
from src.backend.library_store import FirestoreLibraryStore, InMemoryLibraryStore
from src.backend.logging_utils import get_logger, log_context, summarize_payload
from src.backend.session_store import FirestoreSessionStore, InMemorySessionStore
from src.backend.settings_store import (
    FirestoreSettingsStore,
    InMemorySettingsStore,
    thresholds_from_settings,
)
from src.backend.storage_client import make_file_deleter, make_file_reader
from src.ingest.commit import (
    AUTO_COMMIT_ACTOR,
    CommitOverrides,
    CommitResult,
    CommitService,
    check_commit_eligibility,
)
from src.ingest.duplicates import (
    DuplicateCheckResult,
    check_source_duplicate,
    check_work_duplicate,
    compute_sha256,
    compute_work_fingerprint,
    resolve_deduplication_policy,
)
from src.ingest.instruments import InstrumentRegistry, build_default_registry
from src.ingest.models import ExtractedMetadata, ParsedPartRecord, Session
from src.ingest.normalizer import normalize_person_name, normalize_title
from src.ingest.quality_gates import count_valid_parts, evaluate_quality_gates
from src.ingest.routing import PipelineRoute, PolicyThresholds, RoutingResult, RoutingSignals, determine_route
from src.ingest.session_errors import (
    ErrorCode,
    FailureStage,
    SessionFailure,
    create_session_failure,
    failure_from_exception,
)
from src.ingest.state import (
    TABLES_BY_FIELD,
    CommitStatus,
    OcrStatus,
    SecondPassStatus,
    StatusValue,
    WorkflowStatus,
    assert_transition,
    can_auto_commit,
    can_queue_ocr,
    can_queue_second_pass,
    is_valid_commit_transition,
    is_valid_workflow_transition,
)

logger = get_logger(__name__)

# Stage -> session attribute of the sub-status that stage drives.
_STAGE_FIELDS = {
    FailureStage.OCR: "ocr_status",
    FailureStage.SECOND_PASS: "second_pass_status",
    FailureStage.ADJUDICATION: "second_pass_status",
    FailureStage.COMMIT: "commit_status",
}


class RetryNotAllowedError(ValueError):
    """The session's latest failure is not retriable, or there is none."""

    def __init__(self, session_id: str, failure: Optional[SessionFailure]) -> None:
        self.session_id = session_id
        self.failure = failure
        reason = f"last failure {failure.code.value} is not retriable" if failure else "no failure recorded"
        super().__init__(f"Session {session_id} cannot be retried: {reason}")


@dataclass(frozen=True)
class RouteOutcome:
    routing: RoutingResult
    session: Session
    commit: Optional[CommitResult] = None

    def to_dict(self) -> dict:
        payload = {"routing": self.routing.to_dict(), "session": self.session.to_dict()}
        if self.commit is not None:
            payload["commit"] = self.commit.to_dict()
        return payload


def _discard_temp_file(key: str) -> None:
    logger.debug("temp_file_discard_skipped key=%s storage=disabled", key)


def _set_status(session: Session, field_name: str, to_state: StatusValue) -> None:
    table = TABLES_BY_FIELD[field_name]
    current = getattr(session, field_name)
    assert_transition(table, current, to_state)
    setattr(session, field_name, table.coerce(to_state))
    logger.info(
        "status_transition session_id=%s field=%s from=%s to=%s",
        session.id,
        field_name,
        current.value,
        getattr(session, field_name).value,
    )


class IngestPipeline:
    """Drives sessions between stages; external workers do the actual processing."""

    def __init__(
        self,
        settings: Settings,
        sessions: Any,
        library: Any,
        settings_store: Any,
        delete_file: Callable[[str], None],
        registry: Optional[InstrumentRegistry] = None,
        read_file: Optional[Callable[[str], bytes]] = None,
    ) -> None:
        self.settings = settings
        self.sessions = sessions
        self.library = library
        self.settings_store = settings_store
        self.registry = registry or build_default_registry()
        self._delete_file = delete_file
        self._read_file = read_file
        self.commits = CommitService(sessions, library, self.registry, delete_file)

    def thresholds(self) -> PolicyThresholds:
        return thresholds_from_settings(self.settings_store.load(), self.settings.routing_thresholds)

    def create_session(
        self,
        *,
        file_name: str,
        storage_key: str,
        file_size: int = 0,
        mime_type: str = "application/pdf",
        source_sha256: Optional[str] = None,
    ) -> Session:
        """Register an upload; oversized files fail immediately with a terminal code."""
        if not source_sha256 and self._read_file is not None and file_size <= self.settings.max_upload_bytes:
            source_sha256 = compute_sha256(self._read_file(storage_key))
        session = Session.new(
            file_name=file_name,
            storage_key=storage_key,
            file_size=file_size,
            mime_type=mime_type,
            source_sha256=source_sha256,
        )
        session.temp_files.append(storage_key)
        if source_sha256:
            existing = self.sessions.find_by_source_hash(source_sha256, exclude_id=session.id)
            result = check_source_duplicate(source_sha256, existing)
            if result.is_duplicate:
                session.duplicate_flag = True
                session.review_reasons.append(result.reason)
        self.sessions.create_session(session)
        with log_context(session_id=session.id, stage=FailureStage.UPLOAD.value):
            logger.info(
                "session_created session_id=%s file_name=%s size=%s duplicate=%s",
                session.id,
                file_name,
                file_size,
                session.duplicate_flag,
            )
            if file_size > self.settings.max_upload_bytes:
                return self.record_failure(
                    session.id,
                    ErrorCode.FILE_TOO_LARGE,
                    FailureStage.UPLOAD,
                    f"Upload is {file_size} bytes (max {self.settings.max_upload_bytes})",
                )
        return session

    def get_session(self, session_id: str) -> Session:
        return self.sessions.get_session(session_id)

    def advance(self, session_id: str, field_name: str, to_state: StatusValue) -> Session:
        """Move one status dimension, rejecting anything its table forbids."""
        if field_name not in TABLES_BY_FIELD:
            raise ValueError(f"Unknown status field: {field_name}")
        session = self.sessions.get_session(session_id)
        _set_status(session, field_name, to_state)
        self.sessions.save_session(session)
        return session

    def record_extraction(
        self,
        session_id: str,
        metadata: ExtractedMetadata,
        *,
        parsed_parts: Optional[Sequence[ParsedPartRecord]] = None,
        total_pages: Optional[int] = None,
        text_coverage: Optional[float] = None,
        segmentation_confidence: Optional[float] = None,
        metadata_conflicts: Optional[List[str]] = None,
    ) -> Session:
        """Store recognizer output and derive review and duplicate flags from it."""
        session = self.sessions.get_session(session_id)
        with log_context(session_id=session_id, stage=FailureStage.METADATA_EXTRACTION.value):
            session.extracted_metadata = metadata
            if parsed_parts is not None:
                session.parsed_parts = list(parsed_parts)
                for part in session.parsed_parts:
                    if part.storage_key not in session.temp_files:
                        session.temp_files.append(part.storage_key)
            if total_pages is not None:
                session.page_count = total_pages
            if text_coverage is not None:
                session.text_coverage = text_coverage
            if segmentation_confidence is not None:
                session.segmentation_confidence = segmentation_confidence
            if metadata_conflicts is not None:
                session.metadata_conflicts = list(metadata_conflicts)

            gates = evaluate_quality_gates(
                parsed_parts=session.parsed_parts,
                metadata=metadata,
                total_pages=session.page_count,
                max_pages_per_part=self.settings.max_pages_per_part,
                segmentation_confidence=session.segmentation_confidence,
                segmentation_threshold=self.settings.segmentation_threshold,
            )
            if gates.failed:
                session.requires_human_review = True
                _extend_unique(session.review_reasons, gates.reasons)
                logger.warning(
                    "quality_gates_failed session_id=%s reasons=%s",
                    session_id,
                    summarize_payload(gates.reasons),
                )

            duplicate = self._check_work_duplicate(session, metadata)
            if duplicate.is_duplicate:
                session.duplicate_flag = True
                _extend_unique(session.review_reasons, [duplicate.reason])

            logger.info(
                "extraction_recorded session_id=%s confidence=%s final_confidence=%s parts=%s",
                session_id,
                metadata.confidence_score,
                gates.final_confidence,
                count_valid_parts(metadata, session.parsed_parts),
            )
        self.sessions.save_session(session)
        return session

    def _check_work_duplicate(self, session: Session, metadata: ExtractedMetadata) -> DuplicateCheckResult:
        fingerprint = compute_work_fingerprint(
            normalize_title(metadata.title), normalize_person_name(metadata.composer)
        )
        match = self.library.find_piece_by_work_fingerprint(fingerprint.hash)
        piece_id, title = match if match else (None, "")
        source_session = None
        if session.source_sha256:
            source_session = self.sessions.find_by_source_hash(session.source_sha256, exclude_id=session.id)
        source = check_source_duplicate(session.source_sha256 or "", source_session)
        return resolve_deduplication_policy(source, check_work_duplicate(fingerprint, piece_id, title))

    def signals_for(self, session: Session) -> RoutingSignals:
        metadata = session.extracted_metadata
        return RoutingSignals(
            text_coverage=session.text_coverage,
            metadata_confidence=metadata.confidence_score if metadata else 0.0,
            segmentation_confidence=session.segmentation_confidence,
            valid_part_count=count_valid_parts(metadata, session.parsed_parts),
            has_metadata_conflicts=bool(session.metadata_conflicts),
            has_duplicate_flag=session.duplicate_flag,
            requires_human_review=session.requires_human_review,
            ocr_status=session.ocr_status,
            second_pass_status=session.second_pass_status,
            commit_status=session.commit_status,
            workflow_status=session.workflow_status,
        )

    def decide(self, session_id: str) -> RoutingResult:
        session = self.sessions.get_session(session_id)
        return determine_route(self.signals_for(session), self.thresholds())

    def apply_route(self, session_id: str) -> RouteOutcome:
        """Decide the next route and perform the status transitions it implies."""
        session = self.sessions.get_session(session_id)
        thresholds = self.thresholds()
        routing = determine_route(self.signals_for(session), thresholds)
        with log_context(session_id=session_id):
            logger.info(
                "route_decided session_id=%s route=%s reasons=%s",
                session_id,
                routing.route.value,
                summarize_payload(routing.reasons),
            )
            if routing.route is PipelineRoute.OCR_REQUIRED:
                if can_queue_ocr(session.ocr_status):
                    _set_status(session, "ocr_status", OcrStatus.QUEUED)
                    self.sessions.save_session(session)
            elif routing.route is PipelineRoute.SECOND_PASS_REQUIRED:
                if can_queue_second_pass(session.second_pass_status):
                    _set_status(session, "second_pass_status", SecondPassStatus.QUEUED)
                    self.sessions.save_session(session)
            elif routing.route is PipelineRoute.EXCEPTION_REVIEW:
                if is_valid_workflow_transition(session.workflow_status, WorkflowStatus.PENDING_REVIEW):
                    _set_status(session, "workflow_status", WorkflowStatus.PENDING_REVIEW)
                    _extend_unique(session.review_reasons, routing.reasons)
                    self.sessions.save_session(session)
            elif routing.route is PipelineRoute.AUTO_COMMIT:
                if can_auto_commit(
                    session.workflow_status,
                    session.commit_status,
                    session.second_pass_status,
                    thresholds.autonomous_mode_enabled,
                ):
                    return self._auto_commit(session, routing)
                logger.info(
                    "auto_commit_not_ready session_id=%s workflow=%s commit=%s",
                    session_id,
                    session.workflow_status.value,
                    session.commit_status.value,
                )
            else:
                # Text-only leaves every status untouched; processing continues outside.
                logger.info("route_no_status_change session_id=%s route=%s", session_id, routing.route.value)
        return RouteOutcome(routing=routing, session=session)

    def _auto_commit(self, session: Session, routing: RoutingResult) -> RouteOutcome:
        with log_context(stage=FailureStage.COMMIT.value):
            if session.workflow_status is WorkflowStatus.PROCESSED:
                _set_status(session, "workflow_status", WorkflowStatus.READY_TO_COMMIT)
            _set_status(session, "workflow_status", WorkflowStatus.COMMITTING)
            _set_status(session, "commit_status", CommitStatus.QUEUED)
            _set_status(session, "commit_status", CommitStatus.IN_PROGRESS)
            self.sessions.save_session(session)
            try:
                result = self.commits.commit(session.id, approved_by=AUTO_COMMIT_ACTOR)
            except Exception as exc:
                logger.exception("auto_commit_failed session_id=%s error=%s", session.id, exc)
                failed = self.record_failure(session.id, exc, FailureStage.COMMIT)
                return RouteOutcome(routing=routing, session=failed)
        return RouteOutcome(routing=routing, session=self.sessions.get_session(session.id), commit=result)

    def record_failure(
        self,
        session_id: str,
        error: Union[BaseException, ErrorCode, str],
        stage: Union[FailureStage, str],
        message: Optional[str] = None,
    ) -> Session:
        """Attach a classified failure and move the session (and the stage's sub-status) to FAILED."""
        session = self.sessions.get_session(session_id)
        stage = FailureStage(stage)
        if isinstance(error, BaseException):
            failure = failure_from_exception(error, stage)
        else:
            failure = create_session_failure(error, stage, message or str(error))
        session.failures.append(failure)
        field_name = _STAGE_FIELDS.get(stage)
        if field_name is not None:
            current = getattr(session, field_name)
            if TABLES_BY_FIELD[field_name].coerce("FAILED") in TABLES_BY_FIELD[field_name].allowed(current):
                _set_status(session, field_name, "FAILED")
        if is_valid_workflow_transition(session.workflow_status, WorkflowStatus.FAILED):
            _set_status(session, "workflow_status", WorkflowStatus.FAILED)
        logger.warning(
            "session_failure_recorded session_id=%s code=%s stage=%s retriable=%s",
            session_id,
            failure.code.value,
            failure.stage.value,
            failure.retriable,
        )
        self.sessions.save_session(session)
        return session

    def retry(self, session_id: str) -> Session:
        """Requeue a failed session when its latest failure is retriable."""
        session = self.sessions.get_session(session_id)
        failure = session.last_failure
        if failure is None or not failure.retriable:
            raise RetryNotAllowedError(session_id, failure)
        _set_status(session, "workflow_status", WorkflowStatus.QUEUED)
        field_name = _STAGE_FIELDS.get(failure.stage)
        # A failed commit stays FAILED; the commit paths requeue it themselves.
        if field_name == "commit_status":
            field_name = None
        if field_name is not None and getattr(session, field_name).value == "FAILED":
            _set_status(session, field_name, "QUEUED")
        logger.info("session_retry_queued session_id=%s code=%s", session_id, failure.code.value)
        self.sessions.save_session(session)
        return session

    def approve(
        self,
        session_id: str,
        reviewer: str,
        overrides: Optional[CommitOverrides] = None,
    ) -> CommitResult:
        """Manual approval: commit a reviewed session on behalf of the reviewer."""
        session = self.sessions.get_session(session_id)
        if session.workflow_status is WorkflowStatus.APPROVED:
            return self.commits.commit(session_id, overrides, approved_by=reviewer)
        check_commit_eligibility(session, reviewer)
        with log_context(session_id=session_id, stage=FailureStage.COMMIT.value):
            if is_valid_commit_transition(session.commit_status, CommitStatus.QUEUED):
                _set_status(session, "commit_status", CommitStatus.QUEUED)
            if is_valid_commit_transition(session.commit_status, CommitStatus.IN_PROGRESS):
                _set_status(session, "commit_status", CommitStatus.IN_PROGRESS)
            self.sessions.save_session(session)
            try:
                return self.commits.commit(session_id, overrides, approved_by=reviewer)
            except Exception as exc:
                self.record_failure(session_id, exc, FailureStage.COMMIT)
                raise

    def reject(self, session_id: str, reviewer: str, reason: Optional[str] = None) -> Session:
        session = self.sessions.get_session(session_id)
        _set_status(session, "workflow_status", WorkflowStatus.REJECTED)
        session.reviewed_by = reviewer
        session.reviewed_at = datetime.now(timezone.utc)
        if reason:
            session.review_reasons.append(f"Rejected: {reason}")
        self.sessions.save_session(session)
        for key in session.temp_files:
            try:
                self._delete_file(key)
            except Exception as exc:
                logger.warning("reject_temp_file_delete_failed session_id=%s key=%s error=%s", session_id, key, exc)
        return session


def _extend_unique(target: List[str], values: Sequence[str]) -> None:
    for value in values:
        if value not in target:
            target.append(value)


def build_pipeline(settings: Settings) -> IngestPipeline:
    """Wire stores for the configured backend: Firestore in deployments, memory in dev."""
    if settings.backend_use_firestore:
        sessions: Any = FirestoreSessionStore(collection=settings.sessions_collection)
        library: Any = FirestoreLibraryStore(sessions_collection=settings.sessions_collection)
        settings_store: Any = FirestoreSettingsStore(collection=settings.settings_collection)
    else:
        sessions = InMemorySessionStore()
        library = InMemoryLibraryStore(sessions)
        settings_store = InMemorySettingsStore()
    if settings.backend_use_storage:
        delete_file = make_file_deleter(settings.storage_bucket)
        read_file: Optional[Callable[[str], bytes]] = make_file_reader(settings.storage_bucket)
    else:
        delete_file = _discard_temp_file
        read_file = None
    return IngestPipeline(settings, sessions, library, settings_store, delete_file, read_file=read_file)
