from __future__ import annotations

"""Publish an ingestion session to the catalogue exactly once.

Shared by the manual review path and the autonomous auto-commit path. The
service builds a complete CommitPlan up front and hands it to the library
store, which applies it in one transaction and enforces that a session is
the origin of at most one catalogue record.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Tuple
import hashlib
import uuid

from src.backend.logging_utils import get_logger
from src.ingest.duplicates import compute_work_fingerprint
from src.ingest.instruments import InstrumentRegistry
from src.ingest.models import CuttingInstruction, ExtractedMetadata, ParsedPartRecord, Session
from src.ingest.normalizer import (
    NormalizedMetadata,
    build_part_display_name,
    build_part_filename,
    normalize_extracted_metadata,
    normalize_instrument,
    normalize_person_name,
    normalize_publisher,
    normalize_title,
    normalize_transposition,
    resolve_chair,
    generate_part_fingerprint,
)
from src.ingest.session_errors import ErrorCode
from src.ingest.state import (
    CommitStatus,
    WorkflowStatus,
    assert_workflow_transition,
    is_valid_commit_transition,
)

logger = get_logger(__name__)

AUTO_COMMIT_ACTOR = "system:auto-commit"
_AUTONOMOUS_PREFIX = "system:"

_MANUAL_COMMIT_STATES = frozenset({WorkflowStatus.PENDING_REVIEW, WorkflowStatus.COMMITTING})
# Autonomous retries may resume a session approved by an earlier partial attempt.
_AUTONOMOUS_COMMIT_STATES = _MANUAL_COMMIT_STATES | {WorkflowStatus.APPROVED}


class CommitEligibilityError(ValueError):
    """The session is not in a state that may be committed. Never retried."""

    retriable = False

    def __init__(self, session_id: str, status: Optional[WorkflowStatus], approved_by: str) -> None:
        self.session_id = session_id
        self.status = status
        self.approved_by = approved_by
        shown = status.value if status is not None else "an unknown status"
        super().__init__(f"Session {session_id} cannot be committed from {shown} by {approved_by}")


class DuplicateCommitError(RuntimeError):
    """Another commit already claimed this session as its origin."""

    code = ErrorCode.COMMIT_DUPLICATE

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} is already the origin of a catalogue record")


def is_autonomous_actor(approved_by: str) -> bool:
    return approved_by.startswith(_AUTONOMOUS_PREFIX)


def check_commit_eligibility(session: Session, approved_by: str) -> None:
    allowed = _AUTONOMOUS_COMMIT_STATES if is_autonomous_actor(approved_by) else _MANUAL_COMMIT_STATES
    if session.workflow_status not in allowed:
        raise CommitEligibilityError(session.id, session.workflow_status, approved_by)


@dataclass(frozen=True)
class CommitOverrides:
    """Reviewer-supplied values that take precedence over extracted metadata."""
    title: Optional[str] = None
    composer: Optional[str] = None
    arranger: Optional[str] = None
    publisher: Optional[str] = None
    instrument: Optional[str] = None
    part_number: Optional[str] = None
    difficulty: Optional[str] = None
    ensemble_type: Optional[str] = None
    key_signature: Optional[str] = None
    time_signature: Optional[str] = None
    tempo: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Optional[str]]]) -> "CommitOverrides":
        data = data or {}
        return cls(
            title=data.get("title"),
            composer=data.get("composer"),
            arranger=data.get("arranger"),
            publisher=data.get("publisher"),
            instrument=data.get("instrument"),
            part_number=data.get("partNumber"),
            difficulty=data.get("difficulty"),
            ensemble_type=data.get("ensembleType"),
            key_signature=data.get("keySignature"),
            time_signature=data.get("timeSignature"),
            tempo=data.get("tempo"),
        )


# Field precedence: overrides > normalized > raw > fallback.

def first_present(*candidates: Optional[str]) -> Optional[str]:
    """Return the first candidate that is non-blank after trimming."""
    for candidate in candidates:
        if candidate is None:
            continue
        value = candidate.strip()
        if value:
            return value
    return None


def resolve_title(
    overrides: CommitOverrides,
    normalized: Optional[NormalizedMetadata],
    raw: Optional[ExtractedMetadata],
    file_name: str,
) -> str:
    return first_present(
        overrides.title,
        normalized.title.normalized if normalized else None,
        raw.title if raw else None,
        file_name,
    ) or file_name


def resolve_composer(
    overrides: CommitOverrides,
    normalized: Optional[NormalizedMetadata],
    raw: Optional[ExtractedMetadata],
) -> Optional[str]:
    return first_present(
        overrides.composer,
        normalized.composer.normalized if normalized else None,
        raw.composer if raw else None,
    )


def resolve_arranger(
    overrides: CommitOverrides,
    normalized: Optional[NormalizedMetadata],
    raw: Optional[ExtractedMetadata],
) -> Optional[str]:
    return first_present(
        overrides.arranger,
        normalized.arranger.normalized if normalized else None,
        raw.arranger if raw else None,
    )


def resolve_publisher(
    overrides: CommitOverrides,
    normalized: Optional[NormalizedMetadata],
    raw: Optional[ExtractedMetadata],
) -> Optional[str]:
    return first_present(
        overrides.publisher,
        normalized.publisher.normalized if normalized else None,
        raw.publisher if raw else None,
    )


def resolve_ensemble_type(
    overrides: CommitOverrides,
    normalized: Optional[NormalizedMetadata],
    raw: Optional[ExtractedMetadata],
) -> Optional[str]:
    return first_present(
        overrides.ensemble_type,
        normalized.ensemble_type.normalized if normalized else None,
        raw.ensemble_type if raw else None,
    )


def resolve_instrument(overrides: CommitOverrides, raw: Optional[ExtractedMetadata]) -> Optional[str]:
    return first_present(overrides.instrument, raw.instrument if raw else None)


def resolve_detail(override: Optional[str], raw_value: Optional[str]) -> Optional[str]:
    """Key, meter and tempo have no normalized form."""
    return first_present(override, raw_value)


def _record_key(kind: str, name: str) -> str:
    """Stable document key used for find-or-create lookups by name."""
    digest = hashlib.sha256(f"{kind}:{name.lower()}".encode("utf-8")).hexdigest()
    return digest[:24]


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class PersonRecord:
    key: str
    full_name: str
    first_name: str
    last_name: str

    @classmethod
    def from_name(cls, raw_name: str) -> "PersonRecord":
        full_name = normalize_person_name(raw_name)
        pieces = full_name.split(" ")
        if len(pieces) > 1:
            first_name, last_name = " ".join(pieces[:-1]), pieces[-1]
        else:
            first_name, last_name = "", pieces[0]
        return cls(_record_key("person", full_name), full_name, first_name, last_name)

    def to_dict(self) -> Dict[str, str]:
        return {"fullName": self.full_name, "firstName": self.first_name, "lastName": self.last_name}


@dataclass(frozen=True)
class PublisherRecord:
    key: str
    name: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name}


@dataclass(frozen=True)
class InstrumentRecord:
    key: str
    name: str
    section: str
    transposition: str

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "section": self.section, "transposition": self.transposition}


@dataclass(frozen=True)
class PieceRecord:
    id: str
    title: str
    work_fingerprint: str
    composer_key: Optional[str]
    arranger_key: Optional[str]
    publisher_key: Optional[str]
    confidence_score: Optional[float]
    difficulty: Optional[str]
    ensemble_type: Optional[str]
    key_signature: Optional[str]
    time_signature: Optional[str]
    tempo: Optional[str]
    notes: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "title": self.title,
            "workFingerprint": self.work_fingerprint,
            "composerId": self.composer_key,
            "arrangerId": self.arranger_key,
            "publisherId": self.publisher_key,
            "confidenceScore": self.confidence_score,
            "difficulty": self.difficulty,
            "ensembleType": self.ensemble_type,
            "keySignature": self.key_signature,
            "timeSignature": self.time_signature,
            "tempo": self.tempo,
            "notes": self.notes,
            "source": "SMART_UPLOAD",
        }


@dataclass(frozen=True)
class FileRecord:
    id: str
    file_name: str
    file_type: str
    file_size: int
    mime_type: str
    storage_key: str
    part_label: Optional[str] = None
    instrument_name: Optional[str] = None
    section: Optional[str] = None
    part_number: Optional[str] = None
    page_count: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "fileName": self.file_name,
            "fileType": self.file_type,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "storageKey": self.storage_key,
            "partLabel": self.part_label,
            "instrumentName": self.instrument_name,
            "section": self.section,
            "partNumber": self.part_number,
            "pageCount": self.page_count,
        }


@dataclass(frozen=True)
class PartRecord:
    id: str
    part_name: str
    instrument_key: str
    file_id: str
    section: str
    transposition: str
    chair: Optional[str]
    page_range: Tuple[int, int]
    fingerprint: str
    storage_key: Optional[str] = None
    display_name: str = ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "partName": self.part_name,
            "instrumentId": self.instrument_key,
            "fileId": self.file_id,
            "section": self.section,
            "transposition": self.transposition,
            "chair": self.chair,
            "pageRange": list(self.page_range),
            "fingerprint": self.fingerprint,
            "storageKey": self.storage_key,
            "displayName": self.display_name,
        }


@dataclass(frozen=True)
class SessionUpdate:
    expected_status: WorkflowStatus
    workflow_status: WorkflowStatus
    commit_status: CommitStatus
    reviewed_by: str
    reviewed_at: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            "workflowStatus": self.workflow_status.value,
            "commitStatus": self.commit_status.value,
            "reviewedBy": self.reviewed_by,
            "reviewedAt": self.reviewed_at.isoformat(),
            "updatedAt": self.reviewed_at.isoformat(),
        }


@dataclass(frozen=True)
class CommitPlan:
    """Everything one commit writes, computed before the transaction starts."""
    session_id: str
    approved_by: str
    piece: PieceRecord
    original_file: FileRecord
    people: List[PersonRecord] = field(default_factory=list)
    publisher: Optional[PublisherRecord] = None
    instruments: List[InstrumentRecord] = field(default_factory=list)
    part_files: List[FileRecord] = field(default_factory=list)
    parts: List[PartRecord] = field(default_factory=list)
    session_update: Optional[SessionUpdate] = None
    stale_temp_files: List[str] = field(default_factory=list)

    @property
    def referenced_storage_keys(self) -> List[str]:
        return [self.original_file.storage_key] + [f.storage_key for f in self.part_files]


@dataclass(frozen=True)
class CommitRecord:
    """What the library remembers about a committed session."""
    catalogue_record_id: str
    title: str
    file_id: str
    session_id: str
    parts_committed: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "catalogueRecordId": self.catalogue_record_id,
            "title": self.title,
            "fileId": self.file_id,
            "sessionId": self.session_id,
            "partsCommitted": self.parts_committed,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "CommitRecord":
        return cls(
            catalogue_record_id=str(data["catalogueRecordId"]),
            title=str(data.get("title") or ""),
            file_id=str(data.get("fileId") or ""),
            session_id=str(data["sessionId"]),
            parts_committed=int(data.get("partsCommitted") or 0),
        )


@dataclass(frozen=True)
class CommitResult:
    catalogue_record_id: str
    title: str
    file_id: str
    session_id: str
    parts_committed: int
    was_idempotent: bool

    @classmethod
    def from_record(cls, record: CommitRecord, *, was_idempotent: bool) -> "CommitResult":
        return cls(
            catalogue_record_id=record.catalogue_record_id,
            title=record.title,
            file_id=record.file_id,
            session_id=record.session_id,
            parts_committed=record.parts_committed,
            was_idempotent=was_idempotent,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "catalogueRecordId": self.catalogue_record_id,
            "title": self.title,
            "fileId": self.file_id,
            "sessionId": self.session_id,
            "partsCommitted": self.parts_committed,
            "wasIdempotent": self.was_idempotent,
        }


class SessionReader(Protocol):
    def get_session(self, session_id: str) -> Session:
        ...


class CatalogueLibrary(Protocol):
    def find_commit_by_origin(self, session_id: str) -> Optional[CommitRecord]:
        ...

    def execute_commit(self, plan: CommitPlan) -> CommitRecord:
        """Apply the plan atomically; raise DuplicateCommitError if the origin is taken."""
        ...


class _PlanBuilder:
    """Accumulates instruments, files and parts while skipping duplicate fingerprints."""

    def __init__(
        self,
        session: Session,
        registry: InstrumentRegistry,
        original_file_id: str,
        piece_title: str,
    ) -> None:
        self._session = session
        self._registry = registry
        self._original_file_id = original_file_id
        self._piece_title = piece_title
        self.instruments: Dict[str, InstrumentRecord] = {}
        self.part_files: List[FileRecord] = []
        self.parts: List[PartRecord] = []
        self._fingerprints: set = set()

    def add_part(
        self,
        *,
        raw_instrument: str,
        part_name: str,
        part_number: Optional[str],
        page_range: Tuple[int, int],
        transposition: Optional[str] = None,
        split_file: Optional[ParsedPartRecord] = None,
    ) -> None:
        instrument = normalize_instrument(raw_instrument, self._registry)
        chair = resolve_chair(part_number, part_name, raw_instrument)
        start, end = page_range
        fingerprint = generate_part_fingerprint(
            self._session.id, instrument.canonical_name, chair, start, end
        )
        if fingerprint in self._fingerprints:
            logger.info("commit_part_duplicate_skipped fingerprint=%s", fingerprint)
            return
        self._fingerprints.add(fingerprint)

        key = _record_key("instrument", instrument.canonical_name)
        self.instruments.setdefault(
            key,
            InstrumentRecord(
                key=key,
                name=instrument.canonical_name,
                section=instrument.section.value,
                transposition=instrument.transposition.value,
            ),
        )
        part_transposition = (
            normalize_transposition(transposition) if transposition else instrument.transposition
        )
        display_name = build_part_display_name(self._piece_title, instrument.canonical_name, chair)

        file_id = self._original_file_id
        storage_key = None
        if split_file is not None:
            file_id = _new_id()
            storage_key = split_file.storage_key
            self.part_files.append(
                FileRecord(
                    id=file_id,
                    file_name=split_file.file_name or build_part_filename(display_name),
                    file_type="PART",
                    file_size=split_file.file_size,
                    mime_type="application/pdf",
                    storage_key=split_file.storage_key,
                    part_label=split_file.part_name or None,
                    instrument_name=split_file.instrument or None,
                    section=instrument.section.value,
                    part_number=split_file.part_number,
                    page_count=split_file.page_count or None,
                )
            )
        self.parts.append(
            PartRecord(
                id=_new_id(),
                part_name=part_name or instrument.canonical_name,
                instrument_key=key,
                file_id=file_id,
                section=instrument.section.value,
                transposition=part_transposition.value,
                chair=chair,
                page_range=(start, end),
                fingerprint=fingerprint,
                storage_key=storage_key,
                display_name=display_name,
            )
        )


def _whole_document(session: Session) -> Tuple[int, int]:
    return 1, max(session.page_count, 1)


def build_commit_plan(
    session: Session,
    overrides: CommitOverrides,
    approved_by: str,
    registry: InstrumentRegistry,
    *,
    now: Optional[datetime] = None,
) -> CommitPlan:
    """Resolve every field and record for a commit without touching storage."""
    now = now or datetime.now(timezone.utc)
    raw = session.extracted_metadata
    normalized = (
        normalize_extracted_metadata(session.id, raw, registry=registry) if raw is not None else None
    )

    title = resolve_title(overrides, normalized, raw, session.file_name)
    composer_name = resolve_composer(overrides, normalized, raw)
    arranger_name = resolve_arranger(overrides, normalized, raw)
    publisher_name = resolve_publisher(overrides, normalized, raw)

    people: List[PersonRecord] = []
    composer = PersonRecord.from_name(composer_name) if composer_name else None
    arranger = PersonRecord.from_name(arranger_name) if arranger_name else None
    for person in (composer, arranger):
        if person is not None and all(p.key != person.key for p in people):
            people.append(person)
    publisher = None
    if publisher_name:
        name = normalize_publisher(publisher_name)
        publisher = PublisherRecord(_record_key("publisher", name), name)

    piece = PieceRecord(
        id=_new_id(),
        title=title,
        work_fingerprint=compute_work_fingerprint(
            normalize_title(title), composer.full_name if composer else None
        ).hash,
        composer_key=composer.key if composer else None,
        arranger_key=arranger.key if arranger else None,
        publisher_key=publisher.key if publisher else None,
        confidence_score=raw.confidence_score if raw else None,
        difficulty=first_present(overrides.difficulty),
        ensemble_type=resolve_ensemble_type(overrides, normalized, raw),
        key_signature=resolve_detail(overrides.key_signature, raw.key_signature if raw else None),
        time_signature=resolve_detail(overrides.time_signature, raw.time_signature if raw else None),
        tempo=resolve_detail(overrides.tempo, raw.tempo if raw else None),
        notes=f"Imported via smart upload on {now.isoformat()}",
    )
    original_file = FileRecord(
        id=_new_id(),
        file_name=session.file_name,
        file_type=(raw.file_type if raw and raw.file_type else "FULL_SCORE"),
        file_size=session.file_size,
        mime_type=session.mime_type,
        storage_key=session.storage_key,
    )

    builder = _PlanBuilder(session, registry, original_file.id, title)
    if session.parsed_parts:
        for split in session.parsed_parts:
            builder.add_part(
                raw_instrument=split.instrument,
                part_name=split.part_name,
                part_number=split.part_number,
                page_range=split.resolved_page_range(),
                transposition=split.transposition,
                split_file=split,
            )
    elif raw is not None and raw.is_multi_part and (raw.cutting_instructions or raw.parts):
        instructions: List[CuttingInstruction] = list(raw.cutting_instructions or [])
        for ci in instructions:
            builder.add_part(
                raw_instrument=ci.instrument,
                part_name=ci.part_name,
                part_number=ci.part_number,
                page_range=ci.page_range,
            )
        if not instructions:
            for listed in raw.parts:
                if not listed.instrument.strip():
                    continue
                builder.add_part(
                    raw_instrument=listed.instrument,
                    part_name=listed.part_name or listed.instrument,
                    part_number=None,
                    page_range=_whole_document(session),
                )
    else:
        instrument_name = resolve_instrument(overrides, raw)
        if instrument_name:
            part_number = first_present(overrides.part_number, raw.part_number if raw else None)
            builder.add_part(
                raw_instrument=instrument_name,
                part_name=first_present(overrides.part_number) or instrument_name,
                part_number=part_number,
                page_range=_whole_document(session),
            )

    plan_keys = {original_file.storage_key} | {f.storage_key for f in builder.part_files}
    stale = [key for key in session.temp_files if key not in plan_keys]

    return CommitPlan(
        session_id=session.id,
        approved_by=approved_by,
        piece=piece,
        original_file=original_file,
        people=people,
        publisher=publisher,
        instruments=list(builder.instruments.values()),
        part_files=builder.part_files,
        parts=builder.parts,
        session_update=_session_update(session, approved_by, now),
        stale_temp_files=stale,
    )


def _session_update(session: Session, approved_by: str, now: datetime) -> SessionUpdate:
    workflow = session.workflow_status
    if workflow is not WorkflowStatus.APPROVED:
        assert_workflow_transition(workflow, WorkflowStatus.APPROVED)
    commit_status = session.commit_status
    if is_valid_commit_transition(commit_status, CommitStatus.COMPLETE):
        commit_status = CommitStatus.COMPLETE
    return SessionUpdate(
        expected_status=workflow,
        workflow_status=WorkflowStatus.APPROVED,
        commit_status=commit_status,
        reviewed_by=approved_by,
        reviewed_at=now,
    )


class CommitService:
    """Idempotent commit of sessions into the catalogue library."""

    def __init__(
        self,
        sessions: SessionReader,
        library: CatalogueLibrary,
        registry: InstrumentRegistry,
        delete_file: Callable[[str], None],
    ) -> None:
        self._sessions = sessions
        self._library = library
        self._registry = registry
        self._delete_file = delete_file

    def commit(
        self,
        session_id: str,
        overrides: Optional[CommitOverrides] = None,
        approved_by: str = AUTO_COMMIT_ACTOR,
    ) -> CommitResult:
        existing = self._library.find_commit_by_origin(session_id)
        if existing is not None:
            logger.info(
                "commit_idempotent_hit session_id=%s record_id=%s",
                session_id,
                existing.catalogue_record_id,
            )
            return CommitResult.from_record(existing, was_idempotent=True)

        session = self._sessions.get_session(session_id)
        check_commit_eligibility(session, approved_by)
        plan = build_commit_plan(session, overrides or CommitOverrides(), approved_by, self._registry)

        try:
            record = self._library.execute_commit(plan)
        except DuplicateCommitError:
            existing = self._library.find_commit_by_origin(session_id)
            if existing is None:
                raise
            logger.warning(
                "commit_race_lost session_id=%s record_id=%s",
                session_id,
                existing.catalogue_record_id,
            )
            return CommitResult.from_record(existing, was_idempotent=True)

        self._cleanup_temp_files(session_id, plan.stale_temp_files)
        logger.info(
            "commit_completed session_id=%s approved_by=%s record_id=%s parts=%s",
            session_id,
            approved_by,
            record.catalogue_record_id,
            record.parts_committed,
        )
        return CommitResult.from_record(record, was_idempotent=False)

    def _cleanup_temp_files(self, session_id: str, keys: List[str]) -> None:
        for key in keys:
            try:
                self._delete_file(key)
            except Exception as exc:
                logger.warning(
                    "commit_temp_file_delete_failed session_id=%s key=%s error=%s",
                    session_id,
                    key,
                    exc,
                )
