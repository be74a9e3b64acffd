from __future__ import annotations

"""Session and extraction records shared by the ingestion components."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import uuid

from src.ingest.session_errors import SessionFailure, latest_failure
from src.ingest.state import CommitStatus, OcrStatus, SecondPassStatus, WorkflowStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _page_range(value: Any) -> Tuple[int, int]:
    start, end = value
    return int(start), int(end)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


def _compact(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in payload.items() if value is not None}


@dataclass
class CuttingInstruction:
    """One part inside a multi-part PDF, with a 1-indexed inclusive page range."""
    instrument: str
    part_name: str
    page_range: Tuple[int, int]
    part_number: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "instrument": self.instrument,
                "partName": self.part_name,
                "partNumber": self.part_number,
                "pageRange": list(self.page_range),
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CuttingInstruction":
        return cls(
            instrument=str(data.get("instrument") or ""),
            part_name=str(data.get("partName") or data.get("instrument") or ""),
            part_number=_optional_str(data.get("partNumber")),
            page_range=_page_range(data.get("pageRange") or (1, 1)),
        )


@dataclass
class MetadataPart:
    """Part listing reported by the recognizer when no page ranges are known."""
    instrument: str
    part_name: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"instrument": self.instrument, "partName": self.part_name}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MetadataPart":
        return cls(instrument=str(data.get("instrument") or ""), part_name=str(data.get("partName") or ""))


@dataclass
class ExtractedMetadata:
    """Raw fields as produced by the external recognition service."""
    title: str = ""
    subtitle: Optional[str] = None
    composer: Optional[str] = None
    arranger: Optional[str] = None
    publisher: Optional[str] = None
    ensemble_type: Optional[str] = None
    instrument: Optional[str] = None
    part_number: Optional[str] = None
    key_signature: Optional[str] = None
    time_signature: Optional[str] = None
    tempo: Optional[str] = None
    confidence_score: float = 0.0
    file_type: Optional[str] = None
    is_multi_part: bool = False
    parts: List[MetadataPart] = field(default_factory=list)
    cutting_instructions: Optional[List[CuttingInstruction]] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = {
            "title": self.title,
            "subtitle": self.subtitle,
            "composer": self.composer,
            "arranger": self.arranger,
            "publisher": self.publisher,
            "ensembleType": self.ensemble_type,
            "instrument": self.instrument,
            "partNumber": self.part_number,
            "keySignature": self.key_signature,
            "timeSignature": self.time_signature,
            "tempo": self.tempo,
            "confidenceScore": self.confidence_score,
            "fileType": self.file_type,
            "isMultiPart": self.is_multi_part,
            "parts": [part.to_dict() for part in self.parts],
        }
        if self.cutting_instructions is not None:
            payload["cuttingInstructions"] = [ci.to_dict() for ci in self.cutting_instructions]
        return _compact(payload)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtractedMetadata":
        instructions = data.get("cuttingInstructions")
        return cls(
            title=str(data.get("title") or ""),
            subtitle=_optional_str(data.get("subtitle")),
            composer=_optional_str(data.get("composer")),
            arranger=_optional_str(data.get("arranger")),
            publisher=_optional_str(data.get("publisher")),
            ensemble_type=_optional_str(data.get("ensembleType")),
            instrument=_optional_str(data.get("instrument")),
            part_number=_optional_str(data.get("partNumber")),
            key_signature=_optional_str(data.get("keySignature")),
            time_signature=_optional_str(data.get("timeSignature")),
            tempo=_optional_str(data.get("tempo")),
            confidence_score=float(data.get("confidenceScore") or 0.0),
            file_type=_optional_str(data.get("fileType")),
            is_multi_part=bool(data.get("isMultiPart", False)),
            parts=[MetadataPart.from_dict(item) for item in data.get("parts") or []],
            cutting_instructions=(
                [CuttingInstruction.from_dict(item) for item in instructions]
                if instructions is not None
                else None
            ),
        )


@dataclass
class ParsedPartRecord:
    """A part file already split out of the original upload."""
    part_name: str
    instrument: str
    storage_key: str
    file_name: str
    file_size: int = 0
    page_count: int = 0
    section: Optional[str] = None
    transposition: Optional[str] = None
    part_number: Optional[str] = None
    page_range: Optional[Tuple[int, int]] = None

    def resolved_page_range(self) -> Tuple[int, int]:
        if self.page_range is not None:
            return self.page_range
        return 1, max(self.page_count, 1)

    def to_dict(self) -> Dict[str, Any]:
        return _compact(
            {
                "partName": self.part_name,
                "instrument": self.instrument,
                "storageKey": self.storage_key,
                "fileName": self.file_name,
                "fileSize": self.file_size,
                "pageCount": self.page_count,
                "section": self.section,
                "transposition": self.transposition,
                "partNumber": self.part_number,
                "pageRange": list(self.page_range) if self.page_range else None,
            }
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParsedPartRecord":
        page_range = data.get("pageRange")
        return cls(
            part_name=str(data.get("partName") or ""),
            instrument=str(data.get("instrument") or ""),
            storage_key=str(data["storageKey"]),
            file_name=str(data.get("fileName") or ""),
            file_size=int(data.get("fileSize") or 0),
            page_count=int(data.get("pageCount") or 0),
            section=_optional_str(data.get("section")),
            transposition=_optional_str(data.get("transposition")),
            part_number=_optional_str(data.get("partNumber")),
            page_range=_page_range(page_range) if page_range else None,
        )


@dataclass
class Session:
    """One uploaded document's journey through the ingestion pipeline."""
    id: str
    file_name: str
    storage_key: str
    file_size: int = 0
    mime_type: str = "application/pdf"
    source_sha256: Optional[str] = None
    page_count: int = 0
    workflow_status: WorkflowStatus = WorkflowStatus.UPLOADED
    ocr_status: OcrStatus = OcrStatus.NOT_NEEDED
    second_pass_status: SecondPassStatus = SecondPassStatus.NOT_NEEDED
    commit_status: CommitStatus = CommitStatus.NOT_STARTED
    extracted_metadata: Optional[ExtractedMetadata] = None
    parsed_parts: List[ParsedPartRecord] = field(default_factory=list)
    requires_human_review: bool = False
    review_reasons: List[str] = field(default_factory=list)
    temp_files: List[str] = field(default_factory=list)
    failures: List[SessionFailure] = field(default_factory=list)
    text_coverage: float = 1.0
    segmentation_confidence: Optional[float] = None
    metadata_conflicts: List[str] = field(default_factory=list)
    duplicate_flag: bool = False
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        *,
        file_name: str,
        storage_key: str,
        file_size: int = 0,
        mime_type: str = "application/pdf",
        source_sha256: Optional[str] = None,
    ) -> "Session":
        return cls(
            id=uuid.uuid4().hex,
            file_name=file_name,
            storage_key=storage_key,
            file_size=file_size,
            mime_type=mime_type,
            source_sha256=source_sha256,
        )

    @property
    def last_failure(self) -> Optional[SessionFailure]:
        return latest_failure(self.failures)

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "fileName": self.file_name,
            "storageKey": self.storage_key,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "sourceSha256": self.source_sha256,
            "pageCount": self.page_count,
            "workflowStatus": self.workflow_status.value,
            "ocrStatus": self.ocr_status.value,
            "secondPassStatus": self.second_pass_status.value,
            "commitStatus": self.commit_status.value,
            "extractedMetadata": (
                self.extracted_metadata.to_dict() if self.extracted_metadata else None
            ),
            "parsedParts": [part.to_dict() for part in self.parsed_parts],
            "requiresHumanReview": self.requires_human_review,
            "reviewReasons": list(self.review_reasons),
            "tempFiles": list(self.temp_files),
            "failures": [failure.to_dict() for failure in self.failures],
            "textCoverage": self.text_coverage,
            "segmentationConfidence": self.segmentation_confidence,
            "metadataConflicts": list(self.metadata_conflicts),
            "duplicateFlag": self.duplicate_flag,
            "reviewedBy": self.reviewed_by,
            "reviewedAt": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        metadata = data.get("extractedMetadata")
        segmentation = data.get("segmentationConfidence")
        return cls(
            id=str(data["id"]),
            file_name=str(data.get("fileName") or ""),
            storage_key=str(data.get("storageKey") or ""),
            file_size=int(data.get("fileSize") or 0),
            mime_type=str(data.get("mimeType") or "application/pdf"),
            source_sha256=_optional_str(data.get("sourceSha256")),
            page_count=int(data.get("pageCount") or 0),
            workflow_status=WorkflowStatus(data.get("workflowStatus", WorkflowStatus.UPLOADED.value)),
            ocr_status=OcrStatus(data.get("ocrStatus", OcrStatus.NOT_NEEDED.value)),
            second_pass_status=SecondPassStatus(
                data.get("secondPassStatus", SecondPassStatus.NOT_NEEDED.value)
            ),
            commit_status=CommitStatus(data.get("commitStatus", CommitStatus.NOT_STARTED.value)),
            extracted_metadata=ExtractedMetadata.from_dict(metadata) if metadata else None,
            parsed_parts=[ParsedPartRecord.from_dict(item) for item in data.get("parsedParts") or []],
            requires_human_review=bool(data.get("requiresHumanReview", False)),
            review_reasons=list(data.get("reviewReasons") or []),
            temp_files=list(data.get("tempFiles") or []),
            failures=[SessionFailure.from_dict(item) for item in data.get("failures") or []],
            text_coverage=float(data.get("textCoverage", 1.0)),
            segmentation_confidence=float(segmentation) if segmentation is not None else None,
            metadata_conflicts=list(data.get("metadataConflicts") or []),
            duplicate_flag=bool(data.get("duplicateFlag", False)),
            reviewed_by=_optional_str(data.get("reviewedBy")),
            reviewed_at=_parse_datetime(data.get("reviewedAt")),
            created_at=_parse_datetime(data.get("createdAt")) or _utcnow(),
            updated_at=_parse_datetime(data.get("updatedAt")) or _utcnow(),
        )


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
