from __future__ import annotations

"""Machine-readable failure codes for ingestion sessions.

Every failure surfaced to a session carries a stable code that is stored on
the session, shown to reviewers, and consumed by retry logic without matching
against human-readable messages.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Pattern, Tuple, Union
import re


class ErrorCode(str, Enum):
    # Upload / intake
    PDF_INVALID = "PDF_INVALID"
    PDF_ENCRYPTED = "PDF_ENCRYPTED"
    PDF_CORRUPT = "PDF_CORRUPT"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    # Storage
    STORAGE_DOWNLOAD_FAILED = "STORAGE_DOWNLOAD_FAILED"
    STORAGE_UPLOAD_FAILED = "STORAGE_UPLOAD_FAILED"
    STORAGE_ERROR = "STORAGE_ERROR"
    # Rendering / text extraction
    RENDER_FAILED = "RENDER_FAILED"
    TEXT_EXTRACTION_EMPTY = "TEXT_EXTRACTION_EMPTY"
    # OCR
    OCR_UNAVAILABLE = "OCR_UNAVAILABLE"
    OCR_FAILED = "OCR_FAILED"
    OCR_EMPTY = "OCR_EMPTY"
    # Recognition model
    MODEL_AUTH_FAILED = "MODEL_AUTH_FAILED"
    MODEL_ENDPOINT_UNREACHABLE = "MODEL_ENDPOINT_UNREACHABLE"
    MODEL_TIMEOUT = "MODEL_TIMEOUT"
    MODEL_SCHEMA_INVALID = "MODEL_SCHEMA_INVALID"
    MODEL_EMPTY_RESPONSE = "MODEL_EMPTY_RESPONSE"
    MODEL_UNUSABLE_RESPONSE = "MODEL_UNUSABLE_RESPONSE"
    MODEL_RATE_LIMITED = "MODEL_RATE_LIMITED"
    MODEL_SERVER_ERROR = "MODEL_SERVER_ERROR"
    # Boundary detection
    BOUNDARY_CONFLICT = "BOUNDARY_CONFLICT"
    BOUNDARY_NOT_FOUND = "BOUNDARY_NOT_FOUND"
    BOUNDARY_OUT_OF_RANGE = "BOUNDARY_OUT_OF_RANGE"
    # Splitting
    SPLIT_FAILED = "SPLIT_FAILED"
    SPLIT_EMPTY = "SPLIT_EMPTY"
    # Second pass / adjudication
    SECOND_PASS_FAILED = "SECOND_PASS_FAILED"
    ADJUDICATION_FAILED = "ADJUDICATION_FAILED"
    # Commit
    COMMIT_DUPLICATE = "COMMIT_DUPLICATE"
    COMMIT_TX_FAILED = "COMMIT_TX_FAILED"
    COMMIT_RELATION_FAILED = "COMMIT_RELATION_FAILED"
    # Queue / infra
    QUEUE_FAILED = "QUEUE_FAILED"
    UNKNOWN_JOB_TYPE = "UNKNOWN_JOB_TYPE"
    # Catch-all
    INTERNAL_ERROR = "INTERNAL_ERROR"


class FailureStage(str, Enum):
    UPLOAD = "UPLOAD"
    STORAGE = "STORAGE"
    RENDER = "RENDER"
    TEXT_EXTRACTION = "TEXT_EXTRACTION"
    OCR = "OCR"
    METADATA_EXTRACTION = "METADATA_EXTRACTION"
    BOUNDARY_DETECTION = "BOUNDARY_DETECTION"
    SPLITTING = "SPLITTING"
    SECOND_PASS = "SECOND_PASS"
    ADJUDICATION = "ADJUDICATION"
    COMMIT = "COMMIT"
    QUEUE = "QUEUE"


RETRIABLE_CODES: FrozenSet[ErrorCode] = frozenset(
    {
        ErrorCode.STORAGE_DOWNLOAD_FAILED,
        ErrorCode.STORAGE_UPLOAD_FAILED,
        ErrorCode.STORAGE_ERROR,
        ErrorCode.MODEL_TIMEOUT,
        ErrorCode.MODEL_RATE_LIMITED,
        ErrorCode.MODEL_SERVER_ERROR,
        ErrorCode.MODEL_ENDPOINT_UNREACHABLE,
        ErrorCode.OCR_FAILED,
        ErrorCode.COMMIT_TX_FAILED,
        ErrorCode.QUEUE_FAILED,
    }
)

TERMINAL_CODES: FrozenSet[ErrorCode] = frozenset(
    {
        ErrorCode.PDF_INVALID,
        ErrorCode.PDF_ENCRYPTED,
        ErrorCode.PDF_CORRUPT,
        ErrorCode.FILE_TOO_LARGE,
        ErrorCode.MODEL_AUTH_FAILED,
        ErrorCode.COMMIT_DUPLICATE,
        ErrorCode.UNKNOWN_JOB_TYPE,
    }
)

# Checked in order; the first matching pattern decides the code.
_MESSAGE_RULES: Tuple[Tuple[Pattern[str], ErrorCode], ...] = (
    (re.compile(r"unauthorized|forbidden|401|403|invalid.?api.?key"), ErrorCode.MODEL_AUTH_FAILED),
    (re.compile(r"rate.?limit|429|too many requests"), ErrorCode.MODEL_RATE_LIMITED),
    (re.compile(r"timeout|timed?\s?out|econnaborted"), ErrorCode.MODEL_TIMEOUT),
    (
        re.compile(r"econnrefused|enotfound|network|dns|socket hang up|fetch failed|connection refused"),
        ErrorCode.MODEL_ENDPOINT_UNREACHABLE,
    ),
    (
        re.compile(r"500|502|503|504|internal server error|service unavailable"),
        ErrorCode.MODEL_SERVER_ERROR,
    ),
    (re.compile(r"json|parse|schema|unexpected token|invalid response"), ErrorCode.MODEL_SCHEMA_INVALID),
)

_STAGE_DEFAULTS: Dict[FailureStage, ErrorCode] = {
    FailureStage.STORAGE: ErrorCode.STORAGE_ERROR,
    FailureStage.RENDER: ErrorCode.RENDER_FAILED,
    FailureStage.OCR: ErrorCode.OCR_FAILED,
    FailureStage.SPLITTING: ErrorCode.SPLIT_FAILED,
    FailureStage.COMMIT: ErrorCode.COMMIT_TX_FAILED,
}


def _coerce_code(code: Union[ErrorCode, str]) -> Union[ErrorCode, None]:
    try:
        return ErrorCode(code)
    except ValueError:
        return None


def is_retriable(code: Union[ErrorCode, str]) -> bool:
    """Return True for transient failure codes. Unknown codes are not retriable."""
    return _coerce_code(code) in RETRIABLE_CODES


def is_terminal(code: Union[ErrorCode, str]) -> bool:
    """Return True for codes that no retry can fix."""
    return _coerce_code(code) in TERMINAL_CODES


def classify_error(error: Any, stage: Union[FailureStage, str]) -> ErrorCode:
    """Map a caught error to an ErrorCode using message heuristics, then stage defaults."""
    lower = str(error).lower()
    for pattern, code in _MESSAGE_RULES:
        if pattern.search(lower):
            return code
    try:
        stage_member = FailureStage(stage)
    except ValueError:
        return ErrorCode.INTERNAL_ERROR
    return _STAGE_DEFAULTS.get(stage_member, ErrorCode.INTERNAL_ERROR)


@dataclass(frozen=True)
class SessionFailure:
    """Structured failure record stored on a session. Build with create_session_failure."""
    code: ErrorCode
    stage: FailureStage
    message: str
    retriable: bool
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "stage": self.stage.value,
            "message": self.message,
            "retriable": self.retriable,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionFailure":
        """Rehydrate a stored failure without re-stamping it."""
        code = _coerce_code(data.get("code", "")) or ErrorCode.INTERNAL_ERROR
        return cls(
            code=code,
            stage=FailureStage(data["stage"]),
            message=str(data.get("message", "")),
            retriable=bool(data.get("retriable", is_retriable(code))),
            timestamp=str(data.get("timestamp", "")),
        )


def create_session_failure(
    code: Union[ErrorCode, str],
    stage: Union[FailureStage, str],
    message: str,
) -> SessionFailure:
    """Create a failure record stamped with retryability and the current UTC time."""
    code_member = _coerce_code(code) or ErrorCode.INTERNAL_ERROR
    return SessionFailure(
        code=code_member,
        stage=FailureStage(stage),
        message=message,
        retriable=is_retriable(code_member),
        timestamp=datetime.now(timezone.utc).isoformat(),
    )


def failure_from_exception(exc: BaseException, stage: Union[FailureStage, str]) -> SessionFailure:
    """Classify an exception raised at a pipeline stage into a failure record.

    An exception may pin its own ``code`` and may declare ``retriable = False``;
    the latter overrides whatever the code alone would allow.
    """
    code = getattr(exc, "code", None)
    if not isinstance(code, ErrorCode):
        code = classify_error(exc, stage)
    failure = create_session_failure(code, stage, str(exc) or type(exc).__name__)
    if getattr(exc, "retriable", None) is False and failure.retriable:
        failure = replace(failure, retriable=False)
    return failure


def latest_failure(failures: List[SessionFailure]) -> Union[SessionFailure, None]:
    """Only the most recent failure drives retry eligibility."""
    return failures[-1] if failures else None
