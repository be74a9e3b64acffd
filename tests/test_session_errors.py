import pytest

from src.ingest.commit import CommitEligibilityError
from src.ingest.session_errors import (
    RETRIABLE_CODES,
    TERMINAL_CODES,
    ErrorCode,
    FailureStage,
    SessionFailure,
    classify_error,
    create_session_failure,
    failure_from_exception,
    is_retriable,
    is_terminal,
    latest_failure,
)
from src.ingest.state import WorkflowStatus


def test_retriable_and_terminal_sets_are_disjoint():
    assert not RETRIABLE_CODES & TERMINAL_CODES


def test_retriable_codes():
    assert is_retriable(ErrorCode.MODEL_TIMEOUT)
    assert is_retriable("OCR_FAILED")
    assert not is_retriable(ErrorCode.PDF_ENCRYPTED)
    assert not is_retriable("SOMETHING_ELSE")


def test_terminal_codes():
    assert is_terminal(ErrorCode.FILE_TOO_LARGE)
    assert is_terminal("COMMIT_DUPLICATE")
    assert not is_terminal(ErrorCode.STORAGE_ERROR)


@pytest.mark.parametrize(
    "message,expected",
    [
        ("Request failed: 401 Unauthorized", ErrorCode.MODEL_AUTH_FAILED),
        ("Invalid API key provided", ErrorCode.MODEL_AUTH_FAILED),
        ("Rate limit exceeded", ErrorCode.MODEL_RATE_LIMITED),
        ("request timed out after 30s", ErrorCode.MODEL_TIMEOUT),
        ("connect ECONNREFUSED 127.0.0.1:11434", ErrorCode.MODEL_ENDPOINT_UNREACHABLE),
        ("upstream returned 503 Service Unavailable", ErrorCode.MODEL_SERVER_ERROR),
        ("Unexpected token < in JSON", ErrorCode.MODEL_SCHEMA_INVALID),
    ],
)
def test_classify_error_by_message(message, expected):
    assert classify_error(RuntimeError(message), FailureStage.METADATA_EXTRACTION) == expected


def test_classify_error_falls_back_to_stage_default():
    assert classify_error("disk gone", FailureStage.STORAGE) == ErrorCode.STORAGE_ERROR
    assert classify_error("boom", FailureStage.COMMIT) == ErrorCode.COMMIT_TX_FAILED
    assert classify_error("boom", FailureStage.UPLOAD) == ErrorCode.INTERNAL_ERROR
    assert classify_error("boom", "NOT_A_STAGE") == ErrorCode.INTERNAL_ERROR


def test_create_session_failure_stamps_retriable():
    failure = create_session_failure(ErrorCode.MODEL_TIMEOUT, FailureStage.OCR, "slow")
    assert failure.retriable is True
    assert failure.stage is FailureStage.OCR
    assert failure.timestamp


def test_create_session_failure_unknown_code_becomes_internal():
    failure = create_session_failure("NOPE", "COMMIT", "bad")
    assert failure.code is ErrorCode.INTERNAL_ERROR
    assert failure.retriable is False


def test_failure_from_exception_prefers_exception_code():
    class _CodedError(Exception):
        code = ErrorCode.COMMIT_DUPLICATE

    failure = failure_from_exception(_CodedError("already committed"), FailureStage.COMMIT)
    assert failure.code is ErrorCode.COMMIT_DUPLICATE
    assert failure.retriable is False


def test_failure_from_exception_uses_type_name_for_empty_message():
    failure = failure_from_exception(ValueError(), FailureStage.SPLITTING)
    assert failure.code is ErrorCode.SPLIT_FAILED
    assert failure.message == "ValueError"


def test_failure_from_exception_honours_non_retriable_errors():
    error = CommitEligibilityError("s1", WorkflowStatus.PROCESSED, "reviewer")
    failure = failure_from_exception(error, FailureStage.COMMIT)
    assert failure.code is ErrorCode.COMMIT_TX_FAILED
    assert failure.retriable is False
    assert "PROCESSED" in failure.message


def test_failure_dict_preserves_timestamp():
    failure = create_session_failure(ErrorCode.QUEUE_FAILED, FailureStage.QUEUE, "queue down")
    restored = SessionFailure.from_dict(failure.to_dict())
    assert restored == failure


def test_latest_failure():
    assert latest_failure([]) is None
    first = create_session_failure(ErrorCode.OCR_FAILED, FailureStage.OCR, "a")
    second = create_session_failure(ErrorCode.PDF_CORRUPT, FailureStage.UPLOAD, "b")
    assert latest_failure([first, second]) is second
