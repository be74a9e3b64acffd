import pytest

from src.ingest.state import (
    COMMIT_TRANSITIONS,
    OCR_TRANSITIONS,
    SECOND_PASS_TRANSITIONS,
    TABLES_BY_FIELD,
    WORKFLOW_TRANSITIONS,
    CommitStatus,
    InvalidTransitionError,
    OcrStatus,
    SecondPassStatus,
    TransitionTable,
    WorkflowStatus,
    assert_commit_transition,
    assert_transition,
    assert_workflow_transition,
    can_auto_commit,
    can_enter_review,
    can_queue_ocr,
    can_queue_second_pass,
    can_retry_commit,
    is_failed_workflow,
    is_second_pass_settled,
    is_terminal_workflow,
    is_valid_commit_transition,
    is_valid_ocr_transition,
    is_valid_second_pass_transition,
    is_valid_workflow_transition,
)


@pytest.mark.parametrize(
    "table",
    [WORKFLOW_TRANSITIONS, OCR_TRANSITIONS, SECOND_PASS_TRANSITIONS, COMMIT_TRANSITIONS],
)
def test_tables_cover_every_state(table):
    assert set(table.transitions) == set(table.state_type)


def test_table_missing_state_is_rejected():
    with pytest.raises(RuntimeError, match="missing states"):
        TransitionTable(
            dimension="ocrStatus",
            state_type=OcrStatus,
            transitions={OcrStatus.NOT_NEEDED: frozenset()},
        )


def test_workflow_happy_path_is_valid():
    path = [
        WorkflowStatus.UPLOADED,
        WorkflowStatus.QUEUED,
        WorkflowStatus.PROCESSING,
        WorkflowStatus.PROCESSED,
        WorkflowStatus.READY_TO_COMMIT,
        WorkflowStatus.COMMITTING,
        WorkflowStatus.APPROVED,
    ]
    for current, nxt in zip(path, path[1:]):
        assert is_valid_workflow_transition(current, nxt), (current, nxt)


def test_workflow_rejects_skipping_stages():
    assert not is_valid_workflow_transition(WorkflowStatus.UPLOADED, WorkflowStatus.APPROVED)
    assert not is_valid_workflow_transition(WorkflowStatus.QUEUED, WorkflowStatus.PROCESSED)


@pytest.mark.parametrize(
    "terminal", [WorkflowStatus.APPROVED, WorkflowStatus.COMMITTED, WorkflowStatus.REJECTED]
)
def test_terminal_workflow_states_have_no_successors(terminal):
    assert is_terminal_workflow(terminal)
    for target in WorkflowStatus:
        assert not is_valid_workflow_transition(terminal, target)


def test_failed_workflow_only_retries():
    allowed = WORKFLOW_TRANSITIONS.allowed(WorkflowStatus.FAILED)
    assert allowed == {WorkflowStatus.QUEUED, WorkflowStatus.PROCESSING}
    assert not is_terminal_workflow(WorkflowStatus.FAILED)
    assert is_failed_workflow("FAILED")


def test_string_values_are_accepted():
    assert is_valid_workflow_transition("PENDING_REVIEW", "APPROVED")
    assert is_valid_ocr_transition("QUEUED", "IN_PROGRESS")


def test_unknown_values_are_never_valid():
    assert not is_valid_workflow_transition("NOT_A_STATE", WorkflowStatus.QUEUED)
    assert not is_valid_workflow_transition(WorkflowStatus.UPLOADED, "NOT_A_STATE")
    assert WORKFLOW_TRANSITIONS.allowed("NOT_A_STATE") == frozenset()


def test_assert_transition_reports_allowed_targets():
    with pytest.raises(InvalidTransitionError) as excinfo:
        assert_workflow_transition(WorkflowStatus.UPLOADED, WorkflowStatus.APPROVED)
    err = excinfo.value
    assert err.dimension == "workflow"
    assert err.from_state == "UPLOADED"
    assert err.to_state == "APPROVED"
    assert err.allowed == {"QUEUED", "FAILED"}
    assert "UPLOADED -> APPROVED" in str(err)


def test_assert_transition_accepts_unknown_target_with_error():
    with pytest.raises(InvalidTransitionError) as excinfo:
        assert_transition(COMMIT_TRANSITIONS, CommitStatus.NOT_STARTED, "DONE")
    assert excinfo.value.to_state == "DONE"


def test_sub_status_tables():
    assert is_valid_second_pass_transition(SecondPassStatus.FAILED, SecondPassStatus.QUEUED)
    assert not is_valid_second_pass_transition(SecondPassStatus.COMPLETE, SecondPassStatus.QUEUED)
    assert is_valid_commit_transition(CommitStatus.IN_PROGRESS, CommitStatus.COMPLETE)
    with pytest.raises(InvalidTransitionError):
        assert_commit_transition(CommitStatus.NOT_STARTED, CommitStatus.COMPLETE)


def test_tables_by_field_names_session_attributes():
    assert TABLES_BY_FIELD["workflow_status"] is WORKFLOW_TRANSITIONS
    assert TABLES_BY_FIELD["commit_status"] is COMMIT_TRANSITIONS


def test_queue_helpers():
    assert can_queue_ocr(OcrStatus.NOT_NEEDED)
    assert can_queue_ocr(OcrStatus.FAILED)
    assert not can_queue_ocr(OcrStatus.IN_PROGRESS)
    assert can_queue_second_pass(SecondPassStatus.NOT_NEEDED)
    assert not can_queue_second_pass(SecondPassStatus.COMPLETE)


def test_second_pass_settled():
    assert is_second_pass_settled(SecondPassStatus.NOT_NEEDED)
    assert is_second_pass_settled(SecondPassStatus.COMPLETE)
    assert not is_second_pass_settled(SecondPassStatus.QUEUED)
    assert not is_second_pass_settled(SecondPassStatus.FAILED)


def test_can_auto_commit_requires_every_condition():
    assert can_auto_commit(
        WorkflowStatus.PROCESSED, CommitStatus.NOT_STARTED, SecondPassStatus.COMPLETE, True
    )
    assert can_auto_commit(
        WorkflowStatus.READY_TO_COMMIT, CommitStatus.FAILED, SecondPassStatus.NOT_NEEDED, True
    )
    assert not can_auto_commit(
        WorkflowStatus.PROCESSED, CommitStatus.NOT_STARTED, SecondPassStatus.COMPLETE, False
    )
    assert not can_auto_commit(
        WorkflowStatus.PENDING_REVIEW, CommitStatus.NOT_STARTED, SecondPassStatus.COMPLETE, True
    )
    assert not can_auto_commit(
        WorkflowStatus.PROCESSED, CommitStatus.IN_PROGRESS, SecondPassStatus.COMPLETE, True
    )
    assert not can_auto_commit(
        WorkflowStatus.PROCESSED, CommitStatus.NOT_STARTED, SecondPassStatus.IN_PROGRESS, True
    )


def test_can_enter_review_and_retry_commit():
    assert can_enter_review(WorkflowStatus.PROCESSED, True)
    assert not can_enter_review(WorkflowStatus.PROCESSED, False)
    assert not can_enter_review(WorkflowStatus.QUEUED, True)
    assert can_retry_commit(CommitStatus.FAILED)
    assert not can_retry_commit(CommitStatus.COMPLETE)
