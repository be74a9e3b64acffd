from __future__ import annotations

"""Canonical status transitions for every ingestion session dimension.

Workers and routes never write a status value directly; they validate the
move here first and persist the new value themselves.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import FrozenSet, Mapping, Optional, Type, Union


class WorkflowStatus(str, Enum):
    UPLOADED = "UPLOADED"
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    PENDING_REVIEW = "PENDING_REVIEW"
    READY_TO_COMMIT = "READY_TO_COMMIT"
    COMMITTING = "COMMITTING"
    APPROVED = "APPROVED"  # published to the catalogue
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"


class OcrStatus(str, Enum):
    NOT_NEEDED = "NOT_NEEDED"
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class SecondPassStatus(str, Enum):
    NOT_NEEDED = "NOT_NEEDED"
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class CommitStatus(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    QUEUED = "QUEUED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


StatusValue = Union[WorkflowStatus, OcrStatus, SecondPassStatus, CommitStatus, str]


class InvalidTransitionError(ValueError):
    """Raised when a status dimension is asked to make an illegal move."""

    def __init__(
        self,
        dimension: str,
        from_state: str,
        to_state: str,
        allowed: FrozenSet[str],
    ) -> None:
        self.dimension = dimension
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed
        allowed_text = ", ".join(sorted(allowed))
        super().__init__(
            f"Invalid {dimension} transition: {from_state} -> {to_state}. "
            f"Allowed: [{allowed_text}]"
        )


@dataclass(frozen=True)
class TransitionTable:
    """Total mapping of each state of one dimension to its legal successors."""
    dimension: str
    state_type: Type[Enum]
    transitions: Mapping[Enum, FrozenSet[Enum]]

    def __post_init__(self) -> None:
        missing = [state.value for state in self.state_type if state not in self.transitions]
        if missing:
            raise RuntimeError(
                f"{self.dimension} transition table is missing states: {', '.join(missing)}"
            )

    def coerce(self, value: StatusValue) -> Optional[Enum]:
        """Return the enum member for a raw value, or None when unknown."""
        if isinstance(value, self.state_type):
            return value
        try:
            return self.state_type(value)
        except ValueError:
            return None

    def allowed(self, state: StatusValue) -> FrozenSet[Enum]:
        member = self.coerce(state)
        if member is None:
            return frozenset()
        return self.transitions[member]


def _table(dimension: str, state_type: Type[Enum], rows: Mapping[Enum, tuple]) -> TransitionTable:
    return TransitionTable(
        dimension=dimension,
        state_type=state_type,
        transitions=MappingProxyType({state: frozenset(targets) for state, targets in rows.items()}),
    )


W = WorkflowStatus

WORKFLOW_TRANSITIONS = _table(
    "workflow",
    WorkflowStatus,
    {
        W.UPLOADED: (W.QUEUED, W.FAILED),
        W.QUEUED: (W.PROCESSING, W.FAILED),
        W.PROCESSING: (W.PROCESSED, W.PENDING_REVIEW, W.FAILED),
        W.PROCESSED: (W.READY_TO_COMMIT, W.PENDING_REVIEW, W.FAILED),
        W.PENDING_REVIEW: (W.APPROVED, W.REJECTED, W.READY_TO_COMMIT, W.FAILED),
        W.READY_TO_COMMIT: (W.COMMITTING, W.PENDING_REVIEW, W.FAILED),
        W.COMMITTING: (W.APPROVED, W.COMMITTED, W.FAILED),
        W.APPROVED: (),
        W.COMMITTED: (),
        W.REJECTED: (),
        W.FAILED: (W.QUEUED, W.PROCESSING),  # retry only
    },
)

OCR_TRANSITIONS = _table(
    "ocrStatus",
    OcrStatus,
    {
        OcrStatus.NOT_NEEDED: (OcrStatus.QUEUED,),
        OcrStatus.QUEUED: (OcrStatus.IN_PROGRESS, OcrStatus.FAILED),
        OcrStatus.IN_PROGRESS: (OcrStatus.COMPLETE, OcrStatus.FAILED),
        OcrStatus.COMPLETE: (),
        OcrStatus.FAILED: (OcrStatus.QUEUED,),
    },
)

SECOND_PASS_TRANSITIONS = _table(
    "secondPassStatus",
    SecondPassStatus,
    {
        SecondPassStatus.NOT_NEEDED: (SecondPassStatus.QUEUED,),
        SecondPassStatus.QUEUED: (SecondPassStatus.IN_PROGRESS, SecondPassStatus.FAILED),
        SecondPassStatus.IN_PROGRESS: (SecondPassStatus.COMPLETE, SecondPassStatus.FAILED),
        SecondPassStatus.COMPLETE: (),
        SecondPassStatus.FAILED: (SecondPassStatus.QUEUED,),
    },
)

COMMIT_TRANSITIONS = _table(
    "commitStatus",
    CommitStatus,
    {
        CommitStatus.NOT_STARTED: (CommitStatus.QUEUED,),
        CommitStatus.QUEUED: (CommitStatus.IN_PROGRESS, CommitStatus.FAILED),
        CommitStatus.IN_PROGRESS: (CommitStatus.COMPLETE, CommitStatus.FAILED),
        CommitStatus.COMPLETE: (),
        CommitStatus.FAILED: (CommitStatus.QUEUED,),
    },
)

del W

# Session attribute name -> table, used by callers that advance a dimension by name.
TABLES_BY_FIELD: Mapping[str, TransitionTable] = MappingProxyType(
    {
        "workflow_status": WORKFLOW_TRANSITIONS,
        "ocr_status": OCR_TRANSITIONS,
        "second_pass_status": SECOND_PASS_TRANSITIONS,
        "commit_status": COMMIT_TRANSITIONS,
    }
)


def is_valid_transition(table: TransitionTable, from_state: StatusValue, to_state: StatusValue) -> bool:
    """Check whether a status transition is allowed."""
    target = table.coerce(to_state)
    if target is None:
        return False
    return target in table.allowed(from_state)


def assert_transition(table: TransitionTable, from_state: StatusValue, to_state: StatusValue) -> None:
    """Raise InvalidTransitionError when the transition is not allowed."""
    if is_valid_transition(table, from_state, to_state):
        return
    raise InvalidTransitionError(
        table.dimension,
        _value(from_state),
        _value(to_state),
        frozenset(state.value for state in table.allowed(from_state)),
    )


def _value(state: StatusValue) -> str:
    return state.value if isinstance(state, Enum) else str(state)


def is_valid_workflow_transition(from_state: StatusValue, to_state: StatusValue) -> bool:
    return is_valid_transition(WORKFLOW_TRANSITIONS, from_state, to_state)


def assert_workflow_transition(from_state: StatusValue, to_state: StatusValue) -> None:
    assert_transition(WORKFLOW_TRANSITIONS, from_state, to_state)


def is_valid_ocr_transition(from_state: StatusValue, to_state: StatusValue) -> bool:
    return is_valid_transition(OCR_TRANSITIONS, from_state, to_state)


def assert_ocr_transition(from_state: StatusValue, to_state: StatusValue) -> None:
    assert_transition(OCR_TRANSITIONS, from_state, to_state)


def is_valid_second_pass_transition(from_state: StatusValue, to_state: StatusValue) -> bool:
    return is_valid_transition(SECOND_PASS_TRANSITIONS, from_state, to_state)


def assert_second_pass_transition(from_state: StatusValue, to_state: StatusValue) -> None:
    assert_transition(SECOND_PASS_TRANSITIONS, from_state, to_state)


def is_valid_commit_transition(from_state: StatusValue, to_state: StatusValue) -> bool:
    return is_valid_transition(COMMIT_TRANSITIONS, from_state, to_state)


def assert_commit_transition(from_state: StatusValue, to_state: StatusValue) -> None:
    assert_transition(COMMIT_TRANSITIONS, from_state, to_state)


# Decision helpers. Each one is derived from the tables above.

def can_queue_ocr(ocr_status: StatusValue) -> bool:
    """Whether OCR may be queued (fresh or after a failure)."""
    return is_valid_ocr_transition(ocr_status, OcrStatus.QUEUED)


def can_queue_second_pass(second_pass_status: StatusValue) -> bool:
    """Whether a second pass may be queued (fresh or after a failure)."""
    return is_valid_second_pass_transition(second_pass_status, SecondPassStatus.QUEUED)


def is_second_pass_settled(second_pass_status: StatusValue) -> bool:
    """True when no second pass is pending: never needed or finished."""
    member = SECOND_PASS_TRANSITIONS.coerce(second_pass_status)
    return member in (SecondPassStatus.NOT_NEEDED, SecondPassStatus.COMPLETE)


def can_auto_commit(
    workflow_status: StatusValue,
    commit_status: StatusValue,
    second_pass_status: StatusValue,
    auto_approved: bool,
) -> bool:
    """Whether a session may take the autonomous commit path."""
    workflow = WORKFLOW_TRANSITIONS.coerce(workflow_status)
    # Processed sessions go through READY_TO_COMMIT; ready ones go straight to COMMITTING.
    eligible_workflow = workflow is WorkflowStatus.READY_TO_COMMIT or (
        workflow is WorkflowStatus.PROCESSED
        and is_valid_workflow_transition(workflow, WorkflowStatus.READY_TO_COMMIT)
    )
    eligible_commit = is_valid_commit_transition(commit_status, CommitStatus.QUEUED)
    return (
        eligible_workflow
        and eligible_commit
        and is_second_pass_settled(second_pass_status)
        and auto_approved
    )


def can_enter_review(workflow_status: StatusValue, requires_human_review: bool) -> bool:
    """Whether a processed session should move to manual review."""
    workflow = WORKFLOW_TRANSITIONS.coerce(workflow_status)
    eligible = workflow in (WorkflowStatus.PROCESSED, WorkflowStatus.READY_TO_COMMIT)
    return eligible and requires_human_review and is_valid_workflow_transition(
        workflow, WorkflowStatus.PENDING_REVIEW
    )


def can_retry_commit(commit_status: StatusValue) -> bool:
    """Whether a failed commit may be queued again."""
    member = COMMIT_TRANSITIONS.coerce(commit_status)
    return member is CommitStatus.FAILED and is_valid_commit_transition(member, CommitStatus.QUEUED)


def is_terminal_workflow(status: StatusValue) -> bool:
    """Whether a workflow status has no successors."""
    member = WORKFLOW_TRANSITIONS.coerce(status)
    return member is not None and not WORKFLOW_TRANSITIONS.transitions[member]


def is_failed_workflow(status: StatusValue) -> bool:
    return WORKFLOW_TRANSITIONS.coerce(status) is WorkflowStatus.FAILED
