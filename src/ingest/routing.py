from __future__ import annotations

"""Routing policy: decide which path a session takes next.

Workers and routes call determine_route and translate the result into status
transitions themselves; nothing here mutates a session.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from src.ingest.state import (
    CommitStatus,
    OcrStatus,
    SecondPassStatus,
    WorkflowStatus,
)


@dataclass(frozen=True)
class PolicyThresholds:
    min_text_coverage: float = 0.3  # fraction of pages with a usable text layer
    min_auto_commit_confidence: float = 80.0
    min_skip_second_pass_confidence: float = 85.0
    min_parts_for_auto_commit: int = 1
    autonomous_mode_enabled: bool = True


DEFAULT_THRESHOLDS = PolicyThresholds()


class PipelineRoute(str, Enum):
    TEXT_ONLY = "TEXT_ONLY"
    OCR_REQUIRED = "OCR_REQUIRED"
    SECOND_PASS_REQUIRED = "SECOND_PASS_REQUIRED"
    AUTO_COMMIT = "AUTO_COMMIT"
    EXCEPTION_REVIEW = "EXCEPTION_REVIEW"


@dataclass(frozen=True)
class RoutingSignals:
    text_coverage: float
    metadata_confidence: float
    segmentation_confidence: Optional[float] = None
    valid_part_count: int = 0
    has_metadata_conflicts: bool = False
    has_duplicate_flag: bool = False
    requires_human_review: bool = False
    ocr_status: OcrStatus = OcrStatus.NOT_NEEDED
    second_pass_status: SecondPassStatus = SecondPassStatus.NOT_NEEDED
    commit_status: CommitStatus = CommitStatus.NOT_STARTED
    workflow_status: WorkflowStatus = WorkflowStatus.PROCESSING


@dataclass(frozen=True)
class RoutingResult:
    route: PipelineRoute
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"route": self.route.value, "reasons": list(self.reasons)}


_TERMINAL_WORKFLOW = frozenset(
    {WorkflowStatus.APPROVED, WorkflowStatus.COMMITTED, WorkflowStatus.REJECTED}
)
_PENDING = frozenset({"QUEUED", "IN_PROGRESS"})


def _percent(value: float) -> str:
    return f"{value:g}"


def determine_route(
    signals: RoutingSignals,
    thresholds: PolicyThresholds = DEFAULT_THRESHOLDS,
) -> RoutingResult:
    """Evaluate the routing cascade; the first matching rule wins."""
    if signals.workflow_status in _TERMINAL_WORKFLOW:
        return RoutingResult(PipelineRoute.EXCEPTION_REVIEW, ["Session is in a terminal state"])

    if signals.requires_human_review:
        return RoutingResult(
            PipelineRoute.EXCEPTION_REVIEW, ["Session explicitly flagged for human review"]
        )

    if (
        signals.ocr_status is OcrStatus.NOT_NEEDED
        and signals.text_coverage < thresholds.min_text_coverage
    ):
        return RoutingResult(
            PipelineRoute.OCR_REQUIRED,
            [
                f"Text coverage ({signals.text_coverage * 100:.0f}%) "
                f"below threshold ({thresholds.min_text_coverage * 100:.0f}%)"
            ],
        )
    if signals.ocr_status.value in _PENDING:
        return RoutingResult(PipelineRoute.OCR_REQUIRED, ["OCR is still in progress"])

    reasons: List[str] = []
    needs_pass = _should_run_second_pass(signals, thresholds, reasons)
    if needs_pass and signals.second_pass_status is SecondPassStatus.NOT_NEEDED:
        return RoutingResult(PipelineRoute.SECOND_PASS_REQUIRED, reasons)
    if signals.second_pass_status.value in _PENDING:
        reasons.append("Second pass is still in progress")
        return RoutingResult(PipelineRoute.SECOND_PASS_REQUIRED, reasons)

    review_reasons = _collect_review_reasons(signals, thresholds)
    if review_reasons:
        return RoutingResult(PipelineRoute.EXCEPTION_REVIEW, review_reasons)

    if _auto_commit_ready(signals, thresholds):
        reasons.append("All auto-commit criteria satisfied")
        return RoutingResult(PipelineRoute.AUTO_COMMIT, reasons)

    return RoutingResult(PipelineRoute.TEXT_ONLY, ["Default text-only processing path"])


def _should_run_second_pass(
    signals: RoutingSignals,
    thresholds: PolicyThresholds,
    reasons: List[str],
) -> bool:
    if signals.second_pass_status is not SecondPassStatus.NOT_NEEDED:
        return False
    needed = False
    limit = thresholds.min_skip_second_pass_confidence
    segmentation = signals.segmentation_confidence
    if segmentation is not None and segmentation < limit:
        reasons.append(
            f"Segmentation confidence ({_percent(segmentation)}%) "
            f"below threshold ({_percent(limit)}%)"
        )
        needed = True
    if signals.metadata_confidence < limit:
        reasons.append(
            f"Metadata confidence ({_percent(signals.metadata_confidence)}%) "
            f"below threshold ({_percent(limit)}%)"
        )
        needed = True
    if signals.has_metadata_conflicts:
        reasons.append("Unresolved metadata conflicts remain")
        needed = True
    return needed


def _collect_review_reasons(signals: RoutingSignals, thresholds: PolicyThresholds) -> List[str]:
    reasons: List[str] = []
    if signals.has_duplicate_flag:
        reasons.append("Duplicate detection flagged this session")
    if signals.valid_part_count < thresholds.min_parts_for_auto_commit:
        reasons.append(
            f"Only {signals.valid_part_count} valid parts "
            f"(need {thresholds.min_parts_for_auto_commit})"
        )
    if not thresholds.autonomous_mode_enabled:
        reasons.append("Autonomous mode is disabled")
    if (
        signals.second_pass_status is SecondPassStatus.COMPLETE
        and signals.metadata_confidence < thresholds.min_auto_commit_confidence
    ):
        reasons.append(
            f"Post-second-pass confidence ({_percent(signals.metadata_confidence)}%) "
            f"still below auto-commit threshold ({_percent(thresholds.min_auto_commit_confidence)}%)"
        )
    return reasons


def _auto_commit_ready(signals: RoutingSignals, thresholds: PolicyThresholds) -> bool:
    return (
        thresholds.autonomous_mode_enabled
        and signals.second_pass_status in (SecondPassStatus.COMPLETE, SecondPassStatus.NOT_NEEDED)
        and signals.commit_status in (CommitStatus.NOT_STARTED, CommitStatus.FAILED)
        and signals.metadata_confidence >= thresholds.min_auto_commit_confidence
        and signals.valid_part_count >= thresholds.min_parts_for_auto_commit
        and not signals.has_duplicate_flag
        and not signals.has_metadata_conflicts
        and not signals.requires_human_review
    )


def needs_ocr(text_coverage: float, thresholds: PolicyThresholds = DEFAULT_THRESHOLDS) -> bool:
    """Whether a text layer this sparse should be sent to OCR."""
    return text_coverage < thresholds.min_text_coverage


def needs_second_pass(
    metadata_confidence: float,
    segmentation_confidence: Optional[float],
    thresholds: PolicyThresholds = DEFAULT_THRESHOLDS,
) -> bool:
    limit = thresholds.min_skip_second_pass_confidence
    if metadata_confidence < limit:
        return True
    return segmentation_confidence is not None and segmentation_confidence < limit
