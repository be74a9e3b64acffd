from dataclasses import replace

from src.ingest.routing import (
    PipelineRoute,
    PolicyThresholds,
    RoutingSignals,
    determine_route,
    needs_ocr,
    needs_second_pass,
)
from src.ingest.state import CommitStatus, OcrStatus, SecondPassStatus, WorkflowStatus


def _clean_signals(**overrides):
    base = RoutingSignals(
        text_coverage=0.9,
        metadata_confidence=92.0,
        segmentation_confidence=95.0,
        valid_part_count=3,
        workflow_status=WorkflowStatus.PROCESSED,
    )
    return replace(base, **overrides)


def test_clean_session_auto_commits():
    result = determine_route(_clean_signals())
    assert result.route is PipelineRoute.AUTO_COMMIT
    assert result.reasons == ["All auto-commit criteria satisfied"]


def test_terminal_session_goes_to_review():
    result = determine_route(_clean_signals(workflow_status=WorkflowStatus.APPROVED))
    assert result.route is PipelineRoute.EXCEPTION_REVIEW
    assert result.reasons == ["Session is in a terminal state"]


def test_explicit_review_flag_wins_over_ocr():
    result = determine_route(_clean_signals(requires_human_review=True, text_coverage=0.0))
    assert result.route is PipelineRoute.EXCEPTION_REVIEW
    assert result.reasons == ["Session explicitly flagged for human review"]


def test_low_text_coverage_requires_ocr():
    result = determine_route(_clean_signals(text_coverage=0.1))
    assert result.route is PipelineRoute.OCR_REQUIRED
    assert result.reasons == ["Text coverage (10%) below threshold (30%)"]


def test_pending_ocr_keeps_ocr_route():
    result = determine_route(_clean_signals(text_coverage=0.1, ocr_status=OcrStatus.IN_PROGRESS))
    assert result.route is PipelineRoute.OCR_REQUIRED
    assert result.reasons == ["OCR is still in progress"]


def test_completed_ocr_moves_on_despite_low_coverage():
    result = determine_route(_clean_signals(text_coverage=0.1, ocr_status=OcrStatus.COMPLETE))
    assert result.route is PipelineRoute.AUTO_COMMIT


def test_low_confidence_requires_second_pass_with_all_reasons():
    result = determine_route(
        _clean_signals(metadata_confidence=60.0, segmentation_confidence=50.0, has_metadata_conflicts=True)
    )
    assert result.route is PipelineRoute.SECOND_PASS_REQUIRED
    assert result.reasons == [
        "Segmentation confidence (50%) below threshold (85%)",
        "Metadata confidence (60%) below threshold (85%)",
        "Unresolved metadata conflicts remain",
    ]


def test_pending_second_pass():
    result = determine_route(_clean_signals(second_pass_status=SecondPassStatus.QUEUED))
    assert result.route is PipelineRoute.SECOND_PASS_REQUIRED
    assert result.reasons == ["Second pass is still in progress"]


def test_review_reasons_are_collected():
    thresholds = PolicyThresholds(min_parts_for_auto_commit=2, autonomous_mode_enabled=False)
    result = determine_route(
        _clean_signals(has_duplicate_flag=True, valid_part_count=1), thresholds
    )
    assert result.route is PipelineRoute.EXCEPTION_REVIEW
    assert result.reasons == [
        "Duplicate detection flagged this session",
        "Only 1 valid parts (need 2)",
        "Autonomous mode is disabled",
    ]


def test_post_second_pass_confidence_below_auto_commit():
    result = determine_route(
        _clean_signals(metadata_confidence=70.0, second_pass_status=SecondPassStatus.COMPLETE)
    )
    assert result.route is PipelineRoute.EXCEPTION_REVIEW
    assert result.reasons == [
        "Post-second-pass confidence (70%) still below auto-commit threshold (80%)"
    ]


def test_commit_in_flight_falls_back_to_text_only():
    result = determine_route(_clean_signals(commit_status=CommitStatus.IN_PROGRESS))
    assert result.route is PipelineRoute.TEXT_ONLY
    assert result.reasons == ["Default text-only processing path"]


def test_result_to_dict():
    payload = determine_route(_clean_signals()).to_dict()
    assert payload["route"] == "AUTO_COMMIT"


def test_predicates():
    assert needs_ocr(0.2)
    assert not needs_ocr(0.3)
    assert needs_second_pass(80.0, None)
    assert needs_second_pass(90.0, 70.0)
    assert not needs_second_pass(90.0, None)
