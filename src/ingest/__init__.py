"""
Score Ingest Decision Engine

Pure decision logic for sheet-music ingestion sessions: status transitions,
failure classification, normalization, routing, quality gates, duplicate
detection and the commit plan.
"""

from src.ingest.state import (
    CommitStatus,
    InvalidTransitionError,
    OcrStatus,
    SecondPassStatus,
    WorkflowStatus,
    assert_transition,
    is_valid_transition,
)
from src.ingest.session_errors import ErrorCode, FailureStage, SessionFailure, classify_error
from src.ingest.instruments import InstrumentRegistry, build_default_registry
from src.ingest.models import ExtractedMetadata, ParsedPartRecord, Session
from src.ingest.normalizer import normalize_extracted_metadata
from src.ingest.routing import PipelineRoute, PolicyThresholds, RoutingSignals, determine_route
from src.ingest.quality_gates import evaluate_quality_gates
from src.ingest.duplicates import check_source_duplicate, check_work_duplicate, compute_work_fingerprint
from src.ingest.commit import CommitOverrides, CommitResult, CommitService, build_commit_plan

__all__ = [
    # Status machine
    "WorkflowStatus",
    "OcrStatus",
    "SecondPassStatus",
    "CommitStatus",
    "InvalidTransitionError",
    "is_valid_transition",
    "assert_transition",
    # Failures
    "ErrorCode",
    "FailureStage",
    "SessionFailure",
    "classify_error",
    # Records
    "Session",
    "ExtractedMetadata",
    "ParsedPartRecord",
    # Normalization
    "InstrumentRegistry",
    "build_default_registry",
    "normalize_extracted_metadata",
    # Decisions
    "PipelineRoute",
    "PolicyThresholds",
    "RoutingSignals",
    "determine_route",
    "evaluate_quality_gates",
    "compute_work_fingerprint",
    "check_source_duplicate",
    "check_work_duplicate",
    # Commit
    "CommitOverrides",
    "CommitResult",
    "CommitService",
    "build_commit_plan",
]
