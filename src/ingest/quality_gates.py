from __future__ import annotations

"""Quality gates shared by first-pass and second-pass extraction.

When any gate fails the session is held for human review and the reasons are
recorded on it.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from src.ingest.models import ExtractedMetadata, ParsedPartRecord

FORBIDDEN_LABELS = frozenset({"null", "none", "n/a", "na", "unknown", "undefined", ""})
SCORE_SECTIONS = frozenset({"Score", "score", "FULL_SCORE", "CONDUCTOR_SCORE", "CONDENSED_SCORE"})

DEFAULT_MAX_PAGES_PER_PART = 12
DEFAULT_SEGMENTATION_THRESHOLD = 70.0
# Multi-part uploads longer than this must be cut into at least two parts.
MULTI_PART_PAGE_LIMIT = 10


def is_forbidden_label(label: Optional[str]) -> bool:
    """True when a label is missing or one of the placeholder values."""
    if not label:
        return True
    return label.strip().lower() in FORBIDDEN_LABELS


@dataclass(frozen=True)
class QualityGateResult:
    failed: bool
    reasons: List[str] = field(default_factory=list)
    final_confidence: float = 0.0


def evaluate_quality_gates(
    *,
    parsed_parts: Sequence[ParsedPartRecord],
    metadata: ExtractedMetadata,
    total_pages: int,
    max_pages_per_part: int = DEFAULT_MAX_PAGES_PER_PART,
    segmentation_confidence: Optional[float] = None,
    segmentation_threshold: float = DEFAULT_SEGMENTATION_THRESHOLD,
) -> QualityGateResult:
    """Run every gate and compute min(extraction, segmentation) confidence."""
    reasons: List[str] = []

    unlabeled = next(
        (p for p in parsed_parts if is_forbidden_label(p.instrument) or is_forbidden_label(p.part_name)),
        None,
    )
    if unlabeled is not None:
        reasons.append(
            f'Part with null/unknown label: instrument="{unlabeled.instrument}" '
            f'partName="{unlabeled.part_name}"'
        )

    oversized = next(
        (
            p
            for p in parsed_parts
            if p.section not in SCORE_SECTIONS and p.page_count > max_pages_per_part
        ),
        None,
    )
    if oversized is not None:
        reasons.append(
            f'Non-score part "{oversized.part_name}" has {oversized.page_count} pages '
            f"(max {max_pages_per_part})"
        )

    cuts = len(metadata.cutting_instructions or [])
    if metadata.is_multi_part and total_pages > MULTI_PART_PAGE_LIMIT and cuts < 2:
        reasons.append(
            f"isMultiPart=true with {total_pages} pages but only {cuts} cutting instruction(s)"
        )

    if segmentation_confidence is not None and segmentation_confidence < segmentation_threshold:
        reasons.append(
            f"segmentationConfidence {segmentation_confidence:g} < threshold {segmentation_threshold:g}"
        )

    extraction = metadata.confidence_score or 0.0
    final_confidence = (
        min(extraction, segmentation_confidence)
        if segmentation_confidence is not None
        else extraction
    )
    return QualityGateResult(failed=bool(reasons), reasons=reasons, final_confidence=final_confidence)


def count_valid_parts(
    metadata: Optional[ExtractedMetadata],
    parsed_parts: Sequence[ParsedPartRecord] = (),
) -> int:
    """Count labelled parts, preferring split files over cutting instructions."""
    if parsed_parts:
        return sum(1 for p in parsed_parts if not is_forbidden_label(p.instrument))
    if metadata is None:
        return 0
    if metadata.cutting_instructions:
        return sum(1 for ci in metadata.cutting_instructions if not is_forbidden_label(ci.instrument))
    if metadata.parts:
        return sum(1 for part in metadata.parts if not is_forbidden_label(part.instrument))
    return 0 if is_forbidden_label(metadata.instrument) else 1
