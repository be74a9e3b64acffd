from __future__ import annotations

"""Duplicate detection by source hash and by work fingerprint.

The checks are pure: callers look up the matching session or piece and pass
it in.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import hashlib
import re


class DuplicatePolicy(str, Enum):
    NEW_PIECE = "NEW_PIECE"
    SKIP_DUPLICATE = "SKIP_DUPLICATE"
    EXCEPTION_REVIEW = "EXCEPTION_REVIEW"


@dataclass(frozen=True)
class DuplicateCheckResult:
    policy: DuplicatePolicy
    is_duplicate: bool
    reason: str
    matching_session_id: Optional[str] = None
    matching_piece_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "policy": self.policy.value,
            "isDuplicate": self.is_duplicate,
            "matchingSessionId": self.matching_session_id,
            "matchingPieceId": self.matching_piece_id,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class WorkFingerprint:
    normalized_title: str
    normalized_composer: str
    hash: str


_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def _fingerprint_text(value: str) -> str:
    text = _PUNCTUATION.sub("", value.lower().strip())
    return _WHITESPACE.sub(" ", text).strip()


def compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def compute_work_fingerprint(title: str, composer: Optional[str]) -> WorkFingerprint:
    """Same title and composer, ignoring case and punctuation, give the same hash."""
    normalized_title = _fingerprint_text(title or "")
    normalized_composer = _fingerprint_text(composer or "")
    combined = f"{normalized_title}::{normalized_composer}"
    digest = hashlib.sha256(combined.encode("utf-8")).hexdigest()[:16]
    return WorkFingerprint(normalized_title, normalized_composer, digest)


def check_source_duplicate(source_sha256: str, existing_session_id: Optional[str]) -> DuplicateCheckResult:
    if not existing_session_id:
        return DuplicateCheckResult(
            policy=DuplicatePolicy.NEW_PIECE,
            is_duplicate=False,
            reason="No matching source hash found",
        )
    return DuplicateCheckResult(
        policy=DuplicatePolicy.SKIP_DUPLICATE,
        is_duplicate=True,
        reason=f"Exact source file match: session {existing_session_id}",
        matching_session_id=existing_session_id,
    )


def check_work_duplicate(
    fingerprint: WorkFingerprint,
    existing_piece_id: Optional[str],
    existing_title: str = "",
) -> DuplicateCheckResult:
    if not existing_piece_id:
        return DuplicateCheckResult(
            policy=DuplicatePolicy.NEW_PIECE,
            is_duplicate=False,
            reason="No matching work fingerprint found",
        )
    title = existing_title or fingerprint.normalized_title
    return DuplicateCheckResult(
        policy=DuplicatePolicy.EXCEPTION_REVIEW,
        is_duplicate=True,
        reason=f'Possible duplicate of "{title}" (work fingerprint match)',
        matching_piece_id=existing_piece_id,
    )


def resolve_deduplication_policy(
    source_result: DuplicateCheckResult,
    work_result: DuplicateCheckResult,
) -> DuplicateCheckResult:
    """An exact source match wins over a work match; otherwise it is a new piece."""
    if source_result.is_duplicate:
        return source_result
    if work_result.is_duplicate:
        return work_result
    return DuplicateCheckResult(
        policy=DuplicatePolicy.NEW_PIECE,
        is_duplicate=False,
        reason="No duplicates detected",
    )
