from src.ingest.duplicates import (
    DuplicatePolicy,
    check_source_duplicate,
    check_work_duplicate,
    compute_sha256,
    compute_work_fingerprint,
    resolve_deduplication_policy,
)


def test_compute_sha256():
    assert compute_sha256(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"


def test_work_fingerprint_ignores_case_and_punctuation():
    a = compute_work_fingerprint("The Stars & Stripes, Forever!", "J. P. Sousa")
    b = compute_work_fingerprint("the stars  stripes forever", "j p sousa")
    assert a.hash == b.hash
    assert len(a.hash) == 16
    assert a.normalized_title == "the stars stripes forever"


def test_work_fingerprint_differs_by_composer():
    a = compute_work_fingerprint("Suite", "Holst")
    b = compute_work_fingerprint("Suite", "Grainger")
    assert a.hash != b.hash
    assert compute_work_fingerprint("Suite", None).normalized_composer == ""


def test_source_duplicate():
    miss = check_source_duplicate("abc", None)
    assert miss.policy is DuplicatePolicy.NEW_PIECE
    assert not miss.is_duplicate

    hit = check_source_duplicate("abc", "sess-1")
    assert hit.policy is DuplicatePolicy.SKIP_DUPLICATE
    assert hit.matching_session_id == "sess-1"
    assert hit.reason == "Exact source file match: session sess-1"


def test_work_duplicate_goes_to_review():
    fingerprint = compute_work_fingerprint("First Suite", "Holst")
    hit = check_work_duplicate(fingerprint, "piece-9", "First Suite in Eb")
    assert hit.policy is DuplicatePolicy.EXCEPTION_REVIEW
    assert hit.matching_piece_id == "piece-9"
    assert hit.reason == 'Possible duplicate of "First Suite in Eb" (work fingerprint match)'
    assert not check_work_duplicate(fingerprint, None).is_duplicate


def test_resolve_policy_prefers_source_match():
    fingerprint = compute_work_fingerprint("x", "y")
    source = check_source_duplicate("abc", "sess-1")
    work = check_work_duplicate(fingerprint, "piece-1")
    assert resolve_deduplication_policy(source, work) is source
    neither = resolve_deduplication_policy(
        check_source_duplicate("abc", None), check_work_duplicate(fingerprint, None)
    )
    assert neither.policy is DuplicatePolicy.NEW_PIECE
    assert neither.to_dict()["isDuplicate"] is False


def test_policies_are_the_ones_the_resolver_produces():
    assert {policy.value for policy in DuplicatePolicy} == {
        "NEW_PIECE",
        "SKIP_DUPLICATE",
        "EXCEPTION_REVIEW",
    }
