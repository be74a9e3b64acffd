import pytest

from src.ingest.instruments import InstrumentSection, Transposition, build_default_registry
from src.ingest.models import CuttingInstruction, ExtractedMetadata
from src.ingest.normalizer import (
    build_part_display_name,
    build_part_filename,
    generate_part_fingerprint,
    infer_chair,
    normalize_chair,
    normalize_extracted_metadata,
    normalize_instrument,
    normalize_person_name,
    normalize_publisher,
    normalize_title,
    normalize_transposition,
    resolve_chair,
)


@pytest.fixture(scope="module")
def registry():
    return build_default_registry()


def test_normalize_title_keeps_function_words_lowercase():
    assert normalize_title("  the   STARS and stripes   forever ") == "The Stars and Stripes Forever"
    assert normalize_title("march of the toys") == "March of the Toys"


def test_normalize_title_is_idempotent():
    once = normalize_title("a festival PRELUDE")
    assert normalize_title(once) == once


def test_normalize_title_empty():
    assert normalize_title(None) == ""
    assert normalize_title("") == ""


def test_normalize_person_name_flips_last_first():
    assert normalize_person_name("Sousa, John Philip") == "John Philip Sousa"
    assert normalize_person_name("john   williams") == "John Williams"
    assert normalize_person_name(None) == ""


def test_normalize_publisher_collapses_whitespace():
    assert normalize_publisher("  Hal   Leonard ") == "Hal Leonard"
    assert normalize_publisher(None) == ""


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("1", "1st"),
        (2, "2nd"),
        ("Third", "3rd"),
        ("IV", "4th"),
        ("aux.", "Aux"),
        ("Solo Cornet", "Solo"),
        ("  ", None),
        (None, None),
        ("Div", "div"),
    ],
)
def test_normalize_chair(raw, expected):
    assert normalize_chair(raw) == expected


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("Bb", Transposition.B_FLAT),
        ("B flat", Transposition.B_FLAT),
        ("E-flat", Transposition.E_FLAT),
        ("F", Transposition.F),
        ("", Transposition.C),
        ("H", Transposition.C),
    ],
)
def test_normalize_transposition(raw, expected):
    assert normalize_transposition(raw) is expected


def test_normalize_instrument_keeps_raw_label_when_unmatched(registry):
    result = normalize_instrument("  Kazoo ", registry)
    assert result.canonical_name == "Kazoo"
    assert result.section is InstrumentSection.OTHER
    assert result.transposition is Transposition.C
    assert normalize_instrument(None, registry).canonical_name == "Unknown"


def test_normalize_instrument_resolves_alias(registry):
    result = normalize_instrument("Clarinet in Bb", registry)
    assert result.canonical_name == "Bb Clarinet"
    assert result.section is InstrumentSection.WOODWINDS


def test_part_fingerprint_is_deterministic():
    fp = generate_part_fingerprint("s1", "Bb Clarinet", "1st", 1, 4)
    assert fp == "s1::bb-clarinet::1st::p1-4"
    assert generate_part_fingerprint("s1", "Bb Clarinet", None, 1, 4) == "s1::bb-clarinet::no-chair::p1-4"


def test_normalize_extracted_metadata_keeps_raw_values(registry):
    raw = ExtractedMetadata(
        title="american patrol",
        composer="Meacham, F. W.",
        publisher=" Carl  Fischer ",
        confidence_score=91.0,
        is_multi_part=True,
        cutting_instructions=[
            CuttingInstruction("Flute", "Flute", (1, 2), "1"),
            CuttingInstruction("Tuba", "Tuba", (3, 4)),
        ],
    )
    normalized = normalize_extracted_metadata("sess", raw, registry=registry)
    assert normalized.title.raw == "american patrol"
    assert normalized.title.normalized == "American Patrol"
    assert normalized.composer.normalized == "F. W. Meacham"
    assert normalized.publisher.normalized == "Carl Fischer"
    assert normalized.arranger.normalized is None
    assert [part.canonical_instrument for part in normalized.parts] == ["Flute", "Tuba"]
    assert normalized.parts[0].chair == "1st"
    assert normalized.parts[1].fingerprint == "sess::tuba::no-chair::p3-4"
    payload = normalized.to_dict()
    assert payload["parts"][0]["section"] == "Woodwinds"


def test_explicit_cutting_instructions_override_embedded(registry):
    raw = ExtractedMetadata(
        title="x",
        cutting_instructions=[CuttingInstruction("Flute", "Flute", (1, 1))],
    )
    normalized = normalize_extracted_metadata(
        "s", raw, [CuttingInstruction("Oboe", "Oboe", (2, 2))], registry=registry
    )
    assert [part.canonical_instrument for part in normalized.parts] == ["Oboe"]


def test_normalize_person_name_ignores_extra_commas():
    once = normalize_person_name("Sousa, John, Philip")
    assert once == "John Sousa"
    assert normalize_person_name(once) == once


@pytest.mark.parametrize(
    "label, expected",
    [
        ("Clarinet 1", "1st"),
        ("Trumpet 2nd", "2nd"),
        ("Horn III in F", "3rd"),
        ("Trombone 1 & 2", "1st"),
        ("Aux. Percussion", "Aux"),
        ("Solo Cornet", "Solo"),
        ("Horn in F", None),
        ("Timpani", None),
        (None, None),
    ],
)
def test_infer_chair_from_label(label, expected):
    assert infer_chair(label) == expected


def test_resolve_chair_prefers_part_number():
    assert resolve_chair("2", "Clarinet 1") == "2nd"
    assert resolve_chair(None, "Clarinet", "Bb Clarinet II") == "2nd"
    assert resolve_chair(None, "Tuba") is None


def test_chair_is_inferred_for_cutting_instruction_without_part_number(registry):
    raw = ExtractedMetadata(
        title="x",
        cutting_instructions=[CuttingInstruction("Clarinet", "Clarinet 2", (1, 2))],
    )
    part = normalize_extracted_metadata("s", raw, registry=registry).parts[0]
    assert part.chair == "2nd"
    assert part.fingerprint == "s::bb-clarinet::2nd::p1-2"


def test_part_display_name_and_filename():
    name = build_part_display_name("  American   Patrol ", "Bb Clarinet", "1st")
    assert name == "American Patrol 1st Bb Clarinet"
    assert build_part_display_name("March", "Tuba") == "March Tuba"
    assert build_part_filename(name) == "American_Patrol_1st_Bb_Clarinet.pdf"
    assert build_part_filename('Who? / What:  "Now"') == "Who_What_Now.pdf"
    assert len(build_part_filename("x" * 300)) == 204
