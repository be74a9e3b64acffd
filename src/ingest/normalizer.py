from __future__ import annotations

"""Normalize raw extracted values before they reach the catalogue.

Every function here is total and idempotent on already-normalized input.
Raw values are kept next to normalized ones so provenance is never lost.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Generic, List, Optional, Sequence, Tuple, TypeVar, Union
import re

from src.ingest.instruments import InstrumentRegistry, InstrumentSection, Transposition
from src.ingest.models import CuttingInstruction, ExtractedMetadata

T = TypeVar("T")

_WHITESPACE = re.compile(r"\s+")
_WORD = re.compile(r"\w\S*")
_WORD_START = re.compile(r"\b\w")
_TITLE_STOPWORDS = frozenset(
    {"a", "an", "the", "and", "but", "or", "for", "nor", "in", "on", "at", "to", "of"}
)

_CHAIR_ALIASES: Dict[str, str] = {
    "1": "1st", "1st": "1st", "first": "1st", "i": "1st",
    "2": "2nd", "2nd": "2nd", "second": "2nd", "ii": "2nd",
    "3": "3rd", "3rd": "3rd", "third": "3rd", "iii": "3rd",
    "4": "4th", "4th": "4th", "fourth": "4th", "iv": "4th",
}

_TRANSPOSITION_PATTERNS: Tuple[Tuple[re.Pattern, Transposition], ...] = (
    (re.compile(r"^(bb|b-flat|b flat|b♭)$"), Transposition.B_FLAT),
    (re.compile(r"^(eb|e-flat|e flat|e♭)$"), Transposition.E_FLAT),
    (re.compile(r"^f$"), Transposition.F),
    (re.compile(r"^g$"), Transposition.G),
    (re.compile(r"^d$"), Transposition.D),
    (re.compile(r"^a$"), Transposition.A),
)


def _collapse(raw: str) -> str:
    return _WHITESPACE.sub(" ", raw.strip())


def normalize_title(raw: Optional[str]) -> str:
    """Trim, collapse whitespace and title-case, keeping short function words lowercase."""
    if not raw:
        return ""

    def _case(match: re.Match) -> str:
        word = match.group(0)
        lower = word.lower()
        if lower in _TITLE_STOPWORDS:
            return lower
        return word[0].upper() + word[1:].lower()

    title = _WORD.sub(_case, _collapse(raw))
    return title[:1].upper() + title[1:]


def normalize_person_name(raw: Optional[str]) -> str:
    """Collapse whitespace, flip "Last, First" and capitalize each word.

    Pieces after the second comma are dropped, so a flipped name carries no
    comma and normalizing it again is a no-op.
    """
    if not raw:
        return ""
    name = _collapse(raw)
    if "," in name:
        last, first = (piece.strip() for piece in name.split(",")[:2])
        if first and last:
            name = f"{first} {last}"
    return _WORD_START.sub(lambda match: match.group(0).upper(), name)


def normalize_publisher(raw: Optional[str]) -> str:
    if not raw:
        return ""
    return _collapse(raw)


def normalize_chair(raw: Union[str, int, None]) -> Optional[str]:
    """Map numeric, ordinal, word and Roman chair labels to "1st".."4th".

    "Aux" and "Solo" prefixes are recognized; anything else passes through
    lowercased.
    """
    if raw is None:
        return None
    value = str(raw).strip().lower()
    if not value:
        return None
    canonical = _CHAIR_ALIASES.get(value)
    if canonical is not None:
        return canonical
    if value.startswith("aux"):
        return "Aux"
    if value.startswith("solo"):
        return "Solo"
    return value


# First match wins, so "1st" beats a later "2" in labels such as "Trombone 1 & 2".
_CHAIR_LABEL_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"\b(1st|first|i|1)\b", re.IGNORECASE), "1st"),
    (re.compile(r"\b(2nd|second|ii|2)\b", re.IGNORECASE), "2nd"),
    (re.compile(r"\b(3rd|third|iii|3)\b", re.IGNORECASE), "3rd"),
    (re.compile(r"\b(4th|fourth|iv|4)\b", re.IGNORECASE), "4th"),
    (re.compile(r"\b(aux|auxiliary)\b", re.IGNORECASE), "Aux"),
    (re.compile(r"\bsolo\b", re.IGNORECASE), "Solo"),
)
_UNSAFE_FILENAME_CHARS = re.compile(r'[/\\:*?"<>|]')
_REPEATED_UNDERSCORES = re.compile(r"_{2,}")


def infer_chair(label: Optional[str]) -> Optional[str]:
    """Read a chair out of a free-form part label ("Clarinet 2", "Trumpet II")."""
    if not label:
        return None
    for pattern, chair in _CHAIR_LABEL_PATTERNS:
        if pattern.search(label):
            return chair
    return None


def resolve_chair(part_number: Union[str, int, None], *labels: Optional[str]) -> Optional[str]:
    """An explicit part number wins; otherwise the first label naming a chair."""
    chair = normalize_chair(part_number)
    if chair is not None:
        return chair
    for label in labels:
        chair = infer_chair(label)
        if chair is not None:
            return chair
    return None


def build_part_display_name(piece_title: str, instrument: str, chair: Optional[str] = None) -> str:
    """Title, then chair and instrument: "American Patrol 1st Bb Clarinet"."""
    label = f"{chair} {instrument.strip()}" if chair else instrument.strip()
    return f"{_collapse(piece_title)} {label}".strip()


def build_part_filename(display_name: str) -> str:
    """Filesystem-safe PDF name for a part, at most 200 characters before the extension."""
    name = _UNSAFE_FILENAME_CHARS.sub("", display_name.strip())
    name = _REPEATED_UNDERSCORES.sub("_", _WHITESPACE.sub("_", name))
    return f"{name[:200]}.pdf"


def normalize_transposition(raw: Optional[str]) -> Transposition:
    """Canonicalize a key label; anything unrecognized is concert pitch."""
    if not raw:
        return Transposition.C
    value = _collapse(raw).lower()
    for pattern, transposition in _TRANSPOSITION_PATTERNS:
        if pattern.match(value):
            return transposition
    return Transposition.C


@dataclass(frozen=True)
class NormalizedInstrument:
    canonical_name: str
    section: InstrumentSection
    transposition: Transposition


def normalize_instrument(raw: Optional[str], registry: InstrumentRegistry) -> NormalizedInstrument:
    """Resolve a label through the registry, keeping the raw label when nothing matches."""
    match = registry.find_by_fuzzy_match(raw)
    if match is not None:
        return NormalizedInstrument(match.name, match.section, match.transposition)
    return NormalizedInstrument(
        canonical_name=(raw or "").strip() or "Unknown",
        section=InstrumentSection.OTHER,
        transposition=Transposition.C,
    )


def generate_part_fingerprint(
    session_id: str,
    canonical_instrument: str,
    chair: Optional[str],
    page_start: int,
    page_end: int,
) -> str:
    """Deterministic dedup key for a part inside one session."""
    return "::".join(
        [
            session_id,
            _WHITESPACE.sub("-", canonical_instrument.lower()),
            chair if chair is not None else "no-chair",
            f"p{page_start}-{page_end}",
        ]
    )


@dataclass(frozen=True)
class NormalizedField(Generic[T]):
    raw: T
    normalized: T

    def to_dict(self) -> Dict[str, Any]:
        return {"raw": self.raw, "normalized": self.normalized}


@dataclass(frozen=True)
class NormalizedPart:
    raw_instrument: str
    raw_part_name: str
    canonical_instrument: str
    section: InstrumentSection
    transposition: Transposition
    chair: Optional[str]
    page_range: Tuple[int, int]
    fingerprint: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rawInstrument": self.raw_instrument,
            "rawPartName": self.raw_part_name,
            "canonicalInstrument": self.canonical_instrument,
            "section": self.section.value,
            "transposition": self.transposition.value,
            "chair": self.chair,
            "pageRange": list(self.page_range),
            "fingerprint": self.fingerprint,
        }


@dataclass(frozen=True)
class NormalizedMetadata:
    title: NormalizedField[str]
    subtitle: NormalizedField[Optional[str]]
    composer: NormalizedField[Optional[str]]
    arranger: NormalizedField[Optional[str]]
    publisher: NormalizedField[Optional[str]]
    ensemble_type: NormalizedField[Optional[str]]
    confidence_score: float
    file_type: Optional[str]
    is_multi_part: bool
    parts: List[NormalizedPart] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title.to_dict(),
            "subtitle": self.subtitle.to_dict(),
            "composer": self.composer.to_dict(),
            "arranger": self.arranger.to_dict(),
            "publisher": self.publisher.to_dict(),
            "ensembleType": self.ensemble_type.to_dict(),
            "confidenceScore": self.confidence_score,
            "fileType": self.file_type,
            "isMultiPart": self.is_multi_part,
            "parts": [part.to_dict() for part in self.parts],
        }


def normalize_part(
    session_id: str,
    instruction: CuttingInstruction,
    registry: InstrumentRegistry,
) -> NormalizedPart:
    instrument = normalize_instrument(instruction.instrument, registry)
    chair = resolve_chair(instruction.part_number, instruction.part_name, instruction.instrument)
    start, end = instruction.page_range
    return NormalizedPart(
        raw_instrument=instruction.instrument,
        raw_part_name=instruction.part_name,
        canonical_instrument=instrument.canonical_name,
        section=instrument.section,
        transposition=instrument.transposition,
        chair=chair,
        page_range=(start, end),
        fingerprint=generate_part_fingerprint(
            session_id, instrument.canonical_name, chair, start, end
        ),
    )


def _optional(raw: Optional[str], normalize) -> NormalizedField[Optional[str]]:
    return NormalizedField(raw=raw, normalized=normalize(raw) if raw else None)


def normalize_extracted_metadata(
    session_id: str,
    raw: ExtractedMetadata,
    cutting_instructions: Optional[Sequence[CuttingInstruction]] = None,
    *,
    registry: InstrumentRegistry,
) -> NormalizedMetadata:
    """Normalize every field and every cutting instruction of one extraction.

    Explicit cutting instructions win over the ones embedded in the metadata.
    """
    if cutting_instructions is None:
        cutting_instructions = raw.cutting_instructions or []
    parts = [normalize_part(session_id, ci, registry) for ci in cutting_instructions]
    return NormalizedMetadata(
        title=NormalizedField(raw=raw.title, normalized=normalize_title(raw.title)),
        subtitle=_optional(raw.subtitle, normalize_title),
        composer=_optional(raw.composer, normalize_person_name),
        arranger=_optional(raw.arranger, normalize_person_name),
        publisher=_optional(raw.publisher, normalize_publisher),
        ensemble_type=_optional(raw.ensemble_type, str.strip),
        confidence_score=raw.confidence_score,
        file_type=raw.file_type,
        is_multi_part=raw.is_multi_part,
        parts=parts,
    )
