from __future__ import annotations

"""Canonical instrument registry with OCR-tolerant alias matching.

The registry is built once by the composition root and shared read-only by
every component that resolves instrument labels.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Tuple


class InstrumentSection(str, Enum):
    WOODWINDS = "Woodwinds"
    BRASS = "Brass"
    PERCUSSION = "Percussion"
    STRINGS = "Strings"
    KEYBOARD = "Keyboard"
    VOCALS = "Vocals"
    SCORE = "Score"
    OTHER = "Other"


class Transposition(str, Enum):
    C = "C"
    B_FLAT = "Bb"
    E_FLAT = "Eb"
    F = "F"
    G = "G"
    D = "D"
    A = "A"


@dataclass(frozen=True)
class CanonicalInstrument:
    name: str
    transposition: Transposition
    section: InstrumentSection
    aliases: Tuple[str, ...]


def _instrument(name: str, transposition: str, section: InstrumentSection, *aliases: str) -> CanonicalInstrument:
    return CanonicalInstrument(
        name=name,
        transposition=Transposition(transposition),
        section=section,
        aliases=tuple(aliases),
    )


_WW = InstrumentSection.WOODWINDS
_BR = InstrumentSection.BRASS
_PC = InstrumentSection.PERCUSSION
_ST = InstrumentSection.STRINGS
_KB = InstrumentSection.KEYBOARD
_SC = InstrumentSection.SCORE

# Aliases are lowercase and include common OCR misreads ("c1arinet", "tr0mbone").
CANONICAL_INSTRUMENTS: Tuple[CanonicalInstrument, ...] = (
    # Woodwinds
    _instrument("Piccolo", "C", _WW, "piccolo", "picc", "picc."),
    _instrument("Flute", "C", _WW, "flute", "fl", "fl.", "flauto", "flöte", "fiute", "f1ute"),
    _instrument("Oboe", "C", _WW, "oboe", "ob", "ob.", "hautbois"),
    _instrument(
        "English Horn", "F", _WW,
        "english horn", "cor anglais", "eng horn", "eng. horn", "english hn",
    ),
    _instrument(
        "Eb Clarinet", "Eb", _WW,
        "eb clarinet", "e-flat clarinet", "e♭ clarinet", "clarinet in eb",
        "clarinet in e-flat", "e flat clarinet",
    ),
    _instrument(
        "Bb Clarinet", "Bb", _WW,
        "clarinet", "bb clarinet", "b-flat clarinet", "b♭ clarinet", "clarinet in bb",
        "clarinet in b-flat", "clar", "clar.", "cl", "cl.", "clarinette", "klarinette",
        "c1arinet", "clarinat",
    ),
    _instrument("Alto Clarinet", "Eb", _WW, "alto clarinet", "alto clar", "alto cl", "alto cl."),
    _instrument(
        "Bass Clarinet", "Bb", _WW,
        "bass clarinet", "bass clar", "bass cl", "bass cl.", "b. cl.", "bcl", "bcl.",
    ),
    _instrument(
        "Contrabass Clarinet", "Bb", _WW,
        "contrabass clarinet", "contra bass clarinet", "contrabass clar",
    ),
    _instrument("Bassoon", "C", _WW, "bassoon", "bsn", "bsn.", "fagott", "basson", "bass0on"),
    _instrument("Contrabassoon", "C", _WW, "contrabassoon", "contra bassoon", "contrafagott"),
    _instrument(
        "Soprano Saxophone", "Bb", _WW,
        "soprano saxophone", "soprano sax", "sop sax", "sop. sax", "s. sax",
    ),
    _instrument(
        "Alto Saxophone", "Eb", _WW,
        "alto saxophone", "alto sax", "a. sax", "alt sax", "alto saxaphone", "a1to sax",
        "aito saxophone",
    ),
    _instrument(
        "Tenor Saxophone", "Bb", _WW,
        "tenor saxophone", "tenor sax", "t. sax", "ten sax", "ten. sax", "tenor saxaphone",
    ),
    _instrument(
        "Baritone Saxophone", "Eb", _WW,
        "baritone saxophone", "baritone sax", "bari sax", "bari. sax", "bar sax",
        "bar. sax", "b. sax",
    ),
    # Brass
    _instrument(
        "Trumpet", "Bb", _BR,
        "trumpet", "tpt", "tpt.", "trp", "trp.", "trompete", "trompette", "tp", "tp.",
        "tnimpet", "tmmpet",
    ),
    _instrument("Cornet", "Bb", _BR, "cornet", "cor", "cor.", "cnt", "cnt.", "cornett"),
    _instrument("Flugelhorn", "Bb", _BR, "flugelhorn", "flugel", "flugel horn", "flügelhorn", "fluegel"),
    _instrument(
        "Horn", "F", _BR,
        "horn", "french horn", "f horn", "hn", "hn.", "horn in f", "cor", "hom", "h0rn",
    ),
    _instrument("Trombone", "C", _BR, "trombone", "trb", "trb.", "tbn", "tbn.", "posaune", "tr0mbone"),
    _instrument("Bass Trombone", "C", _BR, "bass trombone", "bass trb", "bass trb.", "b. trb", "b. trb."),
    _instrument(
        "Euphonium", "C", _BR,
        "euphonium", "euph", "euph.", "euphonlum", "uphonium", "baritone tc", "baritone bc",
    ),
    _instrument("Baritone", "C", _BR, "baritone", "bar", "bar.", "baritone horn"),
    _instrument("Tuba", "C", _BR, "tuba", "tb", "tb.", "bass tuba", "concert tuba"),
    # Percussion
    _instrument("Timpani", "C", _PC, "timpani", "timp", "timp.", "kettledrum", "kettledrums", "tlmpani"),
    _instrument("Snare Drum", "C", _PC, "snare drum", "snare", "sd", "s.d.", "sd.", "side drum"),
    _instrument("Bass Drum", "C", _PC, "bass drum", "bd", "b.d.", "bd.", "gran cassa"),
    _instrument("Cymbals", "C", _PC, "cymbals", "cym", "cym.", "crash cymbals", "suspended cymbal"),
    _instrument("Bells", "C", _PC, "bells", "orchestra bells", "glockenspiel", "glock", "glock."),
    _instrument("Xylophone", "C", _PC, "xylophone", "xyl", "xyl.", "xylo"),
    _instrument("Vibraphone", "C", _PC, "vibraphone", "vib", "vib.", "vibes"),
    _instrument("Marimba", "C", _PC, "marimba", "mar", "mar."),
    _instrument("Chimes", "C", _PC, "chimes", "tubular bells", "tubular chimes"),
    _instrument("Mallet Percussion", "C", _PC, "mallet percussion", "mallet perc", "mallets", "mallet"),
    _instrument(
        "Percussion", "C", _PC,
        "percussion", "perc", "perc.", "auxiliary percussion", "aux perc",
    ),
    _instrument("Triangle", "C", _PC, "triangle", "tri", "tri."),
    _instrument("Tambourine", "C", _PC, "tambourine", "tamb", "tamb."),
    # Strings
    _instrument("Violin", "C", _ST, "violin", "vln", "vln.", "vn", "vn.", "violine"),
    _instrument("Viola", "C", _ST, "viola", "vla", "vla.", "va", "va."),
    _instrument("Cello", "C", _ST, "cello", "vc", "vc.", "vcl", "violoncello"),
    _instrument(
        "String Bass", "C", _ST,
        "string bass", "double bass", "contrabass", "bass", "cb", "cb.", "kb",
    ),
    _instrument("Harp", "C", _ST, "harp", "hp", "hp."),
    # Keyboard
    _instrument("Piano", "C", _KB, "piano", "pno", "pno.", "pf", "pf.", "pianoforte"),
    _instrument("Organ", "C", _KB, "organ", "org", "org."),
    _instrument("Celesta", "C", _KB, "celesta", "celeste"),
    # Score types
    _instrument(
        "Full Score", "C", _SC,
        "full score", "score", "conductor score", "conductor", "partitur",
    ),
    _instrument("Condensed Score", "C", _SC, "condensed score", "condensed", "reduced score"),
)

ALL_SECTIONS: Tuple[InstrumentSection, ...] = tuple(InstrumentSection)


class InstrumentRegistry:
    """Immutable alias index over a table of canonical instruments."""

    def __init__(self, instruments: Iterable[CanonicalInstrument]) -> None:
        self._instruments: Tuple[CanonicalInstrument, ...] = tuple(instruments)
        index = {}
        for instrument in self._instruments:
            if instrument.section is InstrumentSection.OTHER:
                raise ValueError(f"{instrument.name}: 'Other' is reserved for unmatched labels.")
            if not instrument.aliases:
                raise ValueError(f"{instrument.name}: at least one alias is required.")
            for alias in instrument.aliases:
                key = alias.strip().lower()
                # First registrant wins; later duplicates never shadow it.
                index.setdefault(key, instrument)
        self._alias_index: Mapping[str, CanonicalInstrument] = MappingProxyType(index)

    @property
    def instruments(self) -> Tuple[CanonicalInstrument, ...]:
        return self._instruments

    def find_by_alias(self, label: Optional[str]) -> Optional[CanonicalInstrument]:
        """Exact, case-insensitive alias lookup."""
        if not label:
            return None
        return self._alias_index.get(label.strip().lower())

    def find_by_fuzzy_match(self, label: Optional[str]) -> Optional[CanonicalInstrument]:
        """Exact alias match first, then the longest alias contained in the label.

        Ties on alias length keep the instrument registered first, so
        "1st Bass Clarinet" resolves to Bass Clarinet rather than Bb Clarinet.
        """
        if not label:
            return None
        lower = label.strip().lower()
        exact = self._alias_index.get(lower)
        if exact is not None:
            return exact
        best: Optional[CanonicalInstrument] = None
        best_length = 0
        for instrument in self._instruments:
            for alias in instrument.aliases:
                if len(alias) > best_length and alias in lower:
                    best = instrument
                    best_length = len(alias)
        return best

    def section_for_label(self, label: Optional[str]) -> InstrumentSection:
        match = self.find_by_fuzzy_match(label)
        return match.section if match else InstrumentSection.OTHER

    def transposition_for_label(self, label: Optional[str]) -> Transposition:
        match = self.find_by_fuzzy_match(label)
        return match.transposition if match else Transposition.C

    def instruments_by_section(self, section: InstrumentSection) -> List[CanonicalInstrument]:
        return [instrument for instrument in self._instruments if instrument.section is section]

    @staticmethod
    def all_sections() -> Tuple[InstrumentSection, ...]:
        return ALL_SECTIONS


def build_default_registry() -> InstrumentRegistry:
    """Build the registry over the built-in concert band table."""
    return InstrumentRegistry(CANONICAL_INSTRUMENTS)
