"""Helpers for reading structure out of legacy track file names.

Legacy recordings are named like ``001 JKR - Opening prayers [ENG].mp3`` or
``001a TRAD - Oracoes iniciais.mp3``: an optional track number, an optional
speaker tag, the title, and bracketed language tags.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath

LANGUAGE_CODES = {
    "ENG": "en",
    "ING": "en",
    "EN": "en",
    "POR": "pt",
    "PT": "pt",
    "TIB": "tib",
    "FR": "fr",
    "FRA": "fr",
    "ESP": "es",
    "ES": "es",
}

KNOWN_SPEAKERS = frozenset({"jkr", "pwr", "kps", "srr", "cnr", "ymr", "dk", "mttr"})
SIMILARITY_THRESHOLD = 0.8

_TRACK_NUMBER = re.compile(r"^(\d+)[a-zA-Z]?[_\s\-.]")
_SPEAKER = re.compile(r"^\d+[a-zA-Z]?[_\s]+([A-Z]{2,5})(?:\s+-|\s+\[|_)")
_CONVENTION = re.compile(r"^\d+[a-zA-Z]?[_\s]+[A-Z]{2,5}(?:\s+-|\s+\[)")
_BRACKET_TAG = re.compile(r"\[([^\]]+)\]")
_TRANSLATION = re.compile(r"(?:^|[\s_\-.])trad(?:u[cç][aã]o)?(?=$|[\s_\-.])", re.IGNORECASE)
_LEADING_NUMBER = re.compile(r"^\d+[a-z]?[\s_\-.]+")
_SEPARATORS = re.compile(r"[\s_\-.]+")


@dataclass(slots=True, frozen=True)
class TrackInfo:
    track_number: int | None
    speaker: str | None
    language: str | None
    is_translation: bool
    title: str


def _stem(filename: str) -> str:
    name = PurePosixPath(filename).name
    return name.rsplit(".", 1)[0] if "." in name else name


def detect_language(filename: str) -> str | None:
    """Map bracketed tags such as ``[ENG]`` or ``[ENG+POR]`` to language codes."""

    for tag in _BRACKET_TAG.findall(filename):
        parts = [part.strip().upper() for part in re.split(r"[+/,]", tag)]
        codes = [LANGUAGE_CODES[part] for part in parts if part in LANGUAGE_CODES]
        if codes:
            return "+".join(dict.fromkeys(codes))
    return None


def is_translation(filename: str) -> bool:
    return bool(_TRANSLATION.search(_stem(filename)))


def parse_track_filename(filename: str) -> TrackInfo:
    """Extract track number, speaker, language and display title."""

    stem = _stem(filename)
    number_match = _TRACK_NUMBER.match(stem)
    speaker_match = _SPEAKER.match(stem)
    if speaker_match and speaker_match.group(1) == "TRAD":
        speaker_match = None

    title = _BRACKET_TAG.sub("", stem)
    title = _LEADING_NUMBER.sub("", title.strip())
    if speaker_match:
        speaker_prefix = re.compile(rf"^{re.escape(speaker_match.group(1))}[\s_]*-?\s*")
        title = speaker_prefix.sub("", title)
    title = title.strip(" -_") or stem

    return TrackInfo(
        track_number=int(number_match.group(1)) if number_match else None,
        speaker=speaker_match.group(1) if speaker_match else None,
        language=detect_language(filename),
        is_translation=is_translation(filename),
        title=title,
    )


def follows_naming_convention(filename: str) -> bool:
    """Return True for numeric-prefixed, speaker-tagged names."""

    return bool(_CONVENTION.match(_stem(filename)))


def normalize_core_title(filename: str) -> str:
    """Reduce a track name to the words that identify its content.

    Drops the extension, bracket tags, translation markers, the leading track
    number, separators and a leading known speaker abbreviation.
    """

    speaker_match = _SPEAKER.match(_stem(filename))
    speakers = set(KNOWN_SPEAKERS)
    if speaker_match and speaker_match.group(1) != "TRAD":
        speakers.add(speaker_match.group(1).lower())

    value = _stem(filename).lower()
    value = _BRACKET_TAG.sub(" ", value)
    value = _TRANSLATION.sub(" ", value)
    value = _LEADING_NUMBER.sub("", value.strip())
    value = _SEPARATORS.sub(" ", value).strip()
    head, _, rest = value.partition(" ")
    if head in speakers:
        value = rest.strip()
    return value


def title_similarity(first: str, second: str) -> float:
    """Score two normalized titles between 0 and 1.

    Containment scores the length ratio; otherwise the share of shared words
    longer than two characters.
    """

    if first == second:
        return 1.0
    if not first or not second:
        return 0.0
    if first in second or second in first:
        return min(len(first), len(second)) / max(len(first), len(second))

    words_first = first.split()
    words_second = second.split()
    shared = sum(
        1
        for word in words_first
        if len(word) > 2 and word in {other for other in words_second if len(other) > 2}
    )
    return shared / max(len(words_first), len(words_second))
