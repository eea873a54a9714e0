"""Resolution of overlapping audio collections within one event.

Legacy exports often hold an older single-language folder next to a newer
bilingual one. The larger collection becomes canonical; tracks of the other
collections either duplicate a canonical track (suggested ``ignore``) or are
unique and kept as legacy tracks.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath

from ..schemas.policy import LegacyStrategy
from .tracks import (
    SIMILARITY_THRESHOLD,
    follows_naming_convention,
    normalize_core_title,
    parse_track_filename,
    title_similarity,
)

# Fixed precedence when counts and naming convention both tie.
COLLECTION_PRECEDENCE = ("audio2", "main", "audio1", "legacy")

TIE_BREAK_CONVENTION = "naming_convention"
TIE_BREAK_PRECEDENCE = "collection_precedence"


@dataclass(slots=True)
class DedupResult:
    """Role assignment for every audio key of one event."""

    canonical: str | None
    collections: dict[str, int]
    main: list[str] = field(default_factory=list)
    legacy: list[str] = field(default_factory=list)
    duplicates: list[str] = field(default_factory=list)
    tie_break: str | None = None

    def role_of(self, key: str) -> str:
        if key in self.duplicates:
            return "duplicate"
        if key in self.legacy:
            return "legacy"
        return "main"


def _precedence(name: str) -> tuple[int, str]:
    try:
        return (COLLECTION_PRECEDENCE.index(name), name)
    except ValueError:
        return (len(COLLECTION_PRECEDENCE), name)


def _convention_share(keys: list[str]) -> float:
    if not keys:
        return 0.0
    matching = sum(1 for key in keys if follows_naming_convention(PurePosixPath(key).name))
    return matching / len(keys)


def choose_canonical(collections: dict[str, list[str]]) -> tuple[str | None, str | None]:
    """Pick the canonical collection and report which tie-break decided it.

    The strictly largest collection wins. On equal counts the collection with
    the higher share of numeric-prefixed, speaker-tagged names wins; if that
    ties too, :data:`COLLECTION_PRECEDENCE` decides.
    """

    populated = {name: keys for name, keys in collections.items() if keys}
    if not populated:
        return None, None

    top = max(len(keys) for keys in populated.values())
    leaders = sorted(name for name, keys in populated.items() if len(keys) == top)
    if len(leaders) == 1:
        return leaders[0], None

    shares = {name: _convention_share(populated[name]) for name in leaders}
    best_share = max(shares.values())
    best = [name for name in leaders if shares[name] == best_share]
    if len(best) == 1:
        return best[0], TIE_BREAK_CONVENTION

    return min(best, key=_precedence), TIE_BREAK_PRECEDENCE


def _is_duplicate(candidate: str, canonical_keys: list[str]) -> bool:
    name = PurePosixPath(candidate).name
    core = normalize_core_title(name)
    number = parse_track_filename(name).track_number
    for other in canonical_keys:
        other_name = PurePosixPath(other).name
        other_core = normalize_core_title(other_name)
        if core and other_core:
            if title_similarity(core, other_core) >= SIMILARITY_THRESHOLD:
                return True
            continue
        other_number = parse_track_filename(other_name).track_number
        if number is not None and number == other_number:
            return True
    return False


def resolve_collections(collections: dict[str, list[str]]) -> DedupResult:
    """Assign main, legacy and duplicate roles to the audio keys of an event."""

    counts = {name: len(keys) for name, keys in collections.items() if keys}
    canonical, tie_break = choose_canonical(collections)
    result = DedupResult(canonical=canonical, collections=counts, tie_break=tie_break)
    if canonical is None:
        return result

    canonical_keys = sorted(collections[canonical])
    result.main.extend(canonical_keys)
    if len(counts) < 2:
        return result

    for name in sorted(counts, key=_precedence):
        if name == canonical:
            continue
        for key in sorted(collections[name]):
            if _is_duplicate(key, canonical_keys):
                result.duplicates.append(key)
            else:
                result.legacy.append(key)
    return result


def legacy_placement(strategy: LegacyStrategy) -> tuple[str, str]:
    """Return ``(category, folder)`` for legacy tracks under ``strategy``."""

    if strategy is LegacyStrategy.MERGE_MAIN:
        return "audio_main", ""
    if strategy is LegacyStrategy.SEPARATE_AUDIO1:
        return "audio_legacy", "audio1"
    return "audio_legacy", "legacy"
