"""Tests for object classification and target key collisions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import pytest

from mediateca_migrator.pipeline.classifier import (
    build_target_key,
    classify_object,
    detect_collection,
    detect_file_type,
    extension_of,
    flag_target_collisions,
    is_system_file,
    target_folder,
)

PREFIX = "mediateca/EV-001"


@dataclass
class Draft:
    object_key: str
    suggested_action: str = "include"
    conflicts: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@pytest.mark.parametrize(
    ("filename", "expected"),
    [
        ("talk.MP3", "audio"),
        ("clip.mov", "video"),
        ("notes.docx", "document"),
        ("cover.jpeg", "image"),
        ("bundle.zip", "archive"),
        ("README", "other"),
        ("data.xyz", "other"),
    ],
)
def test_detect_file_type(filename: str, expected: str) -> None:
    """File types come from the lower-cased extension."""
    assert detect_file_type(filename) == expected


def test_extension_of_dotfiles_and_bare_names() -> None:
    """Leading dots do not start an extension."""
    assert extension_of(".hidden") == ""
    assert extension_of("archive.tar.GZ") == "gz"
    assert extension_of("README") == ""


@pytest.mark.parametrize(
    "key",
    [
        "mediateca/EV-001/.DS_Store",
        "mediateca/EV-001/Thumbs.db",
        "mediateca/EV-001/__MACOSX/001 Talk.mp3",
        "mediateca/EV-001/._001 Talk.mp3",
    ],
)
def test_system_files(key: str) -> None:
    """OS metadata files and folders are system files."""
    assert is_system_file(key)


def test_detect_collection_markers() -> None:
    """Folder names select the audio collection."""
    assert detect_collection(["audio 1"]) == "audio1"
    assert detect_collection(["Audio_2".lower()]) == "audio2"
    assert detect_collection(["old-legacy-files"]) == "legacy"
    assert detect_collection(["misc"]) == "main"


class TestClassifyObject:
    """Tests for single-object classification."""

    def test_main_audio(self) -> None:
        """Root audio is main audio suggested for inclusion."""
        result = classify_object(f"{PREFIX}/001 JKR - Talk [ENG].mp3", event_prefix=PREFIX)

        assert result.file_type == "audio"
        assert result.category == "audio_main"
        assert result.collection == "main"
        assert result.language == "en"
        assert result.suggested_action == "include"
        assert result.mime_type == "audio/mpeg"
        assert result.source_directory == PREFIX

    def test_translation_in_audio2(self) -> None:
        """Translation markers win over the collection folder."""
        result = classify_object(f"{PREFIX}/audio2/001 TRAD - Talk.mp3", event_prefix=PREFIX)

        assert result.category == "audio_translation"
        assert result.collection == "audio2"

    def test_legacy_folder_audio(self) -> None:
        """Audio under a legacy folder is legacy audio."""
        result = classify_object(f"{PREFIX}/Legacy/001 Talk.mp3", event_prefix=PREFIX)

        assert result.category == "audio_legacy"
        assert result.collection == "legacy"

    def test_transcripts_are_discovered(self) -> None:
        """Documents in transcript folders become transcripts."""
        key = f"{PREFIX}/Transcricoes/talk [POR].pdf"

        discovered = classify_object(key, event_prefix=PREFIX)
        plain = classify_object(key, event_prefix=PREFIX, discover_transcripts=False)

        assert discovered.category == "transcript"
        assert discovered.language == "pt"
        assert discovered.suggested_action == "include"
        assert plain.category == "document"
        assert plain.suggested_action == "review"

    def test_unconfident_categories_need_review(self) -> None:
        """Images, archives and unknown files are suggested for review."""
        for name, category in (("cover.jpg", "image"), ("all.zip", "archive"), ("x.bin", "other")):
            result = classify_object(f"{PREFIX}/{name}", event_prefix=PREFIX)
            assert result.category == category
            assert result.suggested_action == "review"

    def test_system_files_are_ignored(self) -> None:
        """System files are suggested ignore with no collection."""
        result = classify_object(f"{PREFIX}/__MACOSX/001 Talk.mp3", event_prefix=PREFIX)

        assert result.is_system_file is True
        assert result.suggested_action == "ignore"
        assert result.category == "other"
        assert result.collection is None

    def test_classification_is_deterministic(self) -> None:
        """Classifying the same key twice gives identical results."""
        key = f"{PREFIX}/audio1/002 PWR - Session [ENG].mp3"
        assert classify_object(key, event_prefix=PREFIX) == classify_object(
            key, event_prefix=PREFIX
        )


def test_build_target_key_collapses_empty_folder() -> None:
    """An empty folder segment does not produce a double slash."""
    pattern = "events/{event_code}/{folder}/{filename}"

    assert (
        build_target_key(pattern, event_code="EV-001", folder="", filename="001.mp3")
        == "events/EV-001/001.mp3"
    )
    assert (
        build_target_key(pattern, event_code="EV-001", folder="audio2", filename="001.mp3")
        == "events/EV-001/audio2/001.mp3"
    )


def test_target_folder_defaults_to_other() -> None:
    """Unknown categories land in the other folder."""
    assert target_folder("audio_main") == ""
    assert target_folder("transcript") == "transcripts"
    assert target_folder("unknown") == "other"


def test_flag_target_collisions() -> None:
    """Every colliding non-ignored entry is flagged and sent to review."""
    first = Draft("a/001.mp3", metadata={"target_key": "events/EV/001.mp3"})
    second = Draft("b/001.mp3", metadata={"target_key": "events/EV/001.mp3"})
    ignored = Draft("c/001.mp3", suggested_action="ignore", metadata={"target_key": "events/EV/001.mp3"})
    alone = Draft("a/002.mp3", metadata={"target_key": "events/EV/002.mp3"})

    flagged = flag_target_collisions([first, second, ignored, alone])

    assert flagged == 2
    assert first.suggested_action == second.suggested_action == "review"
    assert first.conflicts == ["Target key collision with b/001.mp3"]
    assert second.conflicts == ["Target key collision with a/001.mp3"]
    assert ignored.suggested_action == "ignore"
    assert ignored.conflicts == []
    assert alone.suggested_action == "include"
