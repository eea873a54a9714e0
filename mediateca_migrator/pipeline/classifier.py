"""Classification of discovered objects into file types, categories and targets.

Everything here is a pure function of the object key (file name, extension and
folder markers) plus the policy knobs passed in, so classifying the same
listing twice yields identical results.
"""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Protocol

from .tracks import detect_language, is_translation

FILE_TYPE_EXTENSIONS: dict[str, frozenset[str]] = {
    "audio": frozenset(
        {"mp3", "wav", "m4a", "flac", "ogg", "aac", "wma", "opus", "alac", "ape", "aiff", "au"}
    ),
    "video": frozenset(
        {"mp4", "mov", "avi", "mkv", "webm", "flv", "wmv", "m4v", "mpg", "mpeg", "3gp", "ogv", "vob"}
    ),
    "document": frozenset(
        {"pdf", "doc", "docx", "txt", "rtf", "odt", "pages", "md", "tex", "epub", "mobi"}
    ),
    "image": frozenset(
        {"jpg", "jpeg", "png", "gif", "svg", "webp", "bmp", "tiff", "ico", "heic", "heif", "psd"}
    ),
    "archive": frozenset(
        {"zip", "rar", "7z", "tar", "gz", "bz2", "xz", "tgz", "tbz", "cab", "iso", "dmg"}
    ),
}

MIME_TYPES: dict[str, str] = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "m4a": "audio/mp4",
    "flac": "audio/flac",
    "ogg": "audio/ogg",
    "aac": "audio/aac",
    "mp4": "video/mp4",
    "mov": "video/quicktime",
    "avi": "video/x-msvideo",
    "mkv": "video/x-matroska",
    "webm": "video/webm",
    "pdf": "application/pdf",
    "doc": "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "txt": "text/plain",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
    "gif": "image/gif",
    "svg": "image/svg+xml",
    "zip": "application/zip",
    "rar": "application/x-rar-compressed",
    "7z": "application/x-7z-compressed",
}
DEFAULT_MIME_TYPE = "application/octet-stream"

SYSTEM_FILES = frozenset({".ds_store", "thumbs.db", "desktop.ini"})
SYSTEM_FOLDERS = frozenset({"__macosx"})

# Target sub-folder per category; the empty string is the event root.
CATEGORY_FOLDERS: dict[str, str] = {
    "audio_main": "",
    "audio_translation": "audio2",
    "audio_legacy": "legacy",
    "video": "video",
    "transcript": "transcripts",
    "document": "documents",
    "image": "images",
    "archive": "archives",
    "other": "other",
}
CATEGORIES = tuple(CATEGORY_FOLDERS)
CONFIDENT_CATEGORIES = frozenset(
    {"audio_main", "audio_translation", "audio_legacy", "video", "transcript"}
)

_COLLECTION_MARKERS = (
    ("audio1", re.compile(r"^audio[\s_\-]?1$")),
    ("audio2", re.compile(r"^audio[\s_\-]?2$")),
    ("legacy", re.compile(r"legacy")),
)
_MULTI_SLASH = re.compile(r"/{2,}")


@dataclass(slots=True, frozen=True)
class Classification:
    """Classifier output for one object key."""

    object_key: str
    filename: str
    source_directory: str
    extension: str
    file_type: str
    category: str
    mime_type: str
    suggested_action: str
    collection: str | None
    language: str | None
    is_system_file: bool


def extension_of(filename: str) -> str:
    name = PurePosixPath(filename).name
    if "." not in name.lstrip("."):
        return ""
    return name.rsplit(".", 1)[1].lower()


def detect_file_type(filename: str) -> str:
    extension = extension_of(filename)
    for file_type, extensions in FILE_TYPE_EXTENSIONS.items():
        if extension in extensions:
            return file_type
    return "other"


def is_system_file(object_key: str) -> bool:
    path = PurePosixPath(object_key)
    name = path.name.lower()
    if name in SYSTEM_FILES or name.startswith("."):
        return True
    return any(part.lower() in SYSTEM_FOLDERS for part in path.parts[:-1])


def _relative_folders(object_key: str, event_prefix: str) -> list[str]:
    prefix = event_prefix.strip("/")
    relative = object_key[len(prefix) :] if prefix and object_key.startswith(prefix) else object_key
    parts = [part for part in relative.strip("/").split("/") if part]
    return [part.lower() for part in parts[:-1]]


def detect_collection(folders: Iterable[str]) -> str:
    """Return the audio collection marker found in the folder path."""

    for folder in folders:
        for name, pattern in _COLLECTION_MARKERS:
            if pattern.search(folder):
                return name
    return "main"


def classify_object(
    object_key: str,
    *,
    event_prefix: str,
    discover_transcripts: bool = True,
) -> Classification:
    """Classify one object discovered under an event's storage prefix."""

    path = PurePosixPath(object_key)
    filename = path.name
    extension = extension_of(filename)
    folders = _relative_folders(object_key, event_prefix)
    source_directory = str(path.parent) if str(path.parent) != "." else ""

    if is_system_file(object_key):
        return Classification(
            object_key=object_key,
            filename=filename,
            source_directory=source_directory,
            extension=extension,
            file_type="other",
            category="other",
            mime_type=DEFAULT_MIME_TYPE,
            suggested_action="ignore",
            collection=None,
            language=None,
            is_system_file=True,
        )

    file_type = detect_file_type(filename)
    collection: str | None = None
    language = None

    if file_type == "audio":
        collection = detect_collection(folders)
        language = detect_language(filename)
        if is_translation(filename):
            category = "audio_translation"
        elif collection == "legacy":
            category = "audio_legacy"
        else:
            category = "audio_main"
    elif file_type == "document":
        in_transcripts = any("transcri" in folder for folder in folders) or (
            "transcri" in filename.lower()
        )
        category = "transcript" if discover_transcripts and in_transcripts else "document"
        if category == "transcript":
            language = detect_language(filename)
    elif file_type in ("video", "image", "archive"):
        category = file_type
    else:
        category = "other"

    suggested_action = "include" if category in CONFIDENT_CATEGORIES else "review"

    return Classification(
        object_key=object_key,
        filename=filename,
        source_directory=source_directory,
        extension=extension,
        file_type=file_type,
        category=category,
        mime_type=MIME_TYPES.get(extension, DEFAULT_MIME_TYPE),
        suggested_action=suggested_action,
        collection=collection,
        language=language,
        is_system_file=False,
    )


def build_target_key(pattern: str, *, event_code: str, folder: str, filename: str) -> str:
    """Render the folder pattern, collapsing empty path segments."""

    rendered = pattern.format(event_code=event_code, folder=folder, filename=filename)
    return _MULTI_SLASH.sub("/", rendered).strip("/")


def target_folder(category: str) -> str:
    return CATEGORY_FOLDERS.get(category, CATEGORY_FOLDERS["other"])


class CatalogDraft(Protocol):
    """Mutable catalog entry as seen by the collision check."""

    object_key: str
    suggested_action: str
    conflicts: list[str]
    metadata: dict


def flag_target_collisions(entries: Iterable[CatalogDraft]) -> int:
    """Flag every non-ignored entry sharing a target key with another one.

    Each colliding entry is suggested ``review`` and receives one conflict per
    other entry in its group. Returns the number of flagged entries.
    """

    groups: dict[str, list[CatalogDraft]] = defaultdict(list)
    for entry in entries:
        target = entry.metadata.get("target_key")
        if entry.suggested_action == "ignore" or not target:
            continue
        groups[str(target)].append(entry)

    flagged = 0
    for members in groups.values():
        if len(members) < 2:
            continue
        for entry in members:
            entry.suggested_action = "review"
            for other in members:
                if other is entry:
                    continue
                message = f"Target key collision with {other.object_key}"
                if message not in entry.conflicts:
                    entry.conflicts.append(message)
            flagged += 1
    return flagged
