"""Parsing of the spreadsheet export that describes legacy events."""

from __future__ import annotations

import csv
import io
import re
import zipfile
from dataclasses import dataclass, field
from datetime import date
from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse

import pandas as pd

from ..exceptions import ImportFormatError
from ..schemas.migration import Issue
from .classifier import detect_file_type, is_system_file

COL_EVENT_CODE = "eventCode"
COL_TITLE = "eventTitle"
COL_DATES = "dateStart-dateEnd"
COL_TEACHER = "teacherName"
COL_PLACE = "placeTeaching"

# Per collection: (track count column, track names column, download URL column).
COLLECTION_COLUMNS: dict[str, tuple[str, str, str]] = {
    "audio1": ("audio1-tracksNo", "audio1-trackNames", "audio1-Download-URL"),
    "audio2": ("audio2-tracksNo", "audio2-tracksTitles", "audio2-Download-URL"),
}

CSV_EXTENSIONS = frozenset({".csv", ".txt"})
EXCEL_EXTENSIONS = frozenset({".xlsx", ".xls"})

_DATE_RANGE = re.compile(r"^(\d{4}-\d{2}-\d{2})(?:\s+a\s+(\d{4}-\d{2}-\d{2}))?$")
_DIGITS = re.compile(r"(\d+)")


@dataclass(slots=True)
class EventRecord:
    """Typed view of one valid spreadsheet row."""

    event_code: str
    row_number: int
    storage_prefix: str
    title: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    teacher_names: str | None = None
    place: str | None = None
    expected_tracks: dict[str, int] = field(default_factory=dict)
    track_names: dict[str, list[str]] = field(default_factory=dict)

    @property
    def expected_total(self) -> int:
        return sum(self.expected_tracks.values())

    @property
    def teachers(self) -> list[str]:
        if not self.teacher_names:
            return []
        return [name.strip() for name in self.teacher_names.split(" | ") if name.strip()]


@dataclass(slots=True)
class ImportResult:
    events: list[EventRecord]
    issues: list[Issue]
    row_count: int


class RowError(ValueError):
    """A single row cannot become an event record."""


def parse_track_count(value: str) -> int | None:
    """Parse counts such as ``"13 Faixas"``; blank cells mean no declaration."""

    text = value.strip()
    if not text:
        return None
    match = _DIGITS.search(text)
    if match is None:
        raise RowError(f"Unparsable track count '{text}'")
    return int(match.group(1))


def parse_date_range(value: str) -> tuple[date | None, date | None]:
    """Parse ``YYYY-MM-DD`` or ``YYYY-MM-DD a YYYY-MM-DD``."""

    text = value.strip()
    if not text:
        return None, None
    match = _DATE_RANGE.match(text)
    if match is None:
        raise RowError(f"Unparsable date range '{text}'")
    try:
        start = date.fromisoformat(match.group(1))
        end = date.fromisoformat(match.group(2)) if match.group(2) else start
    except ValueError as exc:
        raise RowError(f"Invalid date in '{text}': {exc}") from exc
    if end < start:
        raise RowError(f"Date range '{text}' ends before it starts")
    return start, end


def parse_track_names(value: str) -> list[str]:
    """Split a newline-separated cell, keeping audio file names only."""

    names = []
    for line in value.splitlines():
        name = line.strip()
        if not name or is_system_file(name) or detect_file_type(name) != "audio":
            continue
        names.append(name)
    return names


def derive_storage_prefix(urls: list[str], event_code: str, source_prefix: str) -> str:
    """Use the first two path segments of a download URL, else the default layout."""

    for url in urls:
        if not url:
            continue
        parsed = urlparse(url.strip())
        if parsed.scheme not in ("http", "https", "s3"):
            continue
        parts = [unquote(part) for part in parsed.path.split("/") if part]
        if len(parts) >= 2:
            return "/".join(parts[:2])
    return f"{source_prefix}/{event_code}" if source_prefix else event_code


def _read_csv(content: bytes) -> tuple[pd.DataFrame, dict[int, int]]:
    """Split CSV records so rows with surplus fields can be reported one by one.

    Returns the frame and a mapping of data row index to the number of fields
    found on rows wider than the header. Those rows are truncated in the frame.
    """

    records = [record for record in csv.reader(io.StringIO(content.decode("utf-8-sig"))) if record]
    if not records:
        raise pd.errors.EmptyDataError("No columns to parse from file")

    header, *body = records
    width = len(header)
    rows: list[list[str]] = []
    overflow: dict[int, int] = {}
    for index, record in enumerate(body):
        if len(record) > width:
            overflow[index] = len(record)
            record = record[:width]
        rows.append(record + [""] * (width - len(record)))
    return pd.DataFrame(rows, columns=header, dtype=str), overflow


def _read_frame(content: bytes, filename: str) -> tuple[pd.DataFrame, dict[int, int]]:
    suffix = PurePosixPath(filename.lower()).suffix
    if not content.strip():
        raise ImportFormatError(f"Uploaded file '{filename}' is empty")

    overflow: dict[int, int] = {}
    try:
        if suffix in EXCEL_EXTENSIONS:
            frame = pd.read_excel(io.BytesIO(content), dtype=str)
        elif suffix in CSV_EXTENSIONS or not suffix:
            frame, overflow = _read_csv(content)
        else:
            raise ImportFormatError(f"Unsupported file type '{suffix}' for '{filename}'")
    except ImportFormatError:
        raise
    except (
        csv.Error,
        pd.errors.ParserError,
        pd.errors.EmptyDataError,
        UnicodeDecodeError,
        ValueError,
        zipfile.BadZipFile,
    ) as exc:
        raise ImportFormatError(f"Could not parse '{filename}': {exc}") from exc

    frame = frame.fillna("")
    frame.columns = [str(column).strip() for column in frame.columns]
    if COL_EVENT_CODE not in frame.columns:
        raise ImportFormatError(
            f"Missing required column '{COL_EVENT_CODE}' in '{filename}'"
        )
    return frame, overflow


def _cell(row: dict[str, str], column: str) -> str:
    return str(row.get(column, "") or "").strip()


def _parse_row(row: dict[str, str], row_number: int, source_prefix: str) -> EventRecord:
    event_code = _cell(row, COL_EVENT_CODE)
    if not event_code:
        raise RowError("Missing event code")

    start_date, end_date = parse_date_range(_cell(row, COL_DATES))

    expected: dict[str, int] = {}
    track_names: dict[str, list[str]] = {}
    urls: list[str] = []
    for collection, (count_column, names_column, url_column) in COLLECTION_COLUMNS.items():
        count = parse_track_count(_cell(row, count_column))
        if count is not None:
            expected[collection] = count
        names = parse_track_names(str(row.get(names_column, "") or ""))
        if names:
            track_names[collection] = names
        urls.append(_cell(row, url_column))

    return EventRecord(
        event_code=event_code,
        row_number=row_number,
        storage_prefix=derive_storage_prefix(urls, event_code, source_prefix),
        title=_cell(row, COL_TITLE) or None,
        start_date=start_date,
        end_date=end_date,
        teacher_names=_cell(row, COL_TEACHER) or None,
        place=_cell(row, COL_PLACE) or None,
        expected_tracks=expected,
        track_names=track_names,
    )


def parse_tabular(content: bytes, filename: str, *, source_prefix: str = "mediateca") -> ImportResult:
    """Parse an uploaded export into event records and per-row issues.

    Every data row yields exactly one of the two. A file that cannot be read
    as a table at all raises :class:`ImportFormatError`.
    """

    frame, overflow = _read_frame(content, filename)

    events: list[EventRecord] = []
    issues: list[Issue] = []
    seen: dict[str, int] = {}

    for index, row in enumerate(frame.to_dict(orient="records")):
        row_number = index + 2
        raw_code = _cell(row, COL_EVENT_CODE)
        try:
            if index in overflow:
                raise RowError(f"Expected {len(frame.columns)} fields, saw {overflow[index]}")
            record = _parse_row(row, row_number, source_prefix)
            if record.event_code in seen:
                raise RowError(
                    f"Duplicate event code '{record.event_code}' (first seen on row {seen[record.event_code]})"
                )
        except RowError as exc:
            issues.append(
                Issue(
                    key=f"import:row-{row_number}",
                    severity="warning",
                    category="import",
                    message=f"Row {row_number}: {exc}",
                    event_code=raw_code or None,
                    details={"row": row_number},
                )
            )
            continue
        seen[record.event_code] = row_number
        events.append(record)

    return ImportResult(events=events, issues=issues, row_count=len(frame.index))
