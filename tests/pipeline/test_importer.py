"""Tests for parsing the spreadsheet export into event records."""

from __future__ import annotations

import io
from datetime import date
from typing import Any

import pandas as pd
import pytest

from mediateca_migrator.exceptions import ImportFormatError
from mediateca_migrator.pipeline.importer import (
    RowError,
    derive_storage_prefix,
    parse_date_range,
    parse_tabular,
    parse_track_count,
    parse_track_names,
)


def _row(**overrides: Any) -> dict[str, Any]:
    row = {
        "eventCode": "EV-001",
        "eventTitle": "Retiro de primavera",
        "dateStart-dateEnd": "2019-05-01 a 2019-05-03",
        "teacherName": "Teacher A | Teacher B",
        "placeTeaching": "Lisboa",
        "audio1-tracksNo": "3 Faixas",
        "audio1-trackNames": "001 JKR - Opening.mp3\n002 JKR - Session.mp3\n.DS_Store\ncover.jpg",
        "audio1-Download-URL": "",
        "audio2-tracksNo": "",
        "audio2-tracksTitles": "",
        "audio2-Download-URL": "",
    }
    row.update(overrides)
    return row


def _csv(rows: list[dict[str, Any]]) -> bytes:
    return pd.DataFrame(rows).to_csv(index=False).encode("utf-8")


class TestFieldParsers:
    """Tests for the per-cell parsers."""

    def test_track_count_reads_leading_digits(self) -> None:
        """Counts such as '13 Faixas' yield the number."""
        assert parse_track_count("13 Faixas") == 13
        assert parse_track_count(" 7 ") == 7

    def test_track_count_blank_means_undeclared(self) -> None:
        """A blank cell declares nothing."""
        assert parse_track_count("   ") is None

    def test_track_count_without_digits_is_rejected(self) -> None:
        """Text without digits cannot be a count."""
        with pytest.raises(RowError):
            parse_track_count("many")

    def test_single_date_is_start_and_end(self) -> None:
        """A single date spans one day."""
        assert parse_date_range("2020-01-04") == (date(2020, 1, 4), date(2020, 1, 4))

    def test_date_range_parsed(self) -> None:
        """The 'a' separator splits start and end."""
        assert parse_date_range("2019-05-01 a 2019-05-03") == (
            date(2019, 5, 1),
            date(2019, 5, 3),
        )

    def test_date_range_ending_before_start_is_rejected(self) -> None:
        """End dates before the start date are invalid."""
        with pytest.raises(RowError):
            parse_date_range("2019-05-03 a 2019-05-01")

    @pytest.mark.parametrize("value", ["05/01/2019", "2019-13-01", "soon"])
    def test_malformed_dates_are_rejected(self, value: str) -> None:
        """Anything outside the ISO layout is a row error."""
        with pytest.raises(RowError):
            parse_date_range(value)

    def test_track_names_keep_audio_only(self) -> None:
        """System files and non-audio names are dropped from the list."""
        names = parse_track_names("001 Intro.mp3\n\nThumbs.db\nnotes.pdf\n002 Talk.wav\n")
        assert names == ["001 Intro.mp3", "002 Talk.wav"]

    def test_storage_prefix_from_download_url(self) -> None:
        """The first two URL path segments locate the event."""
        prefix = derive_storage_prefix(
            ["", "https://cdn.example.org/mediateca/EV%20001/audio1/all.zip"],
            "EV-001",
            "mediateca",
        )
        assert prefix == "mediateca/EV 001"

    def test_storage_prefix_defaults_to_source_layout(self) -> None:
        """Without usable URLs the default prefix is used."""
        assert derive_storage_prefix(["not a url"], "EV-001", "mediateca") == "mediateca/EV-001"
        assert derive_storage_prefix([], "EV-001", "") == "EV-001"


class TestParseTabular:
    """Tests for whole-file parsing."""

    def test_valid_row_becomes_event(self) -> None:
        """Every field of a valid row is carried into the record."""
        result = parse_tabular(_csv([_row()]), "export.csv")

        assert result.row_count == 1
        assert result.issues == []
        event = result.events[0]
        assert event.event_code == "EV-001"
        assert event.title == "Retiro de primavera"
        assert event.start_date == date(2019, 5, 1)
        assert event.end_date == date(2019, 5, 3)
        assert event.teachers == ["Teacher A", "Teacher B"]
        assert event.expected_tracks == {"audio1": 3}
        assert event.expected_total == 3
        assert event.track_names == {
            "audio1": ["001 JKR - Opening.mp3", "002 JKR - Session.mp3"]
        }
        assert event.storage_prefix == "mediateca/EV-001"
        assert event.row_number == 2

    def test_each_row_yields_event_or_issue(self) -> None:
        """Bad rows become import issues and never abort the file."""
        rows = [
            _row(eventCode="EV-001"),
            _row(eventCode="EV-002", **{"dateStart-dateEnd": "yesterday"}),
            _row(eventCode=""),
            _row(eventCode="EV-001"),
            _row(eventCode="EV-003", **{"audio2-tracksNo": "lots"}),
            _row(eventCode="EV-004"),
        ]
        result = parse_tabular(_csv(rows), "export.csv")

        assert [event.event_code for event in result.events] == ["EV-001", "EV-004"]
        assert len(result.events) + len(result.issues) == result.row_count == 6
        assert {issue.category for issue in result.issues} == {"import"}
        assert {issue.severity for issue in result.issues} == {"warning"}
        keys = [issue.key for issue in result.issues]
        assert keys == ["import:row-3", "import:row-4", "import:row-5", "import:row-6"]
        duplicate = result.issues[2]
        assert "Duplicate event code 'EV-001'" in duplicate.message
        assert duplicate.details == {"row": 5}

    def test_row_with_extra_fields_becomes_issue(self) -> None:
        """A row wider than the header is reported without rejecting the file."""
        content = b"eventCode,eventTitle\nE1,One\nE2,Two,EXTRA,FIELDS\nE3,Three\n"

        result = parse_tabular(content, "x.csv")

        assert [event.event_code for event in result.events] == ["E1", "E3"]
        assert result.row_count == 3
        assert len(result.issues) == 1
        issue = result.issues[0]
        assert issue.key == "import:row-3"
        assert issue.event_code == "E2"
        assert "Expected 2 fields, saw 4" in issue.message
        assert result.events[1].row_number == 4

    def test_short_rows_and_blank_lines_are_tolerated(self) -> None:
        """Missing trailing cells read as blank and empty lines are skipped."""
        content = b"\xef\xbb\xbfeventCode,eventTitle\nE1\n\nE2,Two\n"

        result = parse_tabular(content, "export.csv")

        assert [event.event_code for event in result.events] == ["E1", "E2"]
        assert result.events[0].title is None
        assert result.issues == []

    def test_excel_exports_are_supported(self) -> None:
        """Spreadsheets are read through the same row parser."""
        buffer = io.BytesIO()
        pd.DataFrame([_row(), _row(eventCode="EV-002")]).to_excel(buffer, index=False)

        result = parse_tabular(buffer.getvalue(), "export.xlsx")

        assert [event.event_code for event in result.events] == ["EV-001", "EV-002"]

    def test_empty_upload_is_rejected(self) -> None:
        """An empty body cannot be parsed."""
        with pytest.raises(ImportFormatError, match="empty"):
            parse_tabular(b"  \n", "export.csv")

    def test_missing_event_code_column_is_rejected(self) -> None:
        """The event code column is mandatory."""
        content = _csv([{"eventTitle": "No code"}])
        with pytest.raises(ImportFormatError, match="eventCode"):
            parse_tabular(content, "export.csv")

    def test_unsupported_extension_is_rejected(self) -> None:
        """Only CSV and Excel exports are accepted."""
        with pytest.raises(ImportFormatError, match="Unsupported file type"):
            parse_tabular(b"%PDF-1.4", "export.pdf")
