"""
hkscribe.export.csv - Spreadsheet-friendly CSV export of transcript rows.

The output starts with a UTF-8 byte-order mark so Excel detects the
encoding, quotes every field, and joins rows with bare newlines.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path

from hkscribe.io import write_text
from hkscribe.transcribe.parsing import TranscriptRow

BOM = "\ufeff"
HEADER = "time,speaker,content"


def _quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def rows_to_csv(rows: list[TranscriptRow]) -> str:
    """Render rows as CSV text, BOM and header line included."""
    body = "\n".join(
        ",".join((_quote(row.time), _quote(row.speaker), _quote(row.content))) for row in rows
    )
    return f"{BOM}{HEADER}\n{body}"


def default_csv_name(today: date | None = None) -> str:
    """``transcript_YYYY-MM-DD.csv`` for the given (or current) day."""
    return f"transcript_{(today or date.today()).isoformat()}.csv"


def write_csv(path: Path, rows: list[TranscriptRow]) -> None:
    """Write rows to ``path`` as UTF-8 CSV."""
    write_text(path, rows_to_csv(rows))
