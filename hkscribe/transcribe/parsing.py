"""
hkscribe.transcribe.parsing - Transcript text to structured rows.

Parsing is pure and re-run on the full text whenever rows are needed, so
the table view always matches what has been accumulated.
"""

from __future__ import annotations

import re

from pydantic import BaseModel

NO_SPEAKER = "-"

_TIME = r"\[(\d{1,2}:\d{2}(?::\d{2})?)\]"
SPEAKER_LINE = re.compile(rf"^{_TIME}\s*([^:]+?)\s*:\s*(.+)$")
TIME_ONLY_LINE = re.compile(rf"^{_TIME}\s*(.+)$")


class TranscriptRow(BaseModel):
    """One timestamped utterance."""

    time: str
    speaker: str
    content: str


def parse_transcript(text: str) -> list[TranscriptRow]:
    """Parse ``[time] speaker: content`` lines into rows.

    Lines without a speaker get ``"-"``; untimed lines continue the previous
    row and are dropped if no row exists yet. Blank lines are ignored.

    Args:
        text: Raw transcript text

    Returns:
        Rows in text order
    """
    rows: list[TranscriptRow] = []

    for line in text.split("\n"):
        trimmed = line.strip()
        if not trimmed:
            continue

        match = SPEAKER_LINE.match(trimmed)
        if match:
            rows.append(
                TranscriptRow(
                    time=match.group(1),
                    speaker=match.group(2).strip(),
                    content=match.group(3).strip(),
                )
            )
            continue

        match = TIME_ONLY_LINE.match(trimmed)
        if match:
            rows.append(
                TranscriptRow(time=match.group(1), speaker=NO_SPEAKER, content=match.group(2).strip())
            )
        elif rows:
            rows[-1].content += " " + trimmed

    return rows


def render_transcript(rows: list[TranscriptRow]) -> str:
    """Render rows back to ``[time] speaker: content`` lines."""
    return "\n".join(f"[{row.time}] {row.speaker}: {row.content}" for row in rows)
