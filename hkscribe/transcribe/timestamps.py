"""
hkscribe.transcribe.timestamps - Segment-relative to absolute timestamps.

The service timestamps each segment from zero. Markers such as ``[01:05]``
are shifted by the segment's offset so the merged transcript uses file time.
"""

from __future__ import annotations

import re

TIMESTAMP_MARKER = re.compile(r"\[(?:(\d{1,2}):)?(\d{1,2}):(\d{2})\]")


def format_timecode(seconds: int) -> str:
    """Render seconds as MM:SS below one hour, else HH:MM:SS."""
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60
    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def timecode_to_seconds(timecode: str) -> int:
    """Parse ``M:SS``, ``MM:SS`` or ``H:MM:SS`` into whole seconds.

    Raises:
        ValueError: If the string is not a timecode
    """
    parts = timecode.strip().strip("[]").split(":")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid timecode: {timecode!r}")
    total = 0
    for part in parts:
        total = total * 60 + int(part)
    return total


def adjust_timestamps(text: str, offset_seconds: int) -> str:
    """Shift every bracketed timestamp in ``text`` by ``offset_seconds``.

    Only the markers change; speaker labels and content are untouched.
    An offset of zero returns the text exactly as given.
    """
    if offset_seconds == 0:
        return text
    return shift_markers(text, offset_seconds)


def shift_markers(text: str, offset_seconds: int) -> str:
    """Rewrite every marker in ``text``; markers are kept verbatim for a zero offset."""

    def shift(match: re.Match[str]) -> str:
        if offset_seconds == 0:
            return match.group(0)
        hours, minutes, seconds = match.groups()
        total = int(hours or 0) * 3600 + int(minutes) * 60 + int(seconds) + offset_seconds
        return f"[{format_timecode(total)}]"

    return TIMESTAMP_MARKER.sub(shift, text)
