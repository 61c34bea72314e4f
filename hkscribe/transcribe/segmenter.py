"""
hkscribe.transcribe.segmenter - Byte-range segmentation of long media.

Splits a file into consecutive byte ranges sized from a constant-bitrate
estimate. Offsets assume each range covers exactly the nominal chunk
duration; drift inside a range caused by variable bitrate is not corrected.
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from hkscribe.extract.probe import MediaFile, probe_duration_seconds
from hkscribe.io import write_bytes

FALLBACK_CHUNK_BYTES = 2 * 1024 * 1024
MIN_CHUNK_BYTES = 500 * 1024


class Segment(BaseModel):
    """One contiguous byte slice of a media file, transcribed as a unit."""

    model_config = ConfigDict(frozen=True)

    index: int
    start: int
    end: int
    offset_seconds: int
    sequence_total: int
    media: MediaFile

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def name(self) -> str:
        """Part file name, e.g. ``talk_part2.mp3``."""
        path = self.media.path
        return f"{path.stem}_part{self.index + 1}{path.suffix}"

    def read(self) -> bytes:
        return self.media.read_range(self.start, self.end)


def whole_file_segment(media: MediaFile) -> Segment:
    """A single segment spanning the whole file with no offset."""
    return Segment(
        index=0,
        start=0,
        end=media.size,
        offset_seconds=0,
        sequence_total=1,
        media=media,
    )


def compute_chunk_size(size: int, duration_seconds: float, chunk_duration_minutes: float) -> int:
    """Estimate the byte length of one chunk.

    Args:
        size: File size in bytes
        duration_seconds: Probed duration, 0 when unknown
        chunk_duration_minutes: Nominal chunk length

    Returns:
        Chunk size in bytes, never below MIN_CHUNK_BYTES
    """
    if duration_seconds > 0:
        target_seconds = chunk_duration_minutes * 60
        chunk_size = int(size * (target_seconds / duration_seconds))
    else:
        chunk_size = FALLBACK_CHUNK_BYTES
    return max(chunk_size, MIN_CHUNK_BYTES)


def plan_segments(
    media: MediaFile,
    chunk_duration_minutes: float,
    duration_seconds: float | None = None,
    prober: Callable[[Path], float] = probe_duration_seconds,
) -> list[Segment]:
    """Plan the ordered segments for a file.

    Args:
        media: File to split
        chunk_duration_minutes: Nominal duration of each segment
        duration_seconds: Already-probed duration; probed with ``prober`` if None
        prober: Duration probe, returns 0 when the duration is unknown

    Returns:
        Segments with contiguous indices; empty for a zero-byte file
    """
    if duration_seconds is None:
        duration_seconds = prober(media.path)

    if duration_seconds > 0 and chunk_duration_minutes * 60 >= duration_seconds:
        return [whole_file_segment(media)] if media.size > 0 else []

    chunk_size = compute_chunk_size(media.size, duration_seconds, chunk_duration_minutes)

    ranges: list[tuple[int, int]] = []
    start = 0
    while start < media.size:
        end = min(start + chunk_size, media.size)
        ranges.append((start, end))
        start = end

    offset_step = int(chunk_duration_minutes * 60)
    return [
        Segment(
            index=i,
            start=start,
            end=end,
            offset_seconds=i * offset_step,
            sequence_total=len(ranges),
            media=media,
        )
        for i, (start, end) in enumerate(ranges)
    ]


def split_to_directory(
    media: MediaFile,
    chunk_duration_minutes: float,
    output_dir: Path,
    duration_seconds: float | None = None,
) -> list[Path]:
    """Write each planned segment to ``output_dir`` as a standalone part file."""
    paths = []
    for segment in plan_segments(media, chunk_duration_minutes, duration_seconds):
        part_path = output_dir / segment.name
        write_bytes(part_path, segment.read())
        paths.append(part_path)
    return paths
