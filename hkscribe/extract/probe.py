"""
hkscribe.extract.probe - Media file handle and FFprobe duration probe.

The probe never raises: an undetectable duration is reported as 0.0 and
callers treat that as "unknown".
"""

from __future__ import annotations

import json
import math
import mimetypes
import shutil
import subprocess
from pathlib import Path

from pydantic import BaseModel, ConfigDict

from hkscribe.exceptions import DependencyError
from hkscribe.logging import logger

PROBE_TIMEOUT_SECONDS = 4.0


class MediaFile(BaseModel):
    """An audio or video file selected for transcription."""

    model_config = ConfigDict(frozen=True)

    path: Path
    size: int
    mime_type: str

    @classmethod
    def from_path(cls, path: Path) -> MediaFile:
        """Stat a file and guess its MIME type from the extension."""
        mime_type, _ = mimetypes.guess_type(path.name)
        return cls(
            path=path,
            size=path.stat().st_size,
            mime_type=mime_type or "application/octet-stream",
        )

    @property
    def is_media(self) -> bool:
        return self.mime_type.startswith(("audio/", "video/"))

    @property
    def size_mb(self) -> float:
        return self.size / (1024 * 1024)

    def read_range(self, start: int, end: int) -> bytes:
        """Read bytes ``[start, end)`` from the file."""
        with open(self.path, "rb") as f:
            f.seek(start)
            return f.read(max(end - start, 0))


def probe_duration_seconds(path: Path, timeout: float = PROBE_TIMEOUT_SECONDS) -> float:
    """Probe media duration in seconds using ffprobe.

    Args:
        path: Media file to probe
        timeout: Seconds to wait for ffprobe before giving up

    Returns:
        Duration in seconds, or 0.0 when it cannot be determined
    """
    cmd = [
        "ffprobe",
        "-v",
        "quiet",
        "-print_format",
        "json",
        "-show_format",
        str(path),
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug("Duration probe failed for %s: %s", path, e)
        return 0.0

    if result.returncode != 0:
        logger.debug("ffprobe exited with %s for %s", result.returncode, path)
        return 0.0

    try:
        data = json.loads(result.stdout or "{}")
        duration = float(data.get("format", {}).get("duration", 0))
    except (ValueError, TypeError, AttributeError):
        return 0.0

    if math.isnan(duration) or math.isinf(duration) or duration < 0:
        return 0.0
    return duration


def require_ffprobe() -> str:
    """Return the ffprobe path or raise DependencyError."""
    ffprobe_path = shutil.which("ffprobe")
    if not ffprobe_path:
        raise DependencyError(
            "ffprobe",
            "FFprobe not found in PATH",
            "Install with: brew install ffmpeg (macOS) or apt install ffmpeg (Linux)",
        )
    return ffprobe_path
