"""
Test configuration and shared fixtures.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from hkscribe.config import TranscriptionSettings
from hkscribe.extract.probe import MediaFile
from hkscribe.transcribe.client import Payload, TranscriptionBackend, UploadHandle, UploadState
from hkscribe.transcribe.worker import SegmentWorker


class FakeBackend(TranscriptionBackend):
    """Scripted stand-in for the remote service.

    Each stream call consumes the next script. A script is an exception
    (raised on open) or a list of steps: ``str`` fragments are yielded,
    numbers are sleeps, callables are invoked, exceptions are raised.
    """

    def __init__(
        self,
        scripts: list[Any] | None = None,
        upload_state: UploadState = UploadState.READY,
        poll_states: list[UploadState] | None = None,
    ) -> None:
        self.scripts = list(scripts or [])
        self.upload_state = upload_state
        self.poll_states = list(poll_states or [])
        self.stream_calls: list[Payload] = []
        self.prompts: list[str] = []
        self.uploads: list[bytes] = []
        self.polls = 0

    @property
    def remote_calls(self) -> int:
        return len(self.stream_calls) + len(self.uploads) + self.polls

    async def stream_transcribe(
        self,
        payload: Payload,
        prompt: str,
        model_id: str,
        system_instruction: str | None = None,
    ):
        self.stream_calls.append(payload)
        self.prompts.append(prompt)
        script = self.scripts.pop(0) if self.scripts else []
        if isinstance(script, BaseException):
            raise script
        for step in script:
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, (int, float)):
                await asyncio.sleep(step)
            elif callable(step):
                step()
            else:
                await asyncio.sleep(0)
                yield step

    async def upload(self, data: bytes, mime_type: str) -> UploadHandle:
        self.uploads.append(data)
        return UploadHandle(
            name=f"files/{len(self.uploads)}",
            uri=f"https://example.invalid/files/{len(self.uploads)}",
            mime_type=mime_type,
            state=self.upload_state,
        )

    async def poll_status(self, handle: UploadHandle) -> UploadState:
        self.polls += 1
        if self.poll_states:
            return self.poll_states.pop(0)
        return UploadState.READY


@pytest.fixture
def fake_backend() -> type[FakeBackend]:
    """The scripted backend class, called as ``fake_backend(scripts, ...)``."""
    return FakeBackend


@pytest.fixture
def make_media(tmp_path: Path) -> Callable[..., MediaFile]:
    """Factory writing a fake media file and returning its MediaFile."""

    def _make(data: bytes = b"", name: str = "talk.mp3") -> MediaFile:
        path = tmp_path / name
        path.write_bytes(data)
        return MediaFile.from_path(path)

    return _make


@pytest.fixture
def fast_worker() -> Callable[..., SegmentWorker]:
    """Factory for a worker with no real waiting."""

    def _make(backend: TranscriptionBackend, **overrides: Any) -> SegmentWorker:
        options = {
            "backoff_seconds": 0,
            "poll_interval_seconds": 0,
            "watchdog_seconds": 1.0,
        }
        options.update(overrides)
        return SegmentWorker(backend, **options)

    return _make


@pytest.fixture
def settings() -> TranscriptionSettings:
    return TranscriptionSettings(
        model_id="gemini-2.5-flash",
        identify_speakers=True,
        speaker_names=("陳生", ""),
        timestamps_enabled=True,
    )


@pytest.fixture
def sample_transcript() -> str:
    return (
        "[00:01] Speaker 1: 大家好。\n"
        "[00:05] Speaker 2: 今日天氣好好。\n"
        "我哋出去行下啦\n"
        "\n"
        "[01:10] 好呀\n"
    )
