"""
hkscribe.transcribe.engine - Job orchestration for one media file.

Probes the file, enforces the free allowance, decides whether to split,
and runs segments strictly one after another. All mutable run state lives
on a JobContext owned by the job; callers observe it through ``on_update``
and receive a JobResult snapshot at the end.
"""

from __future__ import annotations

import asyncio
import re
from collections.abc import Callable
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from hkscribe.config import QuotaPolicy, TranscriptionSettings
from hkscribe.exceptions import ConfigurationError, QuotaExceeded, UserAborted
from hkscribe.extract.probe import MediaFile, probe_duration_seconds
from hkscribe.logging import logger
from hkscribe.transcribe.client import TranscriptionBackend
from hkscribe.transcribe.parsing import TranscriptRow, parse_transcript
from hkscribe.transcribe.segmenter import Segment, plan_segments, whole_file_segment
from hkscribe.transcribe.timestamps import adjust_timestamps
from hkscribe.transcribe.worker import CancelSignal, SegmentOutcome, SegmentResult, SegmentWorker
from hkscribe.utils import format_bytes

CHUNK_DURATION_MINUTES = 2
SPLIT_DURATION_MINUTES = 2
SPLIT_SIZE_BYTES = 25 * 1024 * 1024
QUOTA_SIZE_FALLBACK_BYTES = 10 * 1024 * 1024
PACING_DELAY_SECONDS = 1.0

QUOTA_NOTICE = (
    "\n\n[Free plan limit reached: transcription stopped. "
    "Activate a license to unlock the full length.]\n"
)

# Status codes quoted in messages of errors that carry none, e.g. "(403)"
STATUS_IN_TEXT = re.compile(r"(?<!\d)(403|429)(?!\d)")


class JobState(str, Enum):
    IDLE = "idle"
    SPLITTING = "splitting"
    TRANSCRIBING = "transcribing"
    RETRYING = "retrying"
    QUOTA_HALTED = "quota_halted"
    ABORTED = "aborted"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset(
    {JobState.QUOTA_HALTED, JobState.ABORTED, JobState.COMPLETED, JobState.FAILED}
)


class ErrorDetails(BaseModel):
    message: str
    code: str | None = None


def describe_error(error: BaseException | None) -> ErrorDetails:
    """Turn a job-level failure into a user-facing message.

    Rate-limit and permission failures get specific messages; anything
    else falls back to the exception text. A ``status_code`` on the error
    wins over a code quoted in its message.
    """
    text = str(error) if error is not None else ""
    status_code = getattr(error, "status_code", None)
    if status_code is None:
        match = STATUS_IN_TEXT.search(text)
        status_code = int(match.group(1)) if match else None
    if status_code == 429:
        return ErrorDetails(message="API quota is full, please try again later.", code="429")
    if status_code == 403:
        return ErrorDetails(message="API key permission error.", code="403")
    return ErrorDetails(message=text or "An unknown error occurred.")


def check_quota(duration_seconds: float, size: int, policy: QuotaPolicy) -> None:
    """Pre-flight allowance check for unlicensed use.

    Raises:
        QuotaExceeded: Known duration over the limit, or unknown duration
            with a file large enough to be over it
    """
    if policy.is_licensed:
        return
    if duration_seconds > 0:
        minutes = duration_seconds / 60
        if minutes > policy.free_limit_minutes:
            raise QuotaExceeded(minutes, policy.free_limit_minutes)
    elif size > QUOTA_SIZE_FALLBACK_BYTES:
        raise QuotaExceeded(None, policy.free_limit_minutes)


def should_split(duration_seconds: float, size: int) -> bool:
    return duration_seconds / 60 > SPLIT_DURATION_MINUTES or size > SPLIT_SIZE_BYTES


class JobResult(BaseModel):
    """Terminal snapshot of a run."""

    state: JobState
    transcript: str
    segments_total: int = 0
    skipped_segments: list[int] = []
    quota_exceeded: bool = False
    duration_seconds: float = 0.0
    error: ErrorDetails | None = None

    @property
    def rows(self) -> list[TranscriptRow]:
        return parse_transcript(self.transcript)


class JobContext:
    """Mutable state of one run, written only by the orchestrator.

    ``completed`` only ever grows, and only with terminal segment output.
    ``in_flight`` holds the live text of the segment attempt in progress.
    """

    def __init__(self, listener: Callable[[JobContext], Any] | None = None) -> None:
        self.listener = listener
        self.state = JobState.IDLE
        self.completed = ""
        self.in_flight = ""
        self.progress = 0.0
        self.status = ""
        self.segment_index: int | None = None
        self.segments_total = 0
        self.attempt = 0
        self.skipped_segments: list[int] = []
        self.quota_exceeded = False
        self.duration_seconds = 0.0
        self.error: ErrorDetails | None = None

    @property
    def full_text(self) -> str:
        return self.completed + self.in_flight

    @property
    def finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def rows(self) -> list[TranscriptRow]:
        """Rows of the accumulated transcript plus the live segment."""
        return parse_transcript(self.full_text)

    def update(self, **changes: Any) -> None:
        for name, value in changes.items():
            if not hasattr(self, name):
                raise AttributeError(f"JobContext has no field {name!r}")
            setattr(self, name, value)
        self._notify()

    def commit(self, text: str) -> None:
        """Append terminal segment output and drop the live text."""
        self.completed += text
        self.in_flight = ""
        self._notify()

    def to_result(self) -> JobResult:
        return JobResult(
            state=self.state,
            transcript=self.completed,
            segments_total=self.segments_total,
            skipped_segments=list(self.skipped_segments),
            quota_exceeded=self.quota_exceeded,
            duration_seconds=self.duration_seconds,
            error=self.error,
        )

    def _notify(self) -> None:
        if self.listener:
            self.listener(self)


class TranscriptionJob:
    """Runs the whole pipeline for one file, one segment at a time."""

    def __init__(
        self,
        backend: TranscriptionBackend | None = None,
        worker: SegmentWorker | None = None,
        prober: Callable[[Path], float] = probe_duration_seconds,
        chunk_duration_minutes: float = CHUNK_DURATION_MINUTES,
        pacing_delay_seconds: float = PACING_DELAY_SECONDS,
    ) -> None:
        if worker is None:
            if backend is None:
                raise ValueError("TranscriptionJob needs a backend or a worker")
            worker = SegmentWorker(backend)
        self.worker = worker
        self.prober = prober
        self.chunk_duration_minutes = chunk_duration_minutes
        self.pacing_delay_seconds = pacing_delay_seconds

    async def run(
        self,
        media: MediaFile,
        settings: TranscriptionSettings,
        quota: QuotaPolicy,
        cancel: CancelSignal | None = None,
        on_update: Callable[[JobContext], Any] | None = None,
    ) -> JobResult:
        """Transcribe ``media`` end to end.

        Args:
            media: File to transcribe
            settings: Run settings
            quota: License status and free allowance
            cancel: Shared cancellation signal
            on_update: Called with the context after every state change

        Returns:
            JobResult in one of the terminal states
        """
        cancel = cancel or CancelSignal()
        context = JobContext(on_update)

        try:
            await self._run(context, media, settings, quota, cancel)
        except UserAborted:
            self._abort(context)
        except Exception as e:
            self._fail(context, e)

        return context.to_result()

    async def transcribe_segments(
        self,
        segments: list[Segment],
        settings: TranscriptionSettings,
        quota: QuotaPolicy,
        cancel: CancelSignal,
        context: JobContext,
    ) -> None:
        """Run planned segments in order, applying the mid-job quota cutoff.

        Leaves the context in QUOTA_HALTED when the allowance runs out and
        raises UserAborted on cancellation; otherwise the state is left for
        the caller to complete.
        """
        context.update(segments_total=len(segments))

        for segment in segments:
            cancel.raise_if_cancelled()

            if (
                not quota.is_licensed
                and segment.index * self.chunk_duration_minutes >= quota.free_limit_minutes
            ):
                logger.info("Free limit reached before part %d", segment.index + 1)
                context.commit(QUOTA_NOTICE)
                context.update(
                    state=JobState.QUOTA_HALTED,
                    quota_exceeded=True,
                    status="Free plan limit reached",
                )
                return

            context.update(
                state=JobState.TRANSCRIBING,
                segment_index=segment.index,
                progress=round(segment.index / len(segments) * 100),
            )
            label = f"[Part {segment.index + 1}/{len(segments)}]"
            result = await self._transcribe(context, segment, settings, cancel, label)

            if result.outcome is SegmentOutcome.ABORTED:
                raise UserAborted()
            if result.outcome is SegmentOutcome.SKIPPED:
                context.skipped_segments.append(segment.index)
                context.commit(result.text)
            else:
                context.commit(adjust_timestamps(result.text, segment.offset_seconds) + "\n")

            if segment.index < len(segments) - 1:
                await cancel.sleep(self.pacing_delay_seconds)

    async def _run(
        self,
        context: JobContext,
        media: MediaFile,
        settings: TranscriptionSettings,
        quota: QuotaPolicy,
        cancel: CancelSignal,
    ) -> None:
        duration = await cancel.guard(asyncio.to_thread(self.prober, media.path))
        context.update(duration_seconds=duration, status="Initializing...")

        try:
            check_quota(duration, media.size, quota)
        except QuotaExceeded as e:
            logger.info("Quota exceeded before start: %s", e)
            context.update(state=JobState.QUOTA_HALTED, quota_exceeded=True, status=str(e))
            return

        if media.size == 0:
            context.update(state=JobState.COMPLETED, progress=100, status="Nothing to transcribe")
            return

        if should_split(duration, media.size):
            if duration > 0:
                message = f"File is {round(duration / 60)} min long, splitting into safe parts..."
            else:
                message = f"File is large ({format_bytes(media.size)}), splitting..."
            context.update(state=JobState.SPLITTING, progress=2, status=message)
            segments = plan_segments(media, self.chunk_duration_minutes, duration)
            await self.transcribe_segments(segments, settings, quota, cancel, context)
        else:
            await self._run_single(context, media, settings, cancel)

        if not context.finished:
            context.update(
                state=JobState.COMPLETED,
                progress=100,
                status="Transcription complete",
                segment_index=None,
            )

    async def _run_single(
        self,
        context: JobContext,
        media: MediaFile,
        settings: TranscriptionSettings,
        cancel: CancelSignal,
    ) -> None:
        context.update(
            state=JobState.TRANSCRIBING,
            segments_total=1,
            segment_index=0,
            progress=10,
        )
        result = await self._transcribe(context, whole_file_segment(media), settings, cancel)

        if result.outcome is SegmentOutcome.ABORTED:
            raise UserAborted()
        if result.outcome is SegmentOutcome.SKIPPED:
            context.update(in_flight="")
            self._fail(context, result.error)
            return
        context.commit(result.text)

    async def _transcribe(
        self,
        context: JobContext,
        segment: Segment,
        settings: TranscriptionSettings,
        cancel: CancelSignal,
        label: str | None = None,
    ) -> SegmentResult:
        """Run the worker, mirroring its live text and status onto the context."""
        raw = ""
        single = label is None

        def on_attempt(attempt: int) -> None:
            nonlocal raw
            raw = ""
            state = JobState.TRANSCRIBING if attempt == 1 else JobState.RETRYING
            context.update(in_flight="", attempt=attempt, state=state)

        def on_text(fragment: str) -> None:
            nonlocal raw
            raw += fragment
            changes: dict[str, Any] = {
                "in_flight": adjust_timestamps(raw, segment.offset_seconds),
            }
            if single:
                changes["progress"] = min(context.progress + 0.1, 90)
            context.update(**changes)

        def on_status(message: str) -> None:
            if single:
                changes: dict[str, Any] = {"status": message}
                if message.startswith("Transcribing"):
                    changes["progress"] = max(context.progress, 40)
                context.update(**changes)
            else:
                context.update(status=f"{label} {message}")

        return await self.worker.run(
            segment,
            settings,
            cancel,
            on_text=on_text,
            on_status=on_status,
            on_attempt=on_attempt,
        )

    def _abort(self, context: JobContext) -> None:
        context.update(
            state=JobState.ABORTED,
            in_flight="",
            status="Stopped by user",
        )

    def _fail(self, context: JobContext, error: BaseException | None) -> None:
        if isinstance(error, ConfigurationError):
            logger.error("Configuration error: %s", error)
        else:
            logger.error("Transcription failed: %s", error)
        context.update(
            state=JobState.FAILED,
            in_flight="",
            progress=0,
            error=describe_error(error),
            status="Transcription failed",
        )
