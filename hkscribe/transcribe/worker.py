"""
hkscribe.transcribe.worker - Drives one segment through the remote service.

Each attempt prepares the payload (inline or upload-then-poll), streams
text fragments under a per-fragment watchdog, and either succeeds or
fails into the retry state machine. Exhausted segments become a skip
marker; cancellation stops the worker without a marker.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict

from hkscribe.config import TranscriptionSettings
from hkscribe.exceptions import (
    RetryableTranscriptionError,
    StreamTimeout,
    UploadProcessingFailed,
    UploadTimeout,
    UserAborted,
)
from hkscribe.logging import logger
from hkscribe.transcribe.client import Payload, TranscriptionBackend, UploadState
from hkscribe.transcribe.prompt import SYSTEM_INSTRUCTION, build_prompt
from hkscribe.transcribe.segmenter import Segment

RETRY_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = 2.0
WATCHDOG_SECONDS = 60.0
UPLOAD_POLL_INTERVAL_SECONDS = 2.0
UPLOAD_POLL_CEILING_SECONDS = 5 * 60.0
MAX_INLINE_SIZE_MB = 18

T = TypeVar("T")

_END_OF_STREAM = object()


def skip_marker(index: int) -> str:
    """Placeholder appended in place of a segment that failed every attempt."""
    return f"\n\n[Error: part {index + 1} failed to transcribe and was skipped]\n\n"


class CancelSignal:
    """Cooperative cancellation shared by the orchestrator and the worker.

    Every suspension point goes through ``sleep`` or ``guard`` so a
    cancel request abandons whatever is being awaited.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise UserAborted()

    async def sleep(self, seconds: float) -> None:
        """Sleep, raising UserAborted as soon as cancellation is requested."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise UserAborted()

    async def guard(self, awaitable: Awaitable[T], timeout: float | None = None) -> T:
        """Await ``awaitable`` unless cancellation or ``timeout`` comes first.

        Raises:
            UserAborted: If cancelled; the awaited operation is abandoned
            asyncio.TimeoutError: If ``timeout`` elapsed first
        """
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise UserAborted()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()

        if self._event.is_set():
            task.cancel()
            raise UserAborted()
        if task in done:
            return task.result()
        task.cancel()
        raise asyncio.TimeoutError()


class RetryState(str, Enum):
    ATTEMPTING = "attempting"
    BACKING_OFF = "backing_off"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"


class RetryTracker:
    """Bounded retry state machine for one segment.

    ``ATTEMPTING(n) -> SUCCEEDED | BACKING_OFF(n) -> ATTEMPTING(n+1) | EXHAUSTED``
    """

    def __init__(self, max_attempts: int = RETRY_ATTEMPTS) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.attempt = 1
        self.state = RetryState.ATTEMPTING
        self.last_error: Exception | None = None

    def succeed(self) -> RetryState:
        self._expect(RetryState.ATTEMPTING)
        self.state = RetryState.SUCCEEDED
        return self.state

    def fail(self, error: Exception) -> RetryState:
        self._expect(RetryState.ATTEMPTING)
        self.last_error = error
        if self.attempt >= self.max_attempts:
            self.state = RetryState.EXHAUSTED
        else:
            self.state = RetryState.BACKING_OFF
        return self.state

    def next_attempt(self) -> int:
        self._expect(RetryState.BACKING_OFF)
        self.attempt += 1
        self.state = RetryState.ATTEMPTING
        return self.attempt

    @property
    def finished(self) -> bool:
        return self.state in (RetryState.SUCCEEDED, RetryState.EXHAUSTED)

    def _expect(self, state: RetryState) -> None:
        if self.state is not state:
            raise RuntimeError(f"Invalid retry transition from {self.state.value}")


class SegmentOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    ABORTED = "aborted"


class SegmentResult(BaseModel):
    """Final text and outcome of one segment."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    text: str
    outcome: SegmentOutcome
    attempts: int
    error: Exception | None = None


class SegmentWorker:
    """Transcribes one segment at a time with watchdog and bounded retry."""

    def __init__(
        self,
        backend: TranscriptionBackend,
        max_attempts: int = RETRY_ATTEMPTS,
        backoff_seconds: float = RETRY_BACKOFF_SECONDS,
        watchdog_seconds: float = WATCHDOG_SECONDS,
        poll_interval_seconds: float = UPLOAD_POLL_INTERVAL_SECONDS,
        poll_ceiling_seconds: float = UPLOAD_POLL_CEILING_SECONDS,
        max_inline_bytes: int = MAX_INLINE_SIZE_MB * 1024 * 1024,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend = backend
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.watchdog_seconds = watchdog_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.poll_ceiling_seconds = poll_ceiling_seconds
        self.max_inline_bytes = max_inline_bytes
        self.clock = clock

    async def run(
        self,
        segment: Segment,
        settings: TranscriptionSettings,
        cancel: CancelSignal,
        on_text: Callable[[str], Any] | None = None,
        on_status: Callable[[str], Any] | None = None,
        on_attempt: Callable[[int], Any] | None = None,
    ) -> SegmentResult:
        """Transcribe ``segment``, retrying retryable failures.

        Args:
            segment: Segment to transcribe
            settings: Run settings used for the prompt and model
            cancel: Shared cancellation signal
            on_text: Called with each streamed fragment of the current attempt
            on_status: Called with human-readable status messages
            on_attempt: Called with the attempt number before each attempt;
                text from earlier attempts must be discarded by the caller

        Returns:
            SegmentResult. SKIPPED results carry the skip marker as text.

        Raises:
            ConfigurationError: Credentials were rejected; never retried
        """
        prompt = build_prompt(settings)
        retry = RetryTracker(self.max_attempts)

        def status(message: str) -> None:
            if on_status:
                on_status(message)

        while True:
            if cancel.cancelled:
                return self._aborted(retry)

            if on_attempt:
                on_attempt(retry.attempt)
            status(f"Processing (attempt {retry.attempt}/{self.max_attempts})...")
            accumulator = ""

            try:
                async for fragment in self.stream_segment(segment, settings, prompt, cancel, status):
                    accumulator += fragment
                    if on_text:
                        on_text(fragment)
                retry.succeed()
                return SegmentResult(
                    text=accumulator,
                    outcome=SegmentOutcome.SUCCEEDED,
                    attempts=retry.attempt,
                )
            except UserAborted:
                return self._aborted(retry)
            except RetryableTranscriptionError as e:
                state = retry.fail(e)
                logger.warning(
                    "Part %d failed attempt %d/%d: %s",
                    segment.index + 1,
                    retry.attempt,
                    self.max_attempts,
                    e,
                )

            if state is RetryState.EXHAUSTED:
                logger.error("Part %d failed permanently, skipping", segment.index + 1)
                return SegmentResult(
                    text=skip_marker(segment.index),
                    outcome=SegmentOutcome.SKIPPED,
                    attempts=retry.attempt,
                    error=retry.last_error,
                )

            status(f"Error, preparing retry ({retry.attempt}/{self.max_attempts})...")
            try:
                await cancel.sleep(self.backoff_seconds)
            except UserAborted:
                return self._aborted(retry)
            retry.next_attempt()

    async def stream_segment(
        self,
        segment: Segment,
        settings: TranscriptionSettings,
        prompt: str,
        cancel: CancelSignal,
        status: Callable[[str], None],
    ) -> AsyncIterator[str]:
        """Run a single attempt, yielding fragments as they arrive.

        Raises:
            StreamTimeout: No fragment within the watchdog window
            UserAborted: Cancellation was requested
        """
        payload = await self._prepare_payload(segment, cancel, status)

        status("Transcribing...")
        stream = self.backend.stream_transcribe(
            payload,
            prompt,
            settings.model_id,
            SYSTEM_INSTRUCTION,
        )
        iterator = stream.__aiter__()
        while True:
            try:
                fragment = await cancel.guard(
                    anext(iterator, _END_OF_STREAM),
                    timeout=self.watchdog_seconds,
                )
            except asyncio.TimeoutError:
                raise StreamTimeout(self.watchdog_seconds) from None
            if fragment is _END_OF_STREAM:
                return
            if fragment:
                yield fragment

    async def _prepare_payload(
        self,
        segment: Segment,
        cancel: CancelSignal,
        status: Callable[[str], None],
    ) -> Payload:
        mime_type = segment.media.mime_type

        if segment.size < self.max_inline_bytes:
            status("Processing locally...")
            return Payload(mime_type=mime_type, data=segment.read())

        status("Uploading to Gemini (large file)...")
        handle = await cancel.guard(self.backend.upload(segment.read(), mime_type))

        started = self.clock()
        state = handle.state
        while state is UploadState.PROCESSING:
            cancel.raise_if_cancelled()
            if self.clock() - started > self.poll_ceiling_seconds:
                raise UploadTimeout(
                    f"File processing timed out (over {self.poll_ceiling_seconds / 60:g} minutes)"
                )
            status("Server is processing the file...")
            await cancel.sleep(self.poll_interval_seconds)
            state = await cancel.guard(self.backend.poll_status(handle))

        if state is UploadState.FAILED:
            raise UploadProcessingFailed("File processing failed on the Gemini server")

        return Payload(mime_type=mime_type, upload=handle)

    def _aborted(self, retry: RetryTracker) -> SegmentResult:
        return SegmentResult(text="", outcome=SegmentOutcome.ABORTED, attempts=retry.attempt)
