"""Tests for hkscribe.transcribe.engine module."""

from __future__ import annotations

import asyncio
import threading

import pytest

from hkscribe.config import QuotaPolicy
from hkscribe.exceptions import ConfigurationError, QuotaExceeded, TransportError
from hkscribe.transcribe.engine import (
    QUOTA_NOTICE,
    JobContext,
    JobState,
    TranscriptionJob,
    check_quota,
    describe_error,
    should_split,
)
from hkscribe.transcribe.segmenter import plan_segments
from hkscribe.transcribe.worker import CancelSignal, skip_marker

MB = 1024 * 1024

LICENSED = QuotaPolicy(is_licensed=True)
FREE = QuotaPolicy(is_licensed=False, free_limit_minutes=3)


def _job(worker, duration: float) -> TranscriptionJob:
    return TranscriptionJob(
        worker=worker,
        prober=lambda path: duration,
        pacing_delay_seconds=0,
    )


class TestDescribeError:
    def test_rate_limit(self) -> None:
        details = describe_error(TransportError("Gemini request failed (429): busy", 429))
        assert details.code == "429"
        assert details.message == "API quota is full, please try again later."

    def test_permission(self) -> None:
        details = describe_error(ConfigurationError("Gemini rejected the API key (403): no"))
        assert details.code == "403"
        assert details.message == "API key permission error."

    def test_fallbacks(self) -> None:
        assert describe_error(ValueError("boom")).message == "boom"
        assert describe_error(None).message == "An unknown error occurred."
        assert describe_error(ValueError()).code is None

    def test_status_code_wins_over_message_text(self) -> None:
        details = describe_error(TransportError("Gemini request failed (503): id 4290-403", 503))
        assert details.code is None
        assert details.message == "Gemini request failed (503): id 4290-403"

    def test_embedded_digits_are_not_a_status(self) -> None:
        assert describe_error(ValueError("request 14290 failed")).code is None
        assert describe_error(ValueError("HTTP 429 Too Many Requests")).code == "429"


class TestCheckQuota:
    def test_licensed_is_unlimited(self) -> None:
        check_quota(3600, 500 * MB, LICENSED)

    def test_known_duration_over_limit(self) -> None:
        with pytest.raises(QuotaExceeded) as exc_info:
            check_quota(181, MB, FREE)
        assert exc_info.value.limit_minutes == 3

    def test_known_duration_within_limit(self) -> None:
        check_quota(180, 50 * MB, FREE)

    def test_unknown_duration_uses_size(self) -> None:
        check_quota(0, 10 * MB, FREE)
        with pytest.raises(QuotaExceeded) as exc_info:
            check_quota(0, 10 * MB + 1, FREE)
        assert exc_info.value.duration_minutes is None


class TestShouldSplit:
    def test_by_duration(self) -> None:
        assert should_split(121, MB)
        assert not should_split(120, MB)

    def test_by_size(self) -> None:
        assert should_split(0, 25 * MB + 1)
        assert not should_split(0, 25 * MB)


class TestJobContext:
    def test_unknown_field_rejected(self) -> None:
        with pytest.raises(AttributeError):
            JobContext().update(bogus=1)

    def test_commit_clears_live_text(self) -> None:
        seen: list[str] = []
        context = JobContext(lambda c: seen.append(c.full_text))

        context.update(in_flight="[00:01] A: hal")
        context.commit("[00:01] A: hello\n")

        assert context.completed == "[00:01] A: hello\n"
        assert context.in_flight == ""
        assert seen == ["[00:01] A: hal", "[00:01] A: hello\n"]


class TestTranscriptionJob:
    def test_requires_backend_or_worker(self) -> None:
        with pytest.raises(ValueError):
            TranscriptionJob()

    @pytest.mark.asyncio
    async def test_short_file_single_request(
        self, fake_backend, make_media, fast_worker, settings
    ) -> None:
        backend = fake_backend([["[00:01] A: 你好", "\n[00:04] B: 早晨"]])
        job = _job(fast_worker(backend), duration=60)
        progress: list[float] = []

        result = await job.run(
            make_media(b"x" * 1000),
            settings,
            FREE,
            on_update=lambda c: progress.append(c.progress),
        )

        assert result.state is JobState.COMPLETED
        assert result.transcript == "[00:01] A: 你好\n[00:04] B: 早晨"
        assert result.segments_total == 1
        assert [r.speaker for r in result.rows] == ["A", "B"]
        assert progress[-1] == 100
        assert max(progress[:-1]) <= 90
        assert len(backend.stream_calls) == 1

    @pytest.mark.asyncio
    async def test_single_request_failure(
        self, fake_backend, make_media, fast_worker, settings
    ) -> None:
        backend = fake_backend([TransportError("busy", 429) for _ in range(3)])
        job = _job(fast_worker(backend), duration=60)

        result = await job.run(make_media(b"x" * 1000), settings, FREE)

        assert result.state is JobState.FAILED
        assert result.transcript == ""
        assert result.error is not None
        assert result.error.code == "429"
        assert len(backend.stream_calls) == 3

    @pytest.mark.asyncio
    async def test_skipped_middle_segment(
        self, fake_backend, make_media, fast_worker, settings
    ) -> None:
        backend = fake_backend(
            [
                ["[00:05] A: one"],
                TransportError("fail 1"),
                ["[00:01] partial", TransportError("cut")],
                TransportError("fail 2"),
                ["[00:10] B: ", "three"],
            ]
        )
        job = _job(fast_worker(backend), duration=360)
        states: list[JobState] = []
        committed: list[str] = []

        def on_update(context: JobContext) -> None:
            states.append(context.state)
            committed.append(context.completed)

        result = await job.run(make_media(b"x" * (6 * MB)), settings, LICENSED, on_update=on_update)

        assert result.state is JobState.COMPLETED
        assert result.segments_total == 3
        assert result.skipped_segments == [1]
        assert result.transcript == (
            "[00:05] A: one\n" + skip_marker(1) + "[04:10] B: three\n"
        )
        assert len(backend.stream_calls) == 5
        assert JobState.SPLITTING in states
        assert JobState.RETRYING in states
        for before, after in zip(committed, committed[1:]):
            assert after.startswith(before)

    @pytest.mark.asyncio
    async def test_abort_during_first_segment(
        self, fake_backend, make_media, fast_worker, settings
    ) -> None:
        cancel = CancelSignal()
        backend = fake_backend([["[00:01] A: hi", cancel.cancel, "more", 5], ["never"], ["never"]])
        job = _job(fast_worker(backend), duration=360)

        result = await job.run(make_media(b"x" * (6 * MB)), settings, LICENSED, cancel=cancel)

        assert result.state is JobState.ABORTED
        assert result.transcript == ""
        assert backend.remote_calls == 1

    @pytest.mark.asyncio
    async def test_abort_keeps_finished_segments(
        self, fake_backend, make_media, fast_worker, settings
    ) -> None:
        cancel = CancelSignal()
        backend = fake_backend([["[00:01] A: one"], ["[00:02] B: ", cancel.cancel, 5], ["never"]])
        job = _job(fast_worker(backend), duration=360)
        live: list[str] = []

        result = await job.run(
            make_media(b"x" * (6 * MB)),
            settings,
            LICENSED,
            cancel=cancel,
            on_update=lambda c: live.append(c.in_flight),
        )

        assert result.state is JobState.ABORTED
        assert result.transcript == "[00:01] A: one\n"
        assert "[02:02] B: " in live
        assert len(backend.stream_calls) == 2

    @pytest.mark.asyncio
    async def test_cancel_during_duration_lookup(
        self, fake_backend, make_media, fast_worker, settings
    ) -> None:
        """A slow duration lookup does not block cancellation."""
        release = threading.Event()

        def slow_duration(path) -> float:
            release.wait(5)
            return 600.0

        cancel = CancelSignal()
        backend = fake_backend([["never"]])
        job = TranscriptionJob(worker=fast_worker(backend), prober=slow_duration)
        asyncio.get_running_loop().call_later(0.05, cancel.cancel)

        try:
            result = await asyncio.wait_for(
                job.run(make_media(b"x" * MB), settings, LICENSED, cancel=cancel),
                timeout=2,
            )
        finally:
            release.set()

        assert result.state is JobState.ABORTED
        assert backend.remote_calls == 0

    @pytest.mark.asyncio
    async def test_preflight_quota(self, fake_backend, make_media, fast_worker, settings) -> None:
        backend = fake_backend([["never"]])
        job = _job(fast_worker(backend), duration=600)

        result = await job.run(make_media(b"x" * MB), settings, FREE)

        assert result.state is JobState.QUOTA_HALTED
        assert result.quota_exceeded
        assert result.transcript == ""
        assert backend.remote_calls == 0

    @pytest.mark.asyncio
    async def test_preflight_quota_unknown_duration(
        self, fake_backend, make_media, fast_worker, settings
    ) -> None:
        backend = fake_backend()
        job = _job(fast_worker(backend), duration=0)

        result = await job.run(make_media(b"x" * (11 * MB)), settings, FREE)

        assert result.state is JobState.QUOTA_HALTED
        assert backend.remote_calls == 0

    @pytest.mark.asyncio
    async def test_zero_byte_file(self, fake_backend, make_media, fast_worker, settings) -> None:
        backend = fake_backend()
        job = _job(fast_worker(backend), duration=0)

        result = await job.run(make_media(b""), settings, FREE)

        assert result.state is JobState.COMPLETED
        assert result.transcript == ""
        assert backend.remote_calls == 0

    @pytest.mark.asyncio
    async def test_rejected_key_fails_job(
        self, fake_backend, make_media, fast_worker, settings
    ) -> None:
        backend = fake_backend([ConfigurationError("Gemini rejected the API key (403): denied")])
        job = _job(fast_worker(backend), duration=360)

        result = await job.run(make_media(b"x" * (6 * MB)), settings, LICENSED)

        assert result.state is JobState.FAILED
        assert result.error is not None
        assert result.error.message == "API key permission error."
        assert len(backend.stream_calls) == 1


class TestTranscribeSegments:
    @pytest.mark.asyncio
    async def test_quota_cutoff_mid_job(
        self, fake_backend, make_media, fast_worker, settings
    ) -> None:
        media = make_media(b"x" * (10 * MB))
        segments = plan_segments(media, 2, duration_seconds=600)
        backend = fake_backend([["[00:01] A: one"], ["[00:01] B: two"], ["never"]])
        job = _job(fast_worker(backend), duration=600)
        context = JobContext()

        await job.transcribe_segments(segments, settings, FREE, CancelSignal(), context)

        assert len(segments) == 5
        assert context.state is JobState.QUOTA_HALTED
        assert context.quota_exceeded
        assert context.completed == "[00:01] A: one\n[02:01] B: two\n" + QUOTA_NOTICE
        assert len(backend.stream_calls) == 2

    @pytest.mark.asyncio
    async def test_licensed_runs_every_segment(
        self, fake_backend, make_media, fast_worker, settings
    ) -> None:
        media = make_media(b"x" * (10 * MB))
        segments = plan_segments(media, 2, duration_seconds=600)
        backend = fake_backend([[f"[00:00] S: {i}"] for i in range(5)])
        job = _job(fast_worker(backend), duration=600)
        context = JobContext()

        await job.transcribe_segments(segments, settings, LICENSED, CancelSignal(), context)

        assert [r.time for r in context.rows()] == ["00:00", "02:00", "04:00", "06:00", "08:00"]
        assert [r.content for r in context.rows()] == ["0", "1", "2", "3", "4"]
