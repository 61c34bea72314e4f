"""Tests for hkscribe.transcribe.parsing module."""

from __future__ import annotations

from hkscribe.transcribe.parsing import (
    NO_SPEAKER,
    TranscriptRow,
    parse_transcript,
    render_transcript,
)


class TestParseTranscript:
    def test_speaker_lines(self) -> None:
        rows = parse_transcript("[00:01] Speaker 1: 大家好。\n[00:05] 陳生 : 你好")

        assert rows == [
            TranscriptRow(time="00:01", speaker="Speaker 1", content="大家好。"),
            TranscriptRow(time="00:05", speaker="陳生", content="你好"),
        ]

    def test_continuation_appends_to_previous_row(self) -> None:
        rows = parse_transcript("[00:01] A: hello\nworld")

        assert len(rows) == 1
        assert rows[0].content == "hello world"

    def test_time_only_line_gets_placeholder_speaker(self) -> None:
        rows = parse_transcript("[01:10] 好呀")

        assert rows == [TranscriptRow(time="01:10", speaker=NO_SPEAKER, content="好呀")]

    def test_leading_continuation_is_dropped(self) -> None:
        rows = parse_transcript("stray words\n[00:02] A: ok")

        assert len(rows) == 1
        assert rows[0].content == "ok"

    def test_blank_lines_ignored(self) -> None:
        rows = parse_transcript("\n\n   \n[00:02] A: ok\n\n")
        assert len(rows) == 1

    def test_hour_timestamps(self) -> None:
        rows = parse_transcript("[01:02:03] A: late")
        assert rows[0].time == "01:02:03"

    def test_sample(self, sample_transcript: str) -> None:
        rows = parse_transcript(sample_transcript)

        assert [r.time for r in rows] == ["00:01", "00:05", "01:10"]
        assert rows[1].content == "今日天氣好好。 我哋出去行下啦"
        assert rows[2].speaker == "-"

    def test_empty_text(self) -> None:
        assert parse_transcript("") == []


class TestRenderTranscript:
    def test_round_trip(self) -> None:
        rows = [
            TranscriptRow(time="00:01", speaker="A", content="hi"),
            TranscriptRow(time="01:02:03", speaker="B", content="bye"),
        ]

        text = render_transcript(rows)

        assert text == "[00:01] A: hi\n[01:02:03] B: bye"
        assert parse_transcript(text) == rows
