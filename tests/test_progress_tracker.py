from __future__ import annotations

import logging
from collections.abc import Iterator

import allure
import pytest

from transcribe_queue.engine.errors import ProgressParseError
from transcribe_queue.engine.progress import (
    JsonLineParser,
    PercentLineParser,
    ProgressTracker,
    scale_track_progress,
)

pytestmark = [
    allure.epic("Transcription Engine"),
    allure.feature("Progress Tracking"),
]


def test_percent_parser_reads_whisperx_style_lines() -> None:
    parser = PercentLineParser(marker="progress:")

    assert parser.parse("Progress: 42.50%...") == 42.5
    assert parser.parse(">>Performing transcription...") is None
    assert parser.parse("downloaded 30% of model") is None


def test_percent_parser_rejects_marker_without_value_and_out_of_range() -> None:
    parser = PercentLineParser(marker="progress:")

    with pytest.raises(ProgressParseError):
        parser.parse("progress: ??%")
    with pytest.raises(ProgressParseError, match="out of range"):
        parser.parse("progress: 150%")


def test_percent_parser_without_marker_takes_any_percentage() -> None:
    assert PercentLineParser().parse("step 3 done (75 %)") == 75.0


def test_json_parser_accepts_fraction_and_percent_forms() -> None:
    parser = JsonLineParser()

    assert parser.parse('{"progress": 0.25}') == 25.0
    assert parser.parse('{"percent": 40}') == 40.0
    assert parser.parse('{"stage": "loading"}') is None
    assert parser.parse("plain text") is None
    with pytest.raises(ProgressParseError):
        parser.parse('{"progress": ')
    with pytest.raises(ProgressParseError):
        parser.parse('{"percent": "high"}')


def test_tracker_emits_only_increasing_values_and_skips_malformed_lines(
    caplog: pytest.LogCaptureFixture,
) -> None:
    tracker = ProgressTracker(PercentLineParser(marker="progress:"))
    lines = [
        "progress: 10%",
        "progress: 5%",
        "progress: ??%",
        "loading model",
        "progress: 50%",
        "progress: 50%",
        "progress: 100%",
    ]

    with caplog.at_level(logging.WARNING):
        events = list(tracker.track(lines))

    assert [event.percent for event in events] == [10.0, 50.0, 100.0]
    assert [event.line_no for event in events] == [1, 5, 7]
    assert tracker.percent == 100.0
    assert tracker.skipped_lines == 1
    assert "Skipping progress line 3" in caplog.text


def test_tracker_is_lazy_and_single_use() -> None:
    consumed: list[str] = []

    def _lines() -> Iterator[str]:
        for line in ("progress: 20%", "progress: 60%"):
            consumed.append(line)
            yield line

    tracker = ProgressTracker(PercentLineParser(marker="progress:"))
    events = tracker.track(_lines())
    assert consumed == []

    first = next(events)
    assert first.percent == 20.0
    assert consumed == ["progress: 20%"]
    assert [event.percent for event in events] == [60.0]

    with pytest.raises(RuntimeError, match="already consumed"):
        tracker.track(["progress: 90%"])


def test_tracker_starts_from_initial_percent() -> None:
    tracker = ProgressTracker(JsonLineParser(), initial_percent=30.0)

    events = list(tracker.track(['{"percent": 20}', '{"percent": 35}']))

    assert [event.percent for event in events] == [35.0]


@pytest.mark.parametrize(
    ("percent", "track_index", "track_count", "expected"),
    [
        (50.0, 0, 1, 50.0),
        (0.0, 1, 2, 50.0),
        (50.0, 1, 2, 75.0),
        (100.0, 2, 4, 75.0),
    ],
)
def test_scale_track_progress(
    percent: float,
    track_index: int,
    track_count: int,
    expected: float,
) -> None:
    assert scale_track_progress(
        percent,
        track_index=track_index,
        track_count=track_count,
    ) == pytest.approx(expected)
