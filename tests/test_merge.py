from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from transcribe_queue.config import Settings
from transcribe_queue.engine.adapters.registry import AdapterRegistry, register_all
from transcribe_queue.engine.errors import JobNotFoundError, MergeError
from transcribe_queue.engine.merge import MergeCoordinator, TrackTranscript, merge_transcripts
from transcribe_queue.engine.models import (
    JobStatus,
    JobSubmit,
    MergeStatus,
    TrackInput,
    Transcript,
    TranscriptSegment,
)
from transcribe_queue.engine.repository import JobRepository
from transcribe_queue.engine.transcripts import read_transcript

pytestmark = [
    allure.epic("Transcription Engine"),
    allure.feature("Multitrack Merge"),
]


def _transcript(*segments: tuple[float, float, str], language: str | None = "en") -> Transcript:
    return Transcript(
        segments=[
            TranscriptSegment(start=start, end=end, text=text) for start, end, text in segments
        ],
        language=language,
    )


def test_merge_orders_by_offset_then_track_index() -> None:
    merged = merge_transcripts(
        [
            TrackTranscript(0, 0.0, _transcript((0.0, 1.0, "a"), (5.0, 6.0, "b"))),
            TrackTranscript(1, 10.0, _transcript((0.0, 1.0, "c"), (2.0, 3.0, "e"))),
            TrackTranscript(2, 10.0, _transcript((0.0, 1.0, "d"))),
        ],
    )

    assert [segment.text for segment in merged.segments] == ["a", "b", "c", "d", "e"]
    assert [segment.track_index for segment in merged.segments] == [0, 0, 1, 2, 1]
    assert [segment.start for segment in merged.segments] == [0.0, 5.0, 10.0, 10.0, 12.0]
    assert merged.segments[-1].end == 13.0
    assert merged.language == "en"


def test_merge_breaks_equal_absolute_start_by_smaller_offset() -> None:
    merged = merge_transcripts(
        [
            TrackTranscript(0, 10.0, _transcript((0.0, 1.0, "late track"))),
            TrackTranscript(1, 0.0, _transcript((10.0, 11.0, "early track"))),
        ],
    )

    assert [segment.text for segment in merged.segments] == ["early track", "late track"]


def test_merge_keeps_segment_order_within_a_track_for_ties() -> None:
    merged = merge_transcripts(
        [TrackTranscript(0, 0.0, _transcript((1.0, 2.0, "first"), (1.0, 1.5, "second")))],
    )

    assert [segment.text for segment in merged.segments] == ["first", "second"]


def test_merge_drops_language_when_tracks_disagree() -> None:
    merged = merge_transcripts(
        [
            TrackTranscript(0, 0.0, _transcript((0.0, 1.0, "hola"), language="es")),
            TrackTranscript(1, 0.0, _transcript((0.0, 1.0, "hello"), language="en")),
        ],
    )

    assert merged.language is None


def test_read_transcript_rejects_invalid_files(tmp_path: Path) -> None:
    missing = tmp_path / "missing.json"
    garbage = tmp_path / "garbage.json"
    garbage.write_text("not json", "utf-8")
    no_segments = tmp_path / "no-segments.json"
    no_segments.write_text(json.dumps({"language": "en"}), "utf-8")

    for path in (missing, garbage, no_segments):
        with pytest.raises(ValueError):
            read_transcript(path)


@pytest.fixture()
def merge_env(settings: Settings, tmp_path: Path):
    repository = JobRepository(settings.db_path)
    repository.init_schema()
    coordinator = MergeCoordinator(
        repository=repository,
        registry=register_all(AdapterRegistry(), settings),
        workdir=settings.engine.workdir,
    )
    yield repository, coordinator
    repository.close()


def _finished_multitrack_job(repository: JobRepository, tmp_path: Path, outputs: list[str]) -> str:
    job = repository.create_job(
        JobSubmit(
            adapter="echo",
            inputs=tuple(
                TrackInput(path=f"/in/{index}.wav", offset_seconds=float(index * 5))
                for index in range(len(outputs))
            ),
        ),
    )
    repository.claim_job(job_id=job.job_id, worker_id="w-1")
    for index, content in enumerate(outputs):
        output = tmp_path / f"out-{index}.json"
        output.write_text(content, "utf-8")
        repository.start_track(job_id=job.job_id, track_index=index)
        repository.finish_track(
            job_id=job.job_id,
            track_index=index,
            status=JobStatus.SUCCEEDED,
            output_path=str(output),
            exit_code=0,
        )
    return job.job_id


def _segments_json(*texts: str) -> str:
    return json.dumps(
        {
            "language": "en",
            "segments": [
                {"start": float(index), "end": float(index + 1), "text": text}
                for index, text in enumerate(texts)
            ],
        },
    )


def test_coordinator_merges_and_stores_output(
    merge_env,
    tmp_path: Path,
    settings: Settings,
) -> None:
    repository, coordinator = merge_env
    job_id = _finished_multitrack_job(
        repository,
        tmp_path,
        [_segments_json("one", "two"), _segments_json("three")],
    )

    assert coordinator.merge(job_id) == MergeStatus.MERGED

    job = repository.get_job(job_id)
    assert job is not None
    assert job.merge_status == MergeStatus.MERGED
    assert job.status == JobStatus.RUNNING
    merged_path = settings.engine.workdir / job_id / "merged.json"
    assert job.output_path == str(merged_path)
    merged = read_transcript(merged_path)
    assert [segment.text for segment in merged.segments] == ["one", "two", "three"]
    assert [segment.track_index for segment in merged.segments] == [0, 0, 1]


def test_coordinator_failure_is_isolated_and_retriggerable(merge_env, tmp_path: Path) -> None:
    repository, coordinator = merge_env
    job_id = _finished_multitrack_job(
        repository,
        tmp_path,
        [_segments_json("one"), "{broken"],
    )

    assert coordinator.merge(job_id) == MergeStatus.FAILED
    job = repository.get_job(job_id)
    assert job is not None
    assert job.merge_status == MergeStatus.FAILED
    assert job.merge_error is not None
    assert "Track 1" in job.merge_error
    assert all(track.status == JobStatus.SUCCEEDED for track in repository.list_tracks(job_id))

    with pytest.raises(MergeError, match="succeeded"):
        coordinator.retrigger(job_id)

    repository.complete_job(job_id=job_id, output_path=None)
    (tmp_path / "out-1.json").write_text(_segments_json("fixed"), "utf-8")

    assert coordinator.retrigger(job_id) == MergeStatus.MERGED
    job = repository.get_job(job_id)
    assert job is not None
    assert job.merge_status == MergeStatus.MERGED
    assert job.merge_error is None

    with pytest.raises(MergeError, match="only failed merges"):
        coordinator.retrigger(job_id)


def test_coordinator_rejects_single_track_and_unknown_jobs(merge_env) -> None:
    repository, coordinator = merge_env
    job = repository.create_job(JobSubmit(adapter="echo", inputs=(TrackInput(path="/in/a.wav"),)))

    with pytest.raises(MergeError, match="single track"):
        coordinator.merge(job.job_id)
    with pytest.raises(MergeError, match="single track"):
        coordinator.retrigger(job.job_id)
    with pytest.raises(JobNotFoundError):
        coordinator.merge("nope")


def test_merge_requires_pending_status(merge_env, tmp_path: Path) -> None:
    repository, coordinator = merge_env
    job_id = _finished_multitrack_job(
        repository,
        tmp_path,
        [_segments_json("a"), _segments_json("b")],
    )
    coordinator.merge(job_id)

    with pytest.raises(MergeError, match="not pending"):
        coordinator.merge(job_id)


def test_read_transcript_keeps_track_attribution(tmp_path: Path) -> None:
    path = tmp_path / "merged.json"
    path.write_text(
        json.dumps(
            {
                "language": "en",
                "segments": [
                    {"start": 0, "end": 1, "text": "host", "track_index": 0},
                    {"start": 1, "end": 2, "text": "guest", "track_index": 1, "speaker": "B"},
                    {"start": 2, "end": 3, "text": "plain"},
                ],
            },
        ),
        "utf-8",
    )

    transcript = read_transcript(path)

    assert [segment.track_index for segment in transcript.segments] == [0, 1, None]
    assert transcript.segments[1].speaker == "B"

    path.write_text(
        json.dumps({"segments": [{"start": 0, "text": "x", "track_index": "0"}]}),
        "utf-8",
    )
    with pytest.raises(ValueError, match="track_index"):
        read_transcript(path)


def test_unreadable_track_output_fails_merge_without_raising(merge_env, tmp_path: Path) -> None:
    repository, coordinator = merge_env
    job_id = _finished_multitrack_job(
        repository,
        tmp_path,
        [_segments_json("a"), _segments_json("b")],
    )
    track_output = tmp_path / "out-1.json"
    track_output.unlink()
    track_output.mkdir()

    assert coordinator.merge(job_id) == MergeStatus.FAILED

    job = repository.get_job(job_id)
    assert job is not None
    assert job.merge_status == MergeStatus.FAILED
    assert job.merge_error is not None
    assert job.merge_error.startswith("Track 1:")
    assert job.status == JobStatus.RUNNING
