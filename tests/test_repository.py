from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from transcribe_queue.engine.models import (
    JobStatus,
    JobSubmit,
    MergeStatus,
    TrackInput,
)
from transcribe_queue.engine.repository import INTERRUPTED_DETAIL, JobRepository

pytestmark = [
    allure.epic("Transcription Engine"),
    allure.feature("Job Persistence"),
]


@pytest.fixture()
def repository(tmp_path: Path):
    repo = JobRepository(tmp_path / "repo.db")
    repo.init_schema()
    yield repo
    repo.close()


def _submit(repository: JobRepository, *, tracks: int = 1, job_id: str | None = None) -> str:
    job = repository.create_job(
        JobSubmit(
            adapter="echo",
            inputs=tuple(
                TrackInput(path=f"/data/track-{index}.wav", offset_seconds=float(index * 10))
                for index in range(tracks)
            ),
            parameters={"language": "en"},
            job_id=job_id,
        ),
    )
    return job.job_id


def _terminal_events(repository: JobRepository, job_id: str) -> list[str]:
    details = repository.get_job_details(job_id)
    assert details is not None
    return [
        event.event_type
        for event in details.events
        if event.event_type in {"succeeded", "failed", "killed"}
    ]


def test_alembic_schema_is_initialized_to_head(repository: JobRepository) -> None:
    with repository.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = connection.execute(
            text("SELECT name FROM sqlite_master WHERE type = 'table'"),
        ).scalars()
        table_names = set(tables)

    assert version == "20261019_0001"
    assert {"transcription_jobs", "job_tracks", "job_events"} <= table_names


def test_create_job_stores_tracks_and_merge_status(repository: JobRepository) -> None:
    single_id = _submit(repository)
    multi_id = _submit(repository, tracks=3)

    single = repository.get_job(single_id)
    multi = repository.get_job(multi_id)
    assert single is not None
    assert multi is not None
    assert single.status == JobStatus.QUEUED
    assert single.merge_status == MergeStatus.NOT_APPLICABLE
    assert multi.merge_status == MergeStatus.PENDING
    assert multi.parameters == {"language": "en"}

    tracks = repository.list_tracks(multi_id)
    assert [track.track_index for track in tracks] == [0, 1, 2]
    assert [track.offset_seconds for track in tracks] == [0.0, 10.0, 20.0]
    assert all(track.status == JobStatus.QUEUED for track in tracks)


def test_create_job_writes_rows_under_enforced_foreign_keys(repository: JobRepository) -> None:
    with repository.engine.connect() as connection:
        assert connection.execute(text("PRAGMA foreign_keys")).scalar_one() == 1

    job_id = _submit(repository, tracks=2)

    details = repository.get_job_details(job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["submitted"]
    assert details.events[0].status_to == "queued"
    assert len(details.tracks) == 2


def test_claim_next_queued_is_fifo(repository: JobRepository) -> None:
    submitted = [_submit(repository) for _ in range(5)]

    claimed = []
    while (job := repository.claim_next_queued(worker_id="w-1")) is not None:
        claimed.append(job.job_id)
        assert job.status == JobStatus.RUNNING
        assert job.worker_id == "w-1"

    assert claimed == submitted
    assert [job.job_id for job in repository.list_queued()] == []


def test_claim_job_is_compare_and_swap(repository: JobRepository) -> None:
    job_id = _submit(repository)

    assert repository.claim_job(job_id=job_id, worker_id="w-1") is not None
    assert repository.claim_job(job_id=job_id, worker_id="w-2") is None
    job = repository.get_job(job_id)
    assert job is not None
    assert job.worker_id == "w-1"


def test_concurrent_claims_have_exactly_one_winner(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    setup = JobRepository(db_path)
    setup.init_schema()
    job_id = _submit(setup)
    setup.close()

    contenders = 8
    barrier = threading.Barrier(contenders)
    winners: list[str] = []
    lock = threading.Lock()

    def _claim(worker_id: str) -> None:
        repo = JobRepository(db_path, sqlite_busy_timeout_ms=10_000)
        try:
            barrier.wait()
            if repo.claim_job(job_id=job_id, worker_id=worker_id) is not None:
                with lock:
                    winners.append(worker_id)
        finally:
            repo.close()

    threads = [
        threading.Thread(target=_claim, args=(f"w-{index}",)) for index in range(contenders)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(winners) == 1


def test_concurrent_claim_next_hands_out_each_job_once(tmp_path: Path) -> None:
    db_path = tmp_path / "drain.db"
    setup = JobRepository(db_path)
    setup.init_schema()
    submitted = {_submit(setup) for _ in range(12)}
    setup.close()

    claimed: list[str] = []
    lock = threading.Lock()

    def _drain(worker_id: str) -> None:
        repo = JobRepository(db_path, sqlite_busy_timeout_ms=10_000)
        try:
            while (job := repo.claim_next_queued(worker_id=worker_id)) is not None:
                with lock:
                    claimed.append(job.job_id)
        finally:
            repo.close()

    threads = [threading.Thread(target=_drain, args=(f"w-{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(claimed) == sorted(submitted)


def test_progress_only_moves_forward_while_running(repository: JobRepository) -> None:
    job_id = _submit(repository)
    assert repository.update_progress(job_id=job_id, percent=10.0) is False

    repository.claim_job(job_id=job_id, worker_id="w-1")
    assert repository.update_progress(job_id=job_id, percent=40.0) is True
    assert repository.update_progress(job_id=job_id, percent=30.0) is False
    assert repository.update_progress(job_id=job_id, percent=40.0) is False

    job = repository.get_job(job_id)
    assert job is not None
    assert job.progress == 40.0


def test_completion_and_kill_cannot_both_apply(repository: JobRepository) -> None:
    job_id = _submit(repository)
    repository.claim_job(job_id=job_id, worker_id="w-1")

    assert repository.complete_job(job_id=job_id, output_path="/tmp/out.json") is True
    assert repository.kill_job(job_id=job_id, exit_code=-15, error_detail="late") is False
    assert repository.fail_job(job_id=job_id, error_detail="late") is False

    job = repository.get_job(job_id)
    assert job is not None
    assert job.status == JobStatus.SUCCEEDED
    assert job.progress == 100.0
    assert job.completed_at is not None
    assert _terminal_events(repository, job_id) == ["succeeded"]


def test_terminal_status_cannot_be_used_as_expected(repository: JobRepository) -> None:
    job_id = _submit(repository)
    with pytest.raises(ValueError, match="Terminal status"):
        repository.update_job_status(
            job_id=job_id,
            expected=JobStatus.FAILED,
            status=JobStatus.QUEUED,
        )


def test_track_lifecycle_events(repository: JobRepository) -> None:
    job_id = _submit(repository, tracks=2)
    repository.claim_job(job_id=job_id, worker_id="w-1")

    assert repository.start_track(job_id=job_id, track_index=0) is True
    assert repository.start_track(job_id=job_id, track_index=0) is False
    assert repository.finish_track(
        job_id=job_id,
        track_index=0,
        status=JobStatus.SUCCEEDED,
        output_path="/tmp/t0.json",
        exit_code=0,
    )
    with pytest.raises(ValueError):
        repository.finish_track(job_id=job_id, track_index=1, status=JobStatus.RUNNING)

    tracks = repository.list_tracks(job_id)
    assert tracks[0].status == JobStatus.SUCCEEDED
    assert tracks[0].output_path == "/tmp/t0.json"
    assert tracks[1].status == JobStatus.QUEUED

    details = repository.get_job_details(job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == [
        "submitted",
        "claimed",
        "track_started",
        "track_succeeded",
    ]
    assert details.events[-1].details["track_index"] == 0


def test_merge_status_only_applies_to_multitrack_jobs(repository: JobRepository) -> None:
    single_id = _submit(repository)
    multi_id = _submit(repository, tracks=2)

    assert (
        repository.set_merge_status(
            job_id=single_id,
            expected=[MergeStatus.NOT_APPLICABLE],
            status=MergeStatus.MERGING,
        )
        is False
    )
    assert repository.set_merge_status(
        job_id=multi_id,
        expected=[MergeStatus.PENDING],
        status=MergeStatus.MERGING,
    )
    assert (
        repository.set_merge_status(
            job_id=multi_id,
            expected=[MergeStatus.PENDING],
            status=MergeStatus.MERGING,
        )
        is False
    )
    assert repository.set_merge_status(
        job_id=multi_id,
        expected=[MergeStatus.MERGING],
        status=MergeStatus.FAILED,
        merge_error="broken track",
    )

    job = repository.get_job(multi_id)
    assert job is not None
    assert job.merge_status == MergeStatus.FAILED
    assert job.merge_error == "broken track"


def test_recover_interrupted_jobs_fails_running_jobs(repository: JobRepository) -> None:
    running_id = _submit(repository, tracks=2)
    queued_id = _submit(repository)
    repository.claim_job(job_id=running_id, worker_id="w-1")
    repository.start_track(job_id=running_id, track_index=0)

    assert repository.recover_interrupted_jobs() == [running_id]

    running = repository.get_job(running_id)
    queued = repository.get_job(queued_id)
    assert running is not None
    assert queued is not None
    assert running.status == JobStatus.FAILED
    assert running.error_detail == INTERRUPTED_DETAIL
    assert queued.status == JobStatus.QUEUED
    assert [track.status for track in repository.list_tracks(running_id)] == [
        JobStatus.FAILED,
        JobStatus.QUEUED,
    ]


def test_persisted_kill_request(repository: JobRepository) -> None:
    job_id = _submit(repository)
    other_id = _submit(repository)
    assert repository.request_kill(job_id=job_id) is False

    repository.claim_job(job_id=job_id, worker_id="w-1")
    repository.claim_job(job_id=other_id, worker_id="w-2")
    assert repository.request_kill(job_id=job_id) is True
    assert repository.request_kill(job_id=job_id) is False

    assert repository.list_kill_requested([job_id, other_id]) == [job_id]
    assert repository.list_kill_requested([]) == []
    job = repository.get_job(job_id)
    assert job is not None
    assert job.kill_requested_at is not None

    assert repository.complete_job(job_id=job_id, output_path=None) is False
    assert repository.complete_job(job_id=other_id, output_path=None) is True
    assert repository.kill_job(job_id=job_id, exit_code=None, error_detail="killed") is True


def test_count_by_status_and_list_jobs_filter(repository: JobRepository) -> None:
    first = _submit(repository)
    _submit(repository)
    repository.claim_job(job_id=first, worker_id="w-1")

    counts = repository.count_by_status()
    assert counts[JobStatus.QUEUED] == 1
    assert counts[JobStatus.RUNNING] == 1
    assert counts[JobStatus.KILLED] == 0
    assert [job.job_id for job in repository.list_jobs(status=JobStatus.RUNNING)] == [first]
