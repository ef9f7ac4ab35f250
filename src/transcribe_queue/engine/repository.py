"""Persistent job queue repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, text
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from transcribe_queue.engine.models import (
    JobDetails,
    JobEventView,
    JobStatus,
    JobSubmit,
    JobView,
    MergeStatus,
    TrackView,
)
from transcribe_queue.storage.alembic_runner import upgrade_head
from transcribe_queue.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from transcribe_queue.storage.sqlmodel_models import JobEvent, JobTrack, TranscriptionJob

INTERRUPTED_DETAIL = "interrupted: engine restarted"


class JobRepository:
    """Queue persistence facade.

    Every status change is a conditional ``UPDATE ... WHERE status = <expected>``
    checked through ``rowcount``, so two writers racing on the same job (two
    workers claiming, or a natural completion against a kill) cannot both win.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_job(self, payload: JobSubmit) -> JobView:
        """Insert a queued job with its tracks."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = TranscriptionJob(
                job_id=job_id,
                title=payload.title,
                adapter=payload.adapter,
                parameters_json=json.dumps(payload.parameters, ensure_ascii=False, sort_keys=True),
                status=JobStatus.QUEUED.value,
                progress=0.0,
                merge_status=(
                    MergeStatus.PENDING.value
                    if payload.is_multitrack
                    else MergeStatus.NOT_APPLICABLE.value
                ),
                track_count=len(payload.inputs),
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            # job row first: tracks and events reference it
            session.flush()
            for index, track in enumerate(payload.inputs):
                session.add(
                    JobTrack(
                        job_id=job_id,
                        track_index=index,
                        input_path=track.path,
                        offset_seconds=track.offset_seconds,
                        status=JobStatus.QUEUED.value,
                    ),
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="submitted",
                status_from=None,
                status_to=JobStatus.QUEUED.value,
                details={"adapter": payload.adapter, "tracks": len(payload.inputs)},
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def get_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.get(TranscriptionJob, job_id)
            if row is None:
                return None
            return _to_job_view(row)

    def get_job_details(self, job_id: str) -> JobDetails | None:
        """Return job details with tracks and event stream."""

        with Session(self.engine) as session:
            row = session.get(TranscriptionJob, job_id)
            if row is None:
                return None
            job = _to_job_view(row)
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.id).asc()),
            ).all()

        events: list[JobEventView] = []
        for event_row in event_rows:
            details: dict[str, Any] = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=event_row.id or 0,
                    job_id=event_row.job_id,
                    event_type=event_row.event_type,
                    status_from=event_row.status_from,
                    status_to=event_row.status_to,
                    created_at=to_utc_aware_datetime(event_row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=job, tracks=self.list_tracks(job_id), events=events)

    def list_tracks(self, job_id: str) -> list[TrackView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobTrack)
                .where(JobTrack.job_id == job_id)
                .order_by(col(JobTrack.track_index).asc()),
            ).all()
        return [_to_track_view(row) for row in rows]

    def list_queued(self, *, limit: int | None = None) -> list[JobView]:
        """Queued jobs in claim (FIFO) order."""

        with Session(self.engine) as session:
            statement = (
                select(TranscriptionJob)
                .where(TranscriptionJob.status == JobStatus.QUEUED.value)
                .order_by(*_fifo_order())
            )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(TranscriptionJob)
                .order_by(col(TranscriptionJob.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(TranscriptionJob.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def count_by_status(self) -> dict[JobStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(TranscriptionJob.status, func.count()).group_by(TranscriptionJob.status),
            ).all()
        counts = {status: 0 for status in JobStatus}
        for status_value, count in rows:
            counts[JobStatus(status_value)] = int(count)
        return counts

    def claim_job(self, *, job_id: str, worker_id: str) -> JobView | None:
        """Atomically move one specific job from queued to running.

        Returns ``None`` when another writer got there first.
        """

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TranscriptionJob)
                .where(
                    col(TranscriptionJob.job_id) == job_id,
                    col(TranscriptionJob.status) == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    worker_id=worker_id,
                    started_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="claimed",
                status_from=JobStatus.QUEUED.value,
                status_to=JobStatus.RUNNING.value,
                details={"worker_id": worker_id},
            )
            session.commit()
            claimed = session.get(TranscriptionJob, job_id)
            if claimed is None:
                raise RuntimeError(f"Claimed job vanished: {job_id}")
            return _to_job_view(claimed)

    def claim_next_queued(self, *, worker_id: str) -> JobView | None:
        """Claim the oldest queued job, retrying when a concurrent claim wins."""

        while True:
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(TranscriptionJob.job_id)
                    .where(TranscriptionJob.status == JobStatus.QUEUED.value)
                    .order_by(*_fifo_order())
                    .limit(1),
                ).one_or_none()
            if candidate is None:
                return None
            claimed = self.claim_job(job_id=candidate, worker_id=worker_id)
            if claimed is not None:
                return claimed

    def update_progress(self, *, job_id: str, percent: float) -> bool:
        """Raise progress of a running job; lower or equal values are ignored."""

        value = max(0.0, min(100.0, percent))
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TranscriptionJob)
                .where(
                    col(TranscriptionJob.job_id) == job_id,
                    col(TranscriptionJob.status) == JobStatus.RUNNING.value,
                    col(TranscriptionJob.progress) < value,
                )
                .values(progress=value, updated_at=to_db_datetime(utc_now())),
            )
            session.commit()
            return result.rowcount == 1

    def start_track(self, *, job_id: str, track_index: int) -> bool:
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobTrack)
                .where(
                    col(JobTrack.job_id) == job_id,
                    col(JobTrack.track_index) == track_index,
                    col(JobTrack.status) == JobStatus.QUEUED.value,
                )
                .values(status=JobStatus.RUNNING.value, started_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="track_started",
                status_from=JobStatus.QUEUED.value,
                status_to=JobStatus.RUNNING.value,
                details={"track_index": track_index},
            )
            session.commit()
            return True

    def finish_track(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        track_index: int,
        status: JobStatus,
        output_path: str | None = None,
        exit_code: int | None = None,
        error_detail: str | None = None,
    ) -> bool:
        """Move a running track to a terminal status."""

        if not status.is_terminal:
            raise ValueError(f"Unsupported track terminal status: {status}")
        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(JobTrack)
                .where(
                    col(JobTrack.job_id) == job_id,
                    col(JobTrack.track_index) == track_index,
                    col(JobTrack.status) == JobStatus.RUNNING.value,
                )
                .values(
                    status=status.value,
                    output_path=output_path,
                    exit_code=exit_code,
                    error_detail=error_detail,
                    completed_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=f"track_{status.value}",
                status_from=JobStatus.RUNNING.value,
                status_to=status.value,
                details={
                    "track_index": track_index,
                    "exit_code": exit_code,
                    "error_detail": error_detail,
                },
            )
            session.commit()
            return True

    def complete_job(
        self,
        *,
        job_id: str,
        output_path: str | None,
        exit_code: int | None = 0,
    ) -> bool:
        """Mark a running job as succeeded with full progress.

        Refused once a kill request has been persisted for the job.
        """

        values: dict[str, Any] = {"progress": 100.0, "exit_code": exit_code}
        if output_path is not None:
            values["output_path"] = output_path
        return self.update_job_status(
            job_id=job_id,
            expected=JobStatus.RUNNING,
            status=JobStatus.SUCCEEDED,
            values=values,
            details={"output_path": output_path, "exit_code": exit_code},
            unless_kill_requested=True,
        )

    def fail_job(self, *, job_id: str, error_detail: str, exit_code: int | None = None) -> bool:
        """Mark a running job as failed."""

        return self.update_job_status(
            job_id=job_id,
            expected=JobStatus.RUNNING,
            status=JobStatus.FAILED,
            values={"error_detail": error_detail, "exit_code": exit_code},
            details={"error_detail": error_detail, "exit_code": exit_code},
        )

    def kill_job(self, *, job_id: str, exit_code: int | None, error_detail: str) -> bool:
        """Mark a running job as killed."""

        return self.update_job_status(
            job_id=job_id,
            expected=JobStatus.RUNNING,
            status=JobStatus.KILLED,
            values={"error_detail": error_detail, "exit_code": exit_code},
            details={"exit_code": exit_code},
        )

    def update_job_status(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        expected: JobStatus,
        status: JobStatus,
        values: dict[str, Any] | None = None,
        details: dict[str, object] | None = None,
        unless_kill_requested: bool = False,
    ) -> bool:
        """Compare-and-swap the job status, appending one event on success."""

        if expected.is_terminal:
            raise ValueError(f"Terminal status cannot transition: {expected}")
        now = utc_now()
        update_values: dict[str, Any] = {
            "status": status.value,
            "updated_at": to_db_datetime(now),
        }
        if status.is_terminal:
            update_values["completed_at"] = to_db_datetime(now)
        update_values.update(values or {})
        conditions = [
            col(TranscriptionJob.job_id) == job_id,
            col(TranscriptionJob.status) == expected.value,
        ]
        if unless_kill_requested:
            conditions.append(col(TranscriptionJob.kill_requested_at).is_(None))

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TranscriptionJob)
                .where(*conditions)
                .values(**update_values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=status.value,
                status_from=expected.value,
                status_to=status.value,
                details={key: value for key, value in (details or {}).items() if value is not None},
            )
            session.commit()
            return True

    def set_merge_status(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        expected: Iterable[MergeStatus],
        status: MergeStatus,
        merge_error: str | None = None,
        output_path: str | None = None,
    ) -> bool:
        """Compare-and-swap the merge status of a multitrack job."""

        expected_values = [item.value for item in expected]
        values: dict[str, Any] = {
            "merge_status": status.value,
            "merge_error": merge_error,
            "updated_at": to_db_datetime(utc_now()),
        }
        if output_path is not None:
            values["output_path"] = output_path

        with Session(self.engine) as session:
            row = session.get(TranscriptionJob, job_id)
            if row is None or row.track_count < 2:  # noqa: PLR2004
                return False
            previous = row.merge_status
            result = session.exec(
                sa_update(TranscriptionJob)
                .where(
                    col(TranscriptionJob.job_id) == job_id,
                    col(TranscriptionJob.track_count) > 1,
                    col(TranscriptionJob.merge_status).in_(expected_values),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=f"merge_{status.value}",
                status_from=None,
                status_to=None,
                details={
                    key: value
                    for key, value in {
                        "merge_status_from": previous,
                        "merge_status_to": status.value,
                        "merge_error": merge_error,
                        "output_path": output_path,
                    }.items()
                    if value is not None
                },
            )
            session.commit()
            return True

    def request_kill(self, *, job_id: str) -> bool:
        """Persist a kill request so the worker process owning the job sees it."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TranscriptionJob)
                .where(
                    col(TranscriptionJob.job_id) == job_id,
                    col(TranscriptionJob.status) == JobStatus.RUNNING.value,
                    col(TranscriptionJob.kill_requested_at).is_(None),
                )
                .values(kill_requested_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="kill_requested",
                status_from=JobStatus.RUNNING.value,
                status_to=JobStatus.RUNNING.value,
                details={},
            )
            session.commit()
            return True

    def list_kill_requested(self, job_ids: Iterable[str]) -> list[str]:
        """Running jobs among ``job_ids`` with a persisted kill request."""

        ids = list(job_ids)
        if not ids:
            return []
        with Session(self.engine) as session:
            rows = session.exec(
                select(TranscriptionJob.job_id).where(
                    col(TranscriptionJob.job_id).in_(ids),
                    TranscriptionJob.status == JobStatus.RUNNING.value,
                    col(TranscriptionJob.kill_requested_at).is_not(None),
                ),
            ).all()
        return list(rows)

    def recover_interrupted_jobs(self) -> list[str]:
        """Fail jobs left running by a previous process.

        Process handles are not durable, so nothing can be reattached; the
        jobs are not requeued either.
        """

        with Session(self.engine) as session:
            job_ids = list(
                session.exec(
                    select(TranscriptionJob.job_id).where(
                        TranscriptionJob.status == JobStatus.RUNNING.value,
                    ),
                ).all(),
            )
        recovered: list[str] = []
        for job_id in job_ids:
            if self.fail_job(job_id=job_id, error_detail=INTERRUPTED_DETAIL):
                for track in self.list_tracks(job_id):
                    if track.status == JobStatus.RUNNING:
                        self.finish_track(
                            job_id=job_id,
                            track_index=track.track_index,
                            status=JobStatus.FAILED,
                            error_detail=INTERRUPTED_DETAIL,
                        )
                recovered.append(job_id)
        return recovered

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: str | None,
        status_to: str | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _fifo_order() -> tuple[Any, ...]:
    # rowid breaks ties between jobs submitted within the same clock tick
    return (col(TranscriptionJob.created_at).asc(), text("transcription_jobs.rowid ASC"))


def _to_job_view(row: TranscriptionJob) -> JobView:
    parameters = json.loads(row.parameters_json) if row.parameters_json else {}
    return JobView(
        job_id=row.job_id,
        title=row.title,
        adapter=row.adapter,
        parameters=parameters if isinstance(parameters, dict) else {},
        status=JobStatus(row.status),
        progress=float(row.progress),
        merge_status=MergeStatus(row.merge_status),
        track_count=row.track_count,
        worker_id=row.worker_id,
        exit_code=row.exit_code,
        error_detail=row.error_detail,
        merge_error=row.merge_error,
        output_path=row.output_path,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        kill_requested_at=(
            to_utc_aware_datetime(row.kill_requested_at)
            if row.kill_requested_at is not None
            else None
        ),
    )


def _to_track_view(row: JobTrack) -> TrackView:
    return TrackView(
        job_id=row.job_id,
        track_index=row.track_index,
        input_path=row.input_path,
        offset_seconds=float(row.offset_seconds),
        status=JobStatus(row.status),
        output_path=row.output_path,
        exit_code=row.exit_code,
        error_detail=row.error_detail,
        started_at=to_utc_aware_datetime(row.started_at) if row.started_at is not None else None,
        completed_at=(
            to_utc_aware_datetime(row.completed_at) if row.completed_at is not None else None
        ),
    )
