"""SQLModel ORM tables for the transcription job queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class TranscriptionJob(SQLModel, table=True):
    __tablename__ = "transcription_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_transcription_jobs_queue", "status", "created_at"),)

    job_id: str = Field(primary_key=True)
    title: str | None = None
    adapter: str = Field(index=True)
    parameters_json: str = Field(sa_column=Column(Text, nullable=False))
    status: str = Field(index=True)
    progress: float = Field(default=0.0)
    merge_status: str = Field(default="not_applicable")
    track_count: int = Field(default=1)
    worker_id: str | None = Field(default=None, index=True)
    exit_code: int | None = None
    error_detail: str | None = Field(default=None, sa_column=Column(Text))
    merge_error: str | None = Field(default=None, sa_column=Column(Text))
    output_path: str | None = None
    kill_requested_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class JobTrack(SQLModel, table=True):
    __tablename__ = "job_tracks"  # type: ignore[bad-override]
    __table_args__ = (UniqueConstraint("job_id", "track_index", name="uq_job_tracks_job_index"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("transcription_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    track_index: int
    input_path: str
    offset_seconds: float = Field(default=0.0)
    status: str
    output_path: str | None = None
    exit_code: int | None = None
    error_detail: str | None = Field(default=None, sa_column=Column(Text))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("transcription_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
