"""Domain models for the transcription job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job and track lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    KILLED = "killed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.KILLED})


class MergeStatus(str, Enum):
    """Merge sub-lifecycle of multitrack jobs."""

    NOT_APPLICABLE = "not_applicable"
    PENDING = "pending"
    MERGING = "merging"
    MERGED = "merged"
    FAILED = "failed"


class KillResult(str, Enum):
    ACK = "ack"
    NOT_RUNNING = "not_running"


@dataclass(slots=True, frozen=True)
class TrackInput:
    """One input file of a job and its declared start offset."""

    path: str
    offset_seconds: float = 0.0


@dataclass(slots=True)
class JobSubmit:
    """Input payload for submitting a transcription job."""

    adapter: str
    inputs: tuple[TrackInput, ...]
    parameters: dict[str, Any] = field(default_factory=dict)
    title: str | None = None
    job_id: str | None = None

    @property
    def is_multitrack(self) -> bool:
        return len(self.inputs) > 1


@dataclass(slots=True)
class JobView:
    """Readable job view for services, workers and the CLI."""

    job_id: str
    title: str | None
    adapter: str
    parameters: dict[str, Any]
    status: JobStatus
    progress: float
    merge_status: MergeStatus
    track_count: int
    worker_id: str | None
    exit_code: int | None
    error_detail: str | None
    merge_error: str | None
    output_path: str | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime
    kill_requested_at: datetime | None = None

    @property
    def is_multitrack(self) -> bool:
        return self.track_count > 1


@dataclass(slots=True)
class TrackView:
    job_id: str
    track_index: int
    input_path: str
    offset_seconds: float
    status: JobStatus
    output_path: str | None
    exit_code: int | None
    error_detail: str | None
    started_at: datetime | None
    completed_at: datetime | None


@dataclass(slots=True)
class JobEventView:
    """Job event entry for the audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job with its tracks and event stream."""

    job: JobView
    tracks: list[TrackView]
    events: list[JobEventView]


@dataclass(slots=True, frozen=True)
class JobStatusView:
    status: JobStatus
    progress: float
    merge_status: MergeStatus | None = None


@dataclass(slots=True, frozen=True)
class QueueStats:
    queued_count: int
    running_count: int
    worker_count: int


@dataclass(slots=True)
class TranscriptSegment:
    start: float
    end: float
    text: str
    speaker: str | None = None
    track_index: int | None = None


@dataclass(slots=True)
class Transcript:
    segments: list[TranscriptSegment] = field(default_factory=list)
    language: str | None = None
