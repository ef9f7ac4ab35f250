"""Use-case facade over the job queue engine."""

from __future__ import annotations

import json
import math
import threading
from collections.abc import Sequence
from dataclasses import replace
from pathlib import Path

from transcribe_queue.engine.adapters.base import AdapterDescriptor
from transcribe_queue.engine.adapters.registry import AdapterRegistry
from transcribe_queue.engine.cancellation import CancellationController
from transcribe_queue.engine.errors import (
    AdapterNotFoundError,
    JobNotFoundError,
    ValidationError,
)
from transcribe_queue.engine.merge import MergeCoordinator
from transcribe_queue.engine.models import (
    JobDetails,
    JobStatus,
    JobStatusView,
    JobSubmit,
    JobView,
    KillResult,
    QueueStats,
    TrackInput,
)
from transcribe_queue.engine.repository import JobRepository
from transcribe_queue.engine.worker import WorkerPool


def build_track_inputs(
    paths: Sequence[str | Path],
    offsets: Sequence[float] | None = None,
) -> tuple[TrackInput, ...]:
    """Pair input paths with declared start offsets (default 0 for each)."""

    if not offsets:
        return tuple(TrackInput(path=str(path)) for path in paths)
    if len(offsets) != len(paths):
        raise ValidationError(
            f"Got {len(offsets)} offsets for {len(paths)} inputs; counts must match.",
        )
    return tuple(
        TrackInput(path=str(path), offset_seconds=offset)
        for path, offset in zip(paths, offsets, strict=True)
    )


class TranscriptionService:
    """Submits, inspects and controls transcription jobs."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: AdapterRegistry,
        cancellation: CancellationController,
        merger: MergeCoordinator,
        pool: WorkerPool | None = None,
        worker_count: int = 0,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.cancellation = cancellation
        self.merger = merger
        self.pool = pool
        self.worker_count = worker_count

    def submit_job(self, request: JobSubmit) -> str:
        """Validate and enqueue a job; nothing is stored when validation fails."""

        try:
            descriptor = self.registry.lookup(request.adapter)
        except AdapterNotFoundError as error:
            raise ValidationError(f"Unknown adapter: {request.adapter}") from error

        inputs = _validate_inputs(request.inputs)
        _validate_parameters(descriptor, track_count=len(inputs), parameters=request.parameters)
        if request.job_id is not None and self.repository.get_job(request.job_id) is not None:
            raise ValidationError(f"Job id already exists: {request.job_id}")

        job = self.repository.create_job(replace(request, inputs=inputs))
        if self.pool is not None:
            self.pool.notify()
        return job.job_id

    def get_status(self, job_id: str) -> JobStatusView:
        job = self._require_job(job_id)
        return JobStatusView(
            status=job.status,
            progress=job.progress,
            merge_status=job.merge_status if job.is_multitrack else None,
        )

    def get_job_details(self, job_id: str) -> JobDetails:
        details = self.repository.get_job_details(job_id)
        if details is None:
            raise JobNotFoundError(job_id)
        return details

    def list_jobs(self, *, status: JobStatus | None = None, limit: int = 50) -> list[JobView]:
        return self.repository.list_jobs(status=status, limit=limit)

    def kill(self, job_id: str) -> KillResult:
        return self.cancellation.kill(job_id)

    def kill_after(self, job_id: str, seconds: float) -> threading.Timer:
        self._require_job(job_id)
        return self.cancellation.kill_after(job_id, seconds)

    def list_queue_stats(self) -> QueueStats:
        counts = self.repository.count_by_status()
        return QueueStats(
            queued_count=counts[JobStatus.QUEUED],
            running_count=counts[JobStatus.RUNNING],
            worker_count=self.pool.worker_count if self.pool is not None else self.worker_count,
        )

    def retrigger_merge(self, job_id: str) -> JobStatusView:
        """Re-run a failed merge from the stored track outputs."""

        self.merger.retrigger(job_id)
        return self.get_status(job_id)

    def list_adapters(self) -> list[AdapterDescriptor]:
        return self.registry.list()

    def _require_job(self, job_id: str) -> JobView:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job


def _validate_inputs(inputs: Sequence[TrackInput]) -> tuple[TrackInput, ...]:
    if not inputs:
        raise ValidationError("At least one input is required.")

    normalized: list[TrackInput] = []
    for index, track in enumerate(inputs):
        offset = track.offset_seconds
        if isinstance(offset, bool) or not isinstance(offset, int | float):
            raise ValidationError(f"Offset of input #{index} must be a number.")
        if not math.isfinite(offset) or offset < 0:
            raise ValidationError(f"Offset of input #{index} must be a non-negative number.")
        path = Path(track.path).expanduser()
        if not path.is_file():
            raise ValidationError(f"Input file not found: {track.path}")
        normalized.append(TrackInput(path=str(path.resolve()), offset_seconds=float(offset)))
    return tuple(normalized)


def _validate_parameters(
    descriptor: AdapterDescriptor,
    *,
    track_count: int,
    parameters: dict[str, object],
) -> None:
    try:
        json.dumps(parameters)
    except (TypeError, ValueError) as error:
        raise ValidationError(f"Parameters must be JSON serializable: {error}") from error
    descriptor.validate(track_count=track_count, parameters=parameters)
