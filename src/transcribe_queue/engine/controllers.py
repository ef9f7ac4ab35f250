"""Controllers for transcription queue CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from transcribe_queue.config import Settings
from transcribe_queue.engine.bootstrap import engine_runtime
from transcribe_queue.engine.errors import ValidationError
from transcribe_queue.engine.models import JobStatus, JobSubmit, KillResult
from transcribe_queue.engine.services import build_track_inputs


@dataclass(slots=True)
class SubmitJobCommand:
    """CLI input for job submission."""

    db_path: Path | None
    adapter: str
    inputs: tuple[Path, ...]
    offsets: tuple[float, ...] = ()
    language: str | None = None
    model: str | None = None
    params: tuple[str, ...] = ()
    title: str | None = None


@dataclass(slots=True)
class JobRefCommand:
    """CLI input for commands addressing one job."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    workers: int | None = None
    max_idle_polls: int | None = None


class TranscriptionCliController:
    """Formats engine use cases as printable lines."""

    def submit(self, command: SubmitJobCommand) -> list[str]:
        parameters = _parse_params(command.params)
        if command.language is not None:
            parameters["language"] = command.language
        if command.model is not None:
            parameters["model"] = command.model

        settings = Settings.from_env(db_path=command.db_path)
        with engine_runtime(settings) as engine:
            job_id = engine.service.submit_job(
                JobSubmit(
                    adapter=command.adapter,
                    inputs=build_track_inputs(command.inputs, command.offsets),
                    parameters=parameters,
                    title=command.title,
                ),
            )
        return [f"Job submitted: {job_id}"]

    def status(self, command: JobRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with engine_runtime(settings) as engine:
            status = engine.service.get_status(command.job_id)
        lines = [
            f"Job: {command.job_id}",
            f"Status: {status.status.value}",
            f"Progress: {status.progress:.1f}%",
        ]
        if status.merge_status is not None:
            lines.append(f"Merge: {status.merge_status.value}")
        return lines

    def inspect(self, command: JobRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with engine_runtime(settings) as engine:
            details = engine.service.get_job_details(command.job_id)

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Title: {job.title or '-'}",
            f"Adapter: {job.adapter}",
            f"Status: {job.status.value}",
            f"Progress: {job.progress:.1f}%",
            f"Merge: {job.merge_status.value}",
            f"Worker: {job.worker_id or '-'}",
            f"Exit code: {job.exit_code if job.exit_code is not None else '-'}",
            f"Error: {job.error_detail or '-'}",
            f"Merge error: {job.merge_error or '-'}",
            f"Output: {job.output_path or '-'}",
            f"Tracks: {len(details.tracks)}",
        ]
        for track in details.tracks:
            lines.append(
                f"  #{track.track_index} status={track.status.value} "
                f"offset={track.offset_seconds:g}s input={track.input_path} "
                f"output={track.output_path or '-'}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        status_filter = _parse_status(command.status)
        settings = Settings.from_env(db_path=command.db_path)
        with engine_runtime(settings) as engine:
            jobs = engine.service.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            merge = f" merge={job.merge_status.value}" if job.is_multitrack else ""
            lines.append(
                f"  {job.job_id} adapter={job.adapter} status={job.status.value} "
                f"progress={job.progress:.1f}% tracks={job.track_count}{merge} "
                f"created_at={job.created_at.isoformat()}",
            )
        return lines

    def kill(self, command: JobRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with engine_runtime(settings) as engine:
            result = engine.service.kill(command.job_id)
        if result == KillResult.ACK:
            return [f"Kill requested: {command.job_id}"]
        return [f"Job is not running: {command.job_id}"]

    def merge_retry(self, command: JobRefCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with engine_runtime(settings) as engine:
            status = engine.service.retrigger_merge(command.job_id)
        merge_status = status.merge_status.value if status.merge_status is not None else "-"
        return [f"Merge status: {merge_status}"]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with engine_runtime(settings) as engine:
            stats = engine.service.list_queue_stats()
        return [
            f"Queued: {stats.queued_count}",
            f"Running: {stats.running_count}",
            f"Workers: {stats.worker_count}",
        ]

    def adapters(self, command: StatsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with engine_runtime(settings) as engine:
            descriptors = engine.service.list_adapters()

        lines = [f"Adapters: {len(descriptors)}"]
        for descriptor in descriptors:
            lines.append(
                f"  {descriptor.name} [{', '.join(descriptor.capabilities.labels())}] "
                f"{descriptor.description}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with engine_runtime(settings, worker_count=command.workers) as engine:
            summary = (
                engine.pool.workers[0].run_once()
                if command.once
                else engine.pool.serve(max_idle_polls=command.max_idle_polls)
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} killed={summary.killed} "
            f"idle_polls={summary.idle_polls}",
        ]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    try:
        return JobStatus(value.strip().lower())
    except ValueError as error:
        raise ValidationError(f"Unknown job status: {value}") from error


def _parse_params(items: tuple[str, ...]) -> dict[str, Any]:
    """Parse ``key=value`` pairs; values are JSON when they parse as JSON."""

    parameters: dict[str, Any] = {}
    for item in items:
        key, separator, raw = item.partition("=")
        key = key.strip()
        if not separator or not key:
            raise ValidationError(f"Invalid parameter {item!r}; expected key=value.")
        try:
            parameters[key] = json.loads(raw)
        except json.JSONDecodeError:
            parameters[key] = raw
    return parameters
