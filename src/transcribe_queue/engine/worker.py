"""Worker pool that claims queued jobs and drives adapter processes."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from transcribe_queue.engine.adapters.base import AdapterDescriptor, AdapterRequest
from transcribe_queue.engine.adapters.registry import AdapterRegistry
from transcribe_queue.engine.cancellation import ActiveProcessTable
from transcribe_queue.engine.errors import (
    AdapterNotFoundError,
    ProcessRuntimeError,
    ProcessStartError,
    ValidationError,
)
from transcribe_queue.engine.events import JobEventLog
from transcribe_queue.engine.merge import MergeCoordinator
from transcribe_queue.engine.models import JobStatus, JobView, MergeStatus, TrackView
from transcribe_queue.engine.process import ProcessExit, ProcessHandle, ProcessSupervisor
from transcribe_queue.engine.progress import ProgressTracker, scale_track_progress
from transcribe_queue.engine.repository import JobRepository

KILLED_DETAIL = "killed by request"

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    killed: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.killed += other.killed
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class _TrackResult:
    status: JobStatus
    output_path: Path | None = None


class TranscriptionWorker:
    """Executes one claimed job at a time: tracks, then the merge stage."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: AdapterRegistry,
        supervisor: ProcessSupervisor,
        active: ActiveProcessTable,
        merger: MergeCoordinator,
        workdir: Path,
        worker_id: str,
        event_log: JobEventLog | None = None,
        kill_poll_interval_seconds: float = 1.0,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.supervisor = supervisor
        self.active = active
        self.merger = merger
        self.workdir = workdir
        self.worker_id = worker_id
        self.event_log = event_log or JobEventLog()
        self.kill_poll_interval_seconds = kill_poll_interval_seconds
        self.current_job_id: str | None = None

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        job = self.repository.claim_next_queued(worker_id=self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        status = self.process_job(job)
        if status == JobStatus.SUCCEEDED:
            summary.succeeded = 1
        elif status == JobStatus.KILLED:
            summary.killed = 1
        else:
            summary.failed = 1
        return summary

    def process_job(self, job: JobView) -> JobStatus:
        """Drive a claimed (Running) job to its terminal status."""

        self.current_job_id = job.job_id
        started = time.monotonic()
        self.event_log.job_started(
            job_id=job.job_id,
            adapter=job.adapter,
            worker_id=self.worker_id,
            track_count=job.track_count,
        )
        try:
            status = self._execute(job, started=started)
        except Exception as error:
            logger.exception("Worker %s crashed on job %s", self.worker_id, job.job_id)
            self._fail_running_tracks(job.job_id, detail=f"internal error: {error}")
            self._fail(job.job_id, detail=f"internal error: {error}", exit_code=None)
            status = JobStatus.FAILED
        finally:
            self.active.forget(job.job_id)
            self.current_job_id = None
        return status

    def _execute(self, job: JobView, *, started: float) -> JobStatus:
        try:
            descriptor = self.registry.lookup(job.adapter)
        except AdapterNotFoundError as error:
            return self._fail(job.job_id, detail=str(error), exit_code=None)

        job_dir = self.workdir / job.job_id
        last_output: Path | None = None
        for track in self.repository.list_tracks(job.job_id):
            if self._kill_requested(job.job_id):
                return self._kill(job.job_id, exit_code=None, signal_name=None)
            result = self._run_track(job, descriptor, track, job_dir)
            if result.status != JobStatus.SUCCEEDED:
                return result.status
            last_output = result.output_path

        if self.active.close(job.job_id):
            return self._kill(job.job_id, exit_code=None, signal_name=None)

        merge_status = MergeStatus.NOT_APPLICABLE
        output_path = str(last_output) if last_output is not None else None
        if job.is_multitrack:
            merge_started = time.monotonic()
            merge_status = self.merger.merge(job.job_id)
            self.event_log.performance(
                job_id=job.job_id,
                stage="merge",
                duration_seconds=time.monotonic() - merge_started,
            )
            # merged output, if any, was stored by the merge stage
            output_path = None

        if not self.repository.complete_job(job_id=job.job_id, output_path=output_path):
            current = self.repository.get_job(job.job_id)
            if current is not None and current.status == JobStatus.RUNNING:
                # a kill persisted by another process arrived after the last track
                return self._kill(job.job_id, exit_code=None, signal_name=None)
            return current.status if current is not None else JobStatus.FAILED
        self.event_log.job_completed(
            job_id=job.job_id,
            duration_seconds=time.monotonic() - started,
            merge_status=merge_status.value,
        )
        return JobStatus.SUCCEEDED

    def _run_track(
        self,
        job: JobView,
        descriptor: AdapterDescriptor,
        track: TrackView,
        job_dir: Path,
    ) -> _TrackResult:
        output_dir = job_dir / f"track-{track.track_index}"
        output_dir.mkdir(parents=True, exist_ok=True)
        self.repository.start_track(job_id=job.job_id, track_index=track.track_index)

        request = AdapterRequest(
            input_path=Path(track.input_path),
            output_dir=output_dir,
            parameters=job.parameters,
            track_index=track.track_index,
            track_count=job.track_count,
        )
        try:
            command = descriptor.build_command(request)
            handle = self.supervisor.start(command)
        except (ProcessStartError, ValidationError) as error:
            return self._fail_track(job.job_id, track, detail=str(error), exit_code=None)

        if self.active.attach(job.job_id, handle):
            self.supervisor.kill(handle)
        watch_stop = threading.Event()
        watcher = threading.Thread(
            target=self._watch_persisted_kill,
            args=(job.job_id, handle, watch_stop),
            daemon=True,
            name=f"{self.worker_id}-kill-watch",
        )
        watcher.start()
        try:
            self._stream_progress(job, descriptor, track, handle)
            result = self.supervisor.wait(handle)
        except Exception:
            self.supervisor.kill(handle)
            self.supervisor.wait(handle)
            raise
        finally:
            watch_stop.set()
            watcher.join()
            self.active.detach(job.job_id)

        self.event_log.performance(
            job_id=job.job_id,
            stage=f"track_{track.track_index}",
            duration_seconds=result.duration_seconds,
        )
        if result.killed:
            self.repository.finish_track(
                job_id=job.job_id,
                track_index=track.track_index,
                status=JobStatus.KILLED,
                exit_code=result.exit_code,
                error_detail=KILLED_DETAIL,
            )
            return _TrackResult(
                self._kill(job.job_id, exit_code=result.exit_code, signal_name=result.signal_name),
            )
        return self._resolve_exit(job, descriptor, track, result, command.output_path)

    def _kill_requested(self, job_id: str) -> bool:
        if self.active.kill_requested(job_id):
            return True
        return bool(self.repository.list_kill_requested([job_id]))

    def _watch_persisted_kill(
        self,
        job_id: str,
        handle: ProcessHandle,
        stop: threading.Event,
    ) -> None:
        # kill requests from other processes (e.g. the CLI) only reach the store
        while not stop.wait(timeout=self.kill_poll_interval_seconds):
            try:
                requested = self.repository.list_kill_requested([job_id])
            except Exception:
                logger.exception("Kill watch for job %s failed", job_id)
                continue
            if requested:
                if self.supervisor.kill(handle):
                    logger.info("Applied persisted kill request for job %s", job_id)
                return

    def _stream_progress(
        self,
        job: JobView,
        descriptor: AdapterDescriptor,
        track: TrackView,
        handle: ProcessHandle,
    ) -> None:
        tracker = ProgressTracker(descriptor.progress_parser, logger=logger)
        for event in tracker.track(handle.iter_stdout()):
            self.repository.update_progress(
                job_id=job.job_id,
                percent=scale_track_progress(
                    event.percent,
                    track_index=track.track_index,
                    track_count=job.track_count,
                ),
            )

    def _resolve_exit(  # noqa: PLR0913
        self,
        job: JobView,
        descriptor: AdapterDescriptor,
        track: TrackView,
        result: ProcessExit,
        output_path: Path,
    ) -> _TrackResult:
        try:
            result.raise_for_status()
        except ProcessRuntimeError as error:
            return self._fail_track(job.job_id, track, detail=str(error), exit_code=error.exit_code)

        if not output_path.exists():
            return self._fail_track(
                job.job_id,
                track,
                detail=f"Adapter exited without writing output: {output_path}",
                exit_code=result.exit_code,
            )
        if not job.is_multitrack:
            # multitrack outputs are parsed by the merge stage
            try:
                descriptor.parse_output(output_path)
            except ValueError as error:
                return self._fail_track(
                    job.job_id,
                    track,
                    detail=f"Invalid adapter output: {error}",
                    exit_code=result.exit_code,
                )

        self.repository.finish_track(
            job_id=job.job_id,
            track_index=track.track_index,
            status=JobStatus.SUCCEEDED,
            output_path=str(output_path),
            exit_code=result.exit_code,
        )
        return _TrackResult(JobStatus.SUCCEEDED, output_path)

    def _fail_track(
        self,
        job_id: str,
        track: TrackView,
        *,
        detail: str,
        exit_code: int | None,
    ) -> _TrackResult:
        self.repository.finish_track(
            job_id=job_id,
            track_index=track.track_index,
            status=JobStatus.FAILED,
            exit_code=exit_code,
            error_detail=detail,
        )
        return _TrackResult(self._fail(job_id, detail=detail, exit_code=exit_code))

    def _fail_running_tracks(self, job_id: str, *, detail: str) -> None:
        for track in self.repository.list_tracks(job_id):
            if track.status == JobStatus.RUNNING:
                self.repository.finish_track(
                    job_id=job_id,
                    track_index=track.track_index,
                    status=JobStatus.FAILED,
                    error_detail=detail,
                )

    def _fail(self, job_id: str, *, detail: str, exit_code: int | None) -> JobStatus:
        if self.repository.fail_job(job_id=job_id, error_detail=detail, exit_code=exit_code):
            self.event_log.job_failed(job_id=job_id, error=detail, exit_code=exit_code)
        return JobStatus.FAILED

    def _kill(self, job_id: str, *, exit_code: int | None, signal_name: str | None) -> JobStatus:
        if self.repository.kill_job(job_id=job_id, exit_code=exit_code, error_detail=KILLED_DETAIL):
            self.event_log.job_killed(job_id=job_id, exit_code=exit_code, signal_name=signal_name)
        return JobStatus.KILLED


class WorkerPool:
    """Fixed number of worker threads sharing one job queue.

    Idle workers poll the store and then wait on a wake-up event, which
    ``notify`` sets whenever a job is submitted.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        registry: AdapterRegistry,
        supervisor: ProcessSupervisor,
        active: ActiveProcessTable,
        merger: MergeCoordinator,
        workdir: Path,
        worker_count: int = 2,
        poll_interval_seconds: float = 1.0,
        event_log: JobEventLog | None = None,
        name_prefix: str = "worker",
    ) -> None:
        if worker_count <= 0:
            raise ValueError("worker_count must be > 0.")
        self.repository = repository
        self.supervisor = supervisor
        self.active = active
        self.poll_interval_seconds = poll_interval_seconds
        self.event_log = event_log or JobEventLog()
        self.workers = [
            TranscriptionWorker(
                repository=repository,
                registry=registry,
                supervisor=supervisor,
                active=active,
                merger=merger,
                workdir=workdir,
                worker_id=f"{name_prefix}-{index}",
                event_log=self.event_log,
                kill_poll_interval_seconds=poll_interval_seconds,
            )
            for index in range(worker_count)
        ]
        self.summary = WorkerRunSummary()
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()
        self._wakeup = threading.Condition()
        self._summary_lock = threading.Lock()
        self._generation = 0
        self._max_idle_polls: int | None = None

    @property
    def worker_count(self) -> int:
        return len(self.workers)

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> list[str]:
        """Recover interrupted jobs and start the worker threads."""

        if self._threads:
            raise RuntimeError("Worker pool already started.")
        recovered = self.repository.recover_interrupted_jobs()
        for job_id in recovered:
            logger.warning("Job %s was running when the engine stopped; marked failed", job_id)
        self._stop.clear()
        for worker in self.workers:
            thread = threading.Thread(
                target=self._worker_loop,
                args=(worker,),
                daemon=True,
                name=worker.worker_id,
            )
            self._threads.append(thread)
            thread.start()
        logger.info("Worker pool started with %d workers", self.worker_count)
        return recovered

    def notify(self) -> None:
        with self._wakeup:
            self._generation += 1
            self._wakeup.notify_all()

    def stop(self, *, kill_running: bool = False, timeout: float | None = None) -> None:
        """Stop claiming new jobs and join the workers.

        In-flight jobs run to completion unless ``kill_running`` is set.
        """

        self._stop.set()
        if kill_running:
            for worker in self.workers:
                job_id = worker.current_job_id
                if job_id is None:
                    continue
                _, handle = self.active.request_kill(job_id)
                if handle is not None:
                    self.supervisor.kill(handle)
        self.notify()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = [thread for thread in self._threads if thread.is_alive()]
        logger.info("Worker pool stopped")

    def serve(self, *, max_idle_polls: int | None = None) -> WorkerRunSummary:
        """Run the pool in the foreground until signalled or idle.

        With ``max_idle_polls`` the pool stops once every worker found the
        queue empty that many times in a row.
        """

        self._max_idle_polls = max_idle_polls
        with self._signal_handlers():
            self.start()
            try:
                while not self._stop.wait(timeout=0.2):
                    if not self.running:
                        break
            finally:
                self.stop()
        return self.summary

    def _worker_loop(self, worker: TranscriptionWorker) -> None:
        consecutive_idle = 0
        while not self._stop.is_set():
            with self._wakeup:
                seen = self._generation
            try:
                summary = worker.run_once()
            except Exception:
                logger.exception("Worker %s loop error", worker.worker_id)
                summary = WorkerRunSummary(idle_polls=1)
            with self._summary_lock:
                self.summary.add(summary)

            if summary.processed:
                consecutive_idle = 0
                continue
            consecutive_idle += 1
            if self._max_idle_polls is not None and consecutive_idle >= self._max_idle_polls:
                self.event_log.worker_operation(
                    worker_id=worker.worker_id,
                    operation="idle_exit",
                    idle_polls=consecutive_idle,
                )
                return
            with self._wakeup:
                if self._stop.is_set():
                    return
                if self._generation != seen:
                    # a submission arrived while this worker was polling
                    continue
                self._wakeup.wait(timeout=self.poll_interval_seconds)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping worker pool", name)
            self._stop.set()
            self.notify()

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
