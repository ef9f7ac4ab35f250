"""Kill-by-job-id on top of the process supervisor."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from transcribe_queue.engine.errors import JobNotFoundError
from transcribe_queue.engine.models import JobStatus, KillResult
from transcribe_queue.engine.process import ProcessHandle, ProcessSupervisor
from transcribe_queue.engine.repository import JobRepository


@dataclass(slots=True)
class _ActiveEntry:
    handle: ProcessHandle | None = None
    kill_pending: bool = False
    closed: bool = False


@dataclass(slots=True)
class ActiveProcessTable:
    """In-memory map of running jobs to their live process handles.

    A job enters the table on its first ``attach`` or kill request and leaves
    it on ``forget``. Kill requests that arrive while no process is attached
    (between claim and spawn, or between tracks) are remembered as pending.
    """

    _entries: dict[str, _ActiveEntry] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def attach(self, job_id: str, handle: ProcessHandle) -> bool:
        """Register the live handle; returns whether a kill is already pending."""

        with self._lock:
            entry = self._entries.setdefault(job_id, _ActiveEntry())
            entry.handle = handle
            return entry.kill_pending

    def detach(self, job_id: str) -> None:
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is not None:
                entry.handle = None

    def request_kill(self, job_id: str) -> tuple[bool, ProcessHandle | None]:
        """Record a kill request.

        Returns ``(accepted, handle)``. ``accepted`` is false once the job was
        closed for kills. With a live ``handle`` the caller signals it directly;
        without one the kill stays pending for the owning worker.
        """

        with self._lock:
            entry = self._entries.setdefault(job_id, _ActiveEntry())
            if entry.closed:
                return False, None
            if entry.handle is None:
                entry.kill_pending = True
            return True, entry.handle

    def withdraw_kill(self, job_id: str) -> None:
        with self._lock:
            entry = self._entries.get(job_id)
            if entry is None:
                return
            entry.kill_pending = False
            if entry.handle is None and not entry.closed:
                del self._entries[job_id]

    def kill_requested(self, job_id: str) -> bool:
        with self._lock:
            entry = self._entries.get(job_id)
            return entry is not None and entry.kill_pending

    def close(self, job_id: str) -> bool:
        """Stop accepting kills for the job; returns whether one was pending."""

        with self._lock:
            entry = self._entries.setdefault(job_id, _ActiveEntry())
            entry.closed = True
            entry.handle = None
            return entry.kill_pending

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._entries.pop(job_id, None)

    def active_job_ids(self) -> list[str]:
        with self._lock:
            return [job_id for job_id, entry in self._entries.items() if entry.handle is not None]


class CancellationController:
    """Cooperative cancellation of running jobs.

    ``kill`` returns once the termination signal has been issued. The owning
    worker records the Killed status when it observes the process exit.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        supervisor: ProcessSupervisor,
        active: ActiveProcessTable,
        logger: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.supervisor = supervisor
        self.active = active
        self._logger = logger or logging.getLogger(__name__)

    def kill(self, job_id: str) -> KillResult:
        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.RUNNING:
            return KillResult.NOT_RUNNING

        accepted, handle = self.active.request_kill(job_id)
        if not accepted:
            return KillResult.NOT_RUNNING
        if handle is not None:
            if self.supervisor.kill(handle) or handle.kill_requested:
                return KillResult.ACK
            # the process already exited on its own
            return KillResult.NOT_RUNNING

        # no live process here: the owning worker (maybe in another process)
        # reads the persisted request, so no pending entry is kept
        recorded = self.repository.request_kill(job_id=job_id)
        self.active.withdraw_kill(job_id)
        if recorded:
            self._logger.info("Kill of job %s recorded for its worker", job_id)
            return KillResult.ACK
        current = self.repository.get_job(job_id)
        if current is not None and current.status == JobStatus.RUNNING:
            return KillResult.ACK
        return KillResult.NOT_RUNNING

    def kill_after(self, job_id: str, seconds: float) -> threading.Timer:
        """Schedule a kill; the caller owns (and may cancel) the returned timer."""

        timer = threading.Timer(seconds, self._deadline_kill, args=(job_id, seconds))
        timer.daemon = True
        timer.start()
        return timer

    def _deadline_kill(self, job_id: str, seconds: float) -> None:
        try:
            result = self.kill(job_id)
        except Exception:
            self._logger.exception("Deadline kill of job %s failed", job_id)
            return
        self._logger.info("Deadline of %.1fs reached for job %s: %s", seconds, job_id, result.value)
