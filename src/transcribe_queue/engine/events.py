"""Fire-and-forget lifecycle logging for jobs and workers."""

from __future__ import annotations

import logging


class JobEventLog:
    """Emits ``key=value`` lifecycle lines.

    Never raises: a failing handler must not fail the job being reported.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self._logger = logger or logging.getLogger("transcribe_queue.events")

    def job_started(self, *, job_id: str, adapter: str, worker_id: str, track_count: int) -> None:
        self._emit(
            logging.INFO,
            "job_started",
            job_id=job_id,
            adapter=adapter,
            worker_id=worker_id,
            tracks=track_count,
        )

    def job_completed(self, *, job_id: str, duration_seconds: float, merge_status: str) -> None:
        self._emit(
            logging.INFO,
            "job_completed",
            job_id=job_id,
            duration=f"{duration_seconds:.2f}s",
            merge_status=merge_status,
        )

    def job_failed(self, *, job_id: str, error: str, exit_code: int | None = None) -> None:
        self._emit(logging.WARNING, "job_failed", job_id=job_id, exit_code=exit_code, error=error)

    def job_killed(self, *, job_id: str, exit_code: int | None, signal_name: str | None) -> None:
        self._emit(
            logging.INFO,
            "job_killed",
            job_id=job_id,
            exit_code=exit_code,
            signal=signal_name,
        )

    def worker_operation(self, *, worker_id: str, operation: str, **fields: object) -> None:
        self._emit(logging.DEBUG, "worker_operation", worker_id=worker_id, op=operation, **fields)

    def performance(self, *, job_id: str, stage: str, duration_seconds: float) -> None:
        self._emit(
            logging.DEBUG,
            "performance",
            job_id=job_id,
            stage=stage,
            duration=f"{duration_seconds:.3f}s",
        )

    def _emit(self, level: int, event: str, **fields: object) -> None:
        try:
            rendered = " ".join(
                f"{key}={value}" for key, value in fields.items() if value is not None
            )
            self._logger.log(level, "%s %s", event, rendered)
        except Exception:  # noqa: BLE001
            # handlers may raise on closed streams during shutdown
            logging.getLogger(__name__).debug("Lifecycle log emit failed", exc_info=True)
