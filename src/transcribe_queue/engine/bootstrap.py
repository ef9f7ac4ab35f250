"""Composition root: wires settings into a ready-to-run engine."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from transcribe_queue.config import Settings
from transcribe_queue.engine.adapters.registry import AdapterRegistry, register_all
from transcribe_queue.engine.cancellation import ActiveProcessTable, CancellationController
from transcribe_queue.engine.events import JobEventLog
from transcribe_queue.engine.merge import MergeCoordinator
from transcribe_queue.engine.process import ProcessSupervisor, select_process_group_controller
from transcribe_queue.engine.repository import JobRepository
from transcribe_queue.engine.services import TranscriptionService
from transcribe_queue.engine.worker import WorkerPool

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Engine:
    settings: Settings
    repository: JobRepository
    registry: AdapterRegistry
    supervisor: ProcessSupervisor
    active: ActiveProcessTable
    cancellation: CancellationController
    merger: MergeCoordinator
    pool: WorkerPool
    service: TranscriptionService

    def close(self) -> None:
        self.repository.close()


def build_engine(settings: Settings, *, worker_count: int | None = None) -> Engine:
    """Build every engine component without starting worker threads."""

    settings.validate()
    workdir = settings.engine.workdir
    workdir.mkdir(parents=True, exist_ok=True)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)

    repository = JobRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    registry = register_all(AdapterRegistry(), settings)
    controller = select_process_group_controller(settings.engine.process_group_mode)
    supervisor = ProcessSupervisor(
        controller=controller,
        kill_grace_seconds=settings.engine.kill_grace_seconds,
    )
    if not controller.supports_group_kill:
        logger.warning(
            "Process group kill unavailable (%s); adapter descendants may survive a kill",
            controller.name,
        )
    active = ActiveProcessTable()
    cancellation = CancellationController(
        repository=repository,
        supervisor=supervisor,
        active=active,
    )
    merger = MergeCoordinator(repository=repository, registry=registry, workdir=workdir)
    pool = WorkerPool(
        repository=repository,
        registry=registry,
        supervisor=supervisor,
        active=active,
        merger=merger,
        workdir=workdir,
        worker_count=worker_count or settings.engine.worker_count,
        poll_interval_seconds=settings.engine.poll_interval_seconds,
        event_log=JobEventLog(),
    )
    service = TranscriptionService(
        repository=repository,
        registry=registry,
        cancellation=cancellation,
        merger=merger,
        pool=pool,
    )
    return Engine(
        settings=settings,
        repository=repository,
        registry=registry,
        supervisor=supervisor,
        active=active,
        cancellation=cancellation,
        merger=merger,
        pool=pool,
        service=service,
    )


@contextmanager
def engine_runtime(
    settings: Settings,
    *,
    start_workers: bool = False,
    worker_count: int | None = None,
) -> Iterator[Engine]:
    """Engine with migrated schema; workers run only inside the block."""

    engine = build_engine(settings, worker_count=worker_count)
    engine.repository.init_schema()
    try:
        if start_workers:
            engine.pool.start()
        yield engine
    finally:
        if start_workers:
            engine.pool.stop(kill_running=True)
        engine.close()
