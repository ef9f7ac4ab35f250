"""CLI entrypoint for transcribe-queue."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from transcribe_queue import __version__
from transcribe_queue.config import Settings
from transcribe_queue.engine.controllers import (
    JobRefCommand,
    ListJobsCommand,
    StatsCommand,
    SubmitJobCommand,
    TranscriptionCliController,
    WorkerCommand,
)
from transcribe_queue.engine.errors import TranscribeQueueError
from transcribe_queue.logging_config import configure_logging

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TranscriptionCliController()

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="transcribe-queue")
def transcribe_queue() -> None:
    """Transcription job queue CLI."""

    settings = Settings.from_env()
    configure_logging(settings.logging.level, settings.logging.log_file)


@transcribe_queue.command("submit")
@_db_path_option
@click.option("--adapter", required=True, help="Adapter name, see `adapters`.")
@click.option(
    "--input",
    "inputs",
    type=click.Path(path_type=Path),
    multiple=True,
    required=True,
    help="Input audio file. Repeat for multitrack jobs.",
)
@click.option(
    "--offset",
    "offsets",
    type=float,
    multiple=True,
    help="Start offset in seconds for each input, in input order.",
)
@click.option("--language", default=None, help="Language code, or `auto` to detect.")
@click.option("--model", default=None, help="Adapter model override.")
@click.option(
    "--param",
    "params",
    multiple=True,
    help="Extra adapter parameter as key=value (JSON values accepted). Can be repeated.",
)
@click.option("--title", default=None, help="Optional display name.")
def submit(  # noqa: PLR0913
    db_path: Path | None,
    adapter: str,
    inputs: tuple[Path, ...],
    offsets: tuple[float, ...],
    language: str | None,
    model: str | None,
    params: tuple[str, ...],
    title: str | None,
) -> None:
    """Validate and enqueue a transcription job."""

    _run(
        lambda: CONTROLLER.submit(
            SubmitJobCommand(
                db_path=db_path,
                adapter=adapter,
                inputs=inputs,
                offsets=offsets,
                language=language,
                model=model,
                params=params,
                title=title,
            ),
        ),
    )


@transcribe_queue.command("status")
@_db_path_option
@click.argument("job_id")
def status(db_path: Path | None, job_id: str) -> None:
    """Show status and progress of one job."""

    _run(lambda: CONTROLLER.status(JobRefCommand(db_path=db_path, job_id=job_id)))


@transcribe_queue.command("inspect")
@_db_path_option
@click.argument("job_id")
def inspect_job(db_path: Path | None, job_id: str) -> None:
    """Show job details with tracks and the event trail."""

    _run(lambda: CONTROLLER.inspect(JobRefCommand(db_path=db_path, job_id=job_id)))


@transcribe_queue.command("list")
@_db_path_option
@click.option(
    "--status",
    "status_filter",
    type=click.Choice(["queued", "running", "succeeded", "failed", "killed"]),
    default=None,
    help="Only jobs in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max jobs to show.",
)
def list_jobs(db_path: Path | None, status_filter: str | None, limit: int) -> None:
    """List recent jobs."""

    _run(
        lambda: CONTROLLER.list_jobs(
            ListJobsCommand(db_path=db_path, status=status_filter, limit=limit),
        ),
    )


@transcribe_queue.command("kill")
@_db_path_option
@click.argument("job_id")
def kill(db_path: Path | None, job_id: str) -> None:
    """Terminate the process tree of a running job."""

    _run(lambda: CONTROLLER.kill(JobRefCommand(db_path=db_path, job_id=job_id)))


@transcribe_queue.command("stats")
@_db_path_option
def stats(db_path: Path | None) -> None:
    """Show queued/running counts and the configured worker count."""

    _run(lambda: CONTROLLER.stats(StatsCommand(db_path=db_path)))


@transcribe_queue.command("adapters")
@_db_path_option
def adapters(db_path: Path | None) -> None:
    """List registered adapters and their capabilities."""

    _run(lambda: CONTROLLER.adapters(StatsCommand(db_path=db_path)))


@transcribe_queue.command("merge-retry")
@_db_path_option
@click.argument("job_id")
def merge_retry(db_path: Path | None, job_id: str) -> None:
    """Re-run a failed merge of a multitrack job."""

    _run(lambda: CONTROLLER.merge_retry(JobRefCommand(db_path=db_path, job_id=job_id)))


@transcribe_queue.command("worker")
@_db_path_option
@click.option("--once", is_flag=True, help="Process at most one job and exit.")
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads (default from TRANSCRIBE_QUEUE_WORKER_COUNT).",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls per worker. Runs until signalled if unset.",
)
def worker(
    db_path: Path | None,
    once: bool,
    workers: int | None,
    max_idle_polls: int | None,
) -> None:
    """Run queue workers in the foreground."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                workers=workers,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (TranscribeQueueError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    transcribe_queue()
