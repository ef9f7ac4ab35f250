"""Deterministic local adapter used for smoke runs and tests.

Run as ``python -m transcribe_queue.engine.adapters.echo_adapter``. Every
non-empty line of the input file becomes a one-second segment; progress is
printed as ``progress: NN%`` lines.
"""

from __future__ import annotations

import json
import signal
import subprocess
import sys
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import click

from transcribe_queue.config import Settings
from transcribe_queue.engine.adapters.base import (
    AUTO_LANGUAGE,
    AdapterCapabilities,
    AdapterDescriptor,
    AdapterRequest,
    CommandSpec,
    str_parameter,
)
from transcribe_queue.engine.errors import ValidationError
from transcribe_queue.engine.progress import PercentLineParser

MODULE = "transcribe_queue.engine.adapters.echo_adapter"
DETECTED_LANGUAGE = "en"

_INT_PARAMETERS = ("steps", "exit_code", "only_track")
_FLAG_PARAMETERS = (
    "garbage_output",
    "malformed_progress",
    "spawn_child",
    "ignore_sigterm",
    "exit_zero_on_sigterm",
)


def echo_adapter(settings: Settings) -> AdapterDescriptor:  # noqa: ARG001
    return AdapterDescriptor(
        name="echo",
        capabilities=AdapterCapabilities(
            supports_multitrack=True,
            supports_language_detect=True,
        ),
        build_command=_build_command,
        progress_parser=PercentLineParser(marker="progress:"),
        description="Local demo adapter: echoes input lines as segments.",
        extra_validation=_validate_parameters,
    )


def _build_command(request: AdapterRequest) -> CommandSpec:
    params = request.parameters
    output_path = request.output_dir / f"track-{request.track_index}.json"
    args = [
        sys.executable,
        "-m",
        MODULE,
        "--input",
        str(request.input_path),
        "--output",
        str(output_path),
        "--steps",
        str(int(params.get("steps", 4))),
        "--delay",
        str(float(params.get("delay", 0.0))),
    ]
    language = str_parameter(params, "language")
    if language:
        args.extend(["--language", language])

    # failure injection applies to every track unless only_track narrows it
    only_track = params.get("only_track")
    if only_track is None or int(only_track) == request.track_index:
        if params.get("exit_code"):
            args.extend(["--exit-code", str(int(params["exit_code"]))])
        for flag in _FLAG_PARAMETERS:
            if params.get(flag):
                args.append("--" + flag.replace("_", "-"))
        child_pid_file = str_parameter(params, "child_pid_file")
        if child_pid_file:
            args.extend(["--child-pid-file", child_pid_file])
    return CommandSpec(args=args, command_head=sys.executable, output_path=output_path)


def _validate_parameters(parameters: Mapping[str, Any]) -> None:
    for key in _INT_PARAMETERS:
        if key in parameters and not isinstance(parameters[key], int):
            raise ValidationError(f"Parameter {key!r} must be an integer.")
    delay = parameters.get("delay", 0.0)
    if isinstance(delay, bool) or not isinstance(delay, int | float) or delay < 0:
        raise ValidationError("Parameter 'delay' must be a non-negative number.")
    if parameters.get("steps", 4) < 1:
        raise ValidationError("Parameter 'steps' must be positive.")


@click.command()
@click.option("--input", "input_path", type=click.Path(path_type=Path), required=True)
@click.option("--output", "output_path", type=click.Path(path_type=Path), required=True)
@click.option("--language", default=None)
@click.option("--steps", type=int, default=4, show_default=True)
@click.option("--delay", type=float, default=0.0, show_default=True)
@click.option("--exit-code", type=int, default=0, show_default=True)
@click.option("--garbage-output", is_flag=True, help="Write a non-JSON transcript.")
@click.option("--malformed-progress", is_flag=True, help="Emit unparsable progress lines.")
@click.option("--spawn-child", is_flag=True, help="Start a long-lived child process.")
@click.option("--child-pid-file", type=click.Path(path_type=Path), default=None)
@click.option("--ignore-sigterm", is_flag=True, help="Ignore SIGTERM to exercise escalation.")
@click.option(
    "--exit-zero-on-sigterm",
    is_flag=True,
    help="On SIGTERM write the transcript and exit 0.",
)
def main(  # noqa: PLR0913
    input_path: Path,
    output_path: Path,
    language: str | None,
    steps: int,
    delay: float,
    exit_code: int,
    garbage_output: bool,
    malformed_progress: bool,
    spawn_child: bool,
    child_pid_file: Path | None,
    ignore_sigterm: bool,
    exit_zero_on_sigterm: bool,
) -> None:
    """Echo INPUT lines into a transcript JSON at OUTPUT."""

    lines = [line.strip() for line in input_path.read_text("utf-8").splitlines() if line.strip()]
    if ignore_sigterm:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    elif exit_zero_on_sigterm:

        def _finish(_signum: int, _frame: object) -> None:
            _write_output(output_path, lines, language, garbage=False)
            sys.exit(0)

        signal.signal(signal.SIGTERM, _finish)

    child: subprocess.Popen[bytes] | None = None
    if spawn_child:
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", "import time; time.sleep(600)"],
        )
        if child_pid_file is not None:
            child_pid_file.write_text(str(child.pid), "utf-8")
        click.echo(f"spawned child pid={child.pid}")

    if malformed_progress:
        click.echo("progress: ??%")
        click.echo("progress: 150%")

    for step in range(1, steps + 1):
        time.sleep(delay)
        click.echo(f"progress: {step * 100 / steps:.2f}%")

    if exit_code:
        click.echo(f"echo adapter failing with exit code {exit_code}", err=True)
        sys.exit(exit_code)

    _write_output(output_path, lines, language, garbage=garbage_output)

    if child is not None:
        # keep the group alive until the child is gone
        child.wait()


def _write_output(
    output_path: Path,
    lines: list[str],
    language: str | None,
    *,
    garbage: bool,
) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if garbage:
        output_path.write_text("this is not a transcript", "utf-8")
        return
    payload = {
        "language": DETECTED_LANGUAGE if language in (None, AUTO_LANGUAGE) else language,
        "segments": [
            {"start": float(index), "end": float(index + 1), "text": text}
            for index, text in enumerate(lines)
        ],
    }
    output_path.write_text(json.dumps(payload, ensure_ascii=False), "utf-8")


if __name__ == "__main__":
    main()
