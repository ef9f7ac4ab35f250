from __future__ import annotations

import os
import signal
import sys
import textwrap
import time
from pathlib import Path

import allure
import pytest

from transcribe_queue.engine.adapters.base import CommandSpec
from transcribe_queue.engine.errors import ProcessRuntimeError, ProcessStartError
from transcribe_queue.engine.process import (
    FallbackProcessGroupController,
    PosixProcessGroupController,
    ProcessSupervisor,
    select_process_group_controller,
)

pytestmark = [
    allure.epic("Transcription Engine"),
    allure.feature("Process Supervision"),
]

posix_only = pytest.mark.skipif(os.name != "posix", reason="process groups are POSIX only")


def _python(script: str, tmp_path: Path) -> CommandSpec:
    return CommandSpec(
        args=[sys.executable, "-u", "-c", textwrap.dedent(script)],
        command_head=sys.executable,
        output_path=tmp_path / "unused.json",
    )


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    stat = Path(f"/proc/{pid}/stat")
    if stat.exists():
        # zombies are dead for our purposes; reaping is up to their new parent
        try:
            state = stat.read_text().rsplit(")", 1)[1].split()[0]
        except (OSError, IndexError):
            return False
        return state != "Z"
    return True


def _wait_dead(pid: int, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not _pid_alive(pid):
            return True
        time.sleep(0.05)
    return False


def test_select_controller_by_mode() -> None:
    assert isinstance(select_process_group_controller("posix"), PosixProcessGroupController)
    assert isinstance(select_process_group_controller("fallback"), FallbackProcessGroupController)
    assert isinstance(
        select_process_group_controller("auto", os_name="nt"),
        FallbackProcessGroupController,
    )
    assert isinstance(
        select_process_group_controller("auto", os_name="posix"),
        PosixProcessGroupController,
    )
    with pytest.raises(ValueError, match="Unsupported"):
        select_process_group_controller("cgroups")


def test_start_missing_executable_raises_process_start_error(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()
    with pytest.raises(ProcessStartError, match="not found"):
        supervisor.start(
            CommandSpec(
                args=[str(tmp_path / "no-such-binary")],
                command_head="no-such-binary",
                output_path=tmp_path / "out.json",
            ),
        )


def test_stdout_lines_stream_and_exit_is_captured(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()
    handle = supervisor.start(
        _python(
            """
            import sys
            for step in range(3):
                print(f"line {step}")
            print("warning: something", file=sys.stderr)
            """,
            tmp_path,
        ),
    )

    lines = list(handle.iter_stdout())
    result = supervisor.wait(handle)

    assert lines == ["line 0", "line 1", "line 2"]
    assert result.exit_code == 0
    assert result.killed is False
    assert result.signal_name is None
    assert "warning: something" in result.stderr_tail
    result.raise_for_status()


def test_nonzero_exit_raises_with_stderr_tail(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()
    handle = supervisor.start(
        _python(
            """
            import sys
            print("model crashed", file=sys.stderr)
            sys.exit(3)
            """,
            tmp_path,
        ),
    )
    result = supervisor.wait(handle)

    assert result.exit_code == 3
    assert result.killed is False
    with pytest.raises(ProcessRuntimeError) as error:
        result.raise_for_status()
    assert error.value.exit_code == 3
    assert "model crashed" in error.value.stderr_tail
    assert "exit code 3" in str(error.value)


def test_stderr_flood_does_not_block_wait(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(tail_lines=10)
    handle = supervisor.start(
        _python(
            """
            import sys
            for index in range(20000):
                print(f"noise {index}", file=sys.stderr)
            """,
            tmp_path,
        ),
    )
    result = supervisor.wait(handle)

    assert result.exit_code == 0
    assert result.stderr_tail.splitlines()[-1] == "noise 19999"
    assert len(result.stderr_tail.splitlines()) == 10


@posix_only
def test_group_kill_terminates_descendants(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(controller=PosixProcessGroupController())
    handle = supervisor.start(
        _python(
            """
            import subprocess, sys, time
            child = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(600)"])
            print(f"child {child.pid}", flush=True)
            time.sleep(600)
            """,
            tmp_path,
        ),
    )
    assert handle.group_id == handle.pid

    lines = handle.iter_stdout()
    child_pid = int(next(lines).split()[1])
    assert _pid_alive(child_pid)

    assert supervisor.kill(handle) is True
    assert supervisor.kill(handle) is False
    result = supervisor.wait(handle)

    assert result.killed is True
    assert result.signal_name == "SIGTERM"
    assert _wait_dead(child_pid)


@posix_only
def test_kill_escalates_when_termination_is_ignored(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(
        controller=PosixProcessGroupController(),
        kill_grace_seconds=0.3,
    )
    handle = supervisor.start(
        _python(
            """
            import signal, time
            signal.signal(signal.SIGTERM, signal.SIG_IGN)
            print("ready", flush=True)
            time.sleep(600)
            """,
            tmp_path,
        ),
    )
    assert next(handle.iter_stdout()) == "ready"

    supervisor.kill(handle)
    result = supervisor.wait(handle)

    assert result.killed is True
    assert result.signal_name == signal.SIGKILL.name
    assert handle.force_killed is True


def test_fallback_kill_terminates_direct_child(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(controller=FallbackProcessGroupController())
    handle = supervisor.start(
        _python(
            """
            import time
            print("ready", flush=True)
            time.sleep(600)
            """,
            tmp_path,
        ),
    )
    assert handle.group_id is None
    assert next(handle.iter_stdout()) == "ready"

    assert supervisor.kill(handle) is True
    result = supervisor.wait(handle)

    assert result.killed is True
    assert result.exit_code != 0


def test_kill_after_natural_exit_is_a_no_op(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor()
    handle = supervisor.start(_python("print('done')", tmp_path))
    result = supervisor.wait(handle)

    assert supervisor.kill(handle) is False
    assert result.killed is False
    assert handle.kill_requested is False


@posix_only
def test_kill_counts_even_when_process_exits_zero_on_termination(tmp_path: Path) -> None:
    supervisor = ProcessSupervisor(
        controller=PosixProcessGroupController(),
        kill_grace_seconds=5.0,
    )
    handle = supervisor.start(
        _python(
            """
            import signal, sys, time
            signal.signal(signal.SIGTERM, lambda signum, frame: sys.exit(0))
            print("ready", flush=True)
            time.sleep(600)
            """,
            tmp_path,
        ),
    )
    assert next(handle.iter_stdout()) == "ready"

    assert supervisor.kill(handle) is True
    result = supervisor.wait(handle)

    assert result.killed is True
    assert result.exit_code == 0
    assert handle.force_killed is False
