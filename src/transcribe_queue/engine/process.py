"""Process supervision: spawn adapter commands in their own process group."""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import IO, Protocol

from transcribe_queue.engine.adapters.base import CommandSpec
from transcribe_queue.engine.errors import ProcessRuntimeError, ProcessStartError

_STDOUT_EOF = object()


class ProcessGroupController(Protocol):
    """Platform strategy for grouping and terminating adapter processes."""

    name: str
    supports_group_kill: bool

    def popen_kwargs(self) -> dict[str, object]: ...

    def terminate(self, process: subprocess.Popen[str]) -> None: ...

    def force_kill(self, process: subprocess.Popen[str]) -> None: ...


class PosixProcessGroupController:
    """New session per command; signals go to the whole group."""

    name = "posix"
    supports_group_kill = True

    def popen_kwargs(self) -> dict[str, object]:
        return {"start_new_session": True}

    def terminate(self, process: subprocess.Popen[str]) -> None:
        self._signal_group(process, signal.SIGTERM)

    def force_kill(self, process: subprocess.Popen[str]) -> None:
        self._signal_group(process, signal.SIGKILL)

    def _signal_group(self, process: subprocess.Popen[str], signum: int) -> None:
        # session leader: process group id equals the child pid
        try:
            os.killpg(process.pid, signum)
        except ProcessLookupError:
            return


class FallbackProcessGroupController:
    """Best-effort termination of the direct child only.

    Descendants spawned by the adapter may survive a kill on this path.
    """

    name = "fallback"
    supports_group_kill = False

    def popen_kwargs(self) -> dict[str, object]:
        creationflags = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        if creationflags:
            return {"creationflags": creationflags}
        return {}

    def terminate(self, process: subprocess.Popen[str]) -> None:
        try:
            process.terminate()
        except OSError:
            return

    def force_kill(self, process: subprocess.Popen[str]) -> None:
        try:
            process.kill()
        except OSError:
            return


def select_process_group_controller(
    mode: str = "auto",
    *,
    os_name: str | None = None,
) -> ProcessGroupController:
    normalized = mode.strip().lower()
    if normalized == "posix":
        return PosixProcessGroupController()
    if normalized == "fallback":
        return FallbackProcessGroupController()
    if normalized != "auto":
        raise ValueError(f"Unsupported process group mode: {mode!r}")
    if (os_name or os.name) == "posix":
        return PosixProcessGroupController()
    return FallbackProcessGroupController()


@dataclass(slots=True, eq=False)
class ProcessHandle:
    """Live adapter process. Transient: never persisted."""

    process: subprocess.Popen[str]
    command_head: str
    group_id: int | None
    started_monotonic: float
    stdout_tail: deque[str]
    stderr_tail: deque[str]
    kill_requested: bool = False
    kill_requested_at: float | None = None
    force_killed: bool = False
    _stdout_lines: queue.Queue[object] = field(default_factory=queue.Queue)
    _readers: list[threading.Thread] = field(default_factory=list)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    @property
    def pid(self) -> int:
        return self.process.pid

    def iter_stdout(self) -> Iterator[str]:
        """Yield stdout lines until the stream closes or the process is gone."""

        while True:
            try:
                item = self._stdout_lines.get(timeout=0.2)
            except queue.Empty:
                # a descendant may keep the pipe open after the child exited
                if self.process.poll() is not None:
                    return
                continue
            if item is _STDOUT_EOF:
                return
            yield str(item)


@dataclass(slots=True)
class ProcessExit:
    """Outcome of one adapter process."""

    exit_code: int
    signal_name: str | None
    killed: bool
    duration_seconds: float
    stdout_tail: str
    stderr_tail: str

    def raise_for_status(self) -> None:
        if self.exit_code == 0:
            return
        reason = (
            f"signal {self.signal_name}"
            if self.signal_name is not None
            else f"exit code {self.exit_code}"
        )
        message = f"Adapter process failed with {reason}."
        if self.stderr_tail:
            message = f"{message}\n{self.stderr_tail}"
        raise ProcessRuntimeError(
            message,
            exit_code=self.exit_code,
            stderr_tail=self.stderr_tail,
        )


class ProcessSupervisor:
    """Start, kill and wait for adapter processes through a group controller."""

    def __init__(
        self,
        *,
        controller: ProcessGroupController | None = None,
        kill_grace_seconds: float = 5.0,
        tail_lines: int = 200,
        logger: logging.Logger | None = None,
    ) -> None:
        self.controller = controller or select_process_group_controller()
        self.kill_grace_seconds = kill_grace_seconds
        self.tail_lines = tail_lines
        self._logger = logger or logging.getLogger(__name__)

    def start(self, command: CommandSpec) -> ProcessHandle:
        env = None
        if command.env:
            env = os.environ.copy()
            env.update(command.env)
        try:
            process = subprocess.Popen(  # noqa: S603
                command.args,
                env=env,
                cwd=str(command.cwd) if command.cwd is not None else None,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                **self.controller.popen_kwargs(),
            )
        except FileNotFoundError as error:
            raise ProcessStartError(f"Adapter command not found: {command.command_head}") from error
        except OSError as error:
            raise ProcessStartError(
                f"Adapter command failed to start: {command.command_head}: {error}",
            ) from error

        handle = ProcessHandle(
            process=process,
            command_head=command.command_head,
            group_id=process.pid if self.controller.supports_group_kill else None,
            started_monotonic=time.monotonic(),
            stdout_tail=deque(maxlen=self.tail_lines),
            stderr_tail=deque(maxlen=self.tail_lines),
        )
        handle._readers.extend(
            [
                _start_reader(
                    process.stdout,
                    tail=handle.stdout_tail,
                    sink=handle._stdout_lines,
                    name=f"stdout-{process.pid}",
                ),
                _start_reader(
                    process.stderr,
                    tail=handle.stderr_tail,
                    sink=None,
                    name=f"stderr-{process.pid}",
                ),
            ],
        )
        self._logger.debug(
            "Started %s pid=%s group=%s via %s",
            command.command_head,
            process.pid,
            handle.group_id,
            self.controller.name,
        )
        return handle

    def kill(self, handle: ProcessHandle) -> bool:
        """Signal the handle's process group. Idempotent.

        Returns ``True`` only for the call that actually issued the signal;
        repeated kills and kills of already-exited processes are no-ops.
        """

        with handle._lock:
            if handle.kill_requested or handle.process.poll() is not None:
                return False
            handle.kill_requested = True
            handle.kill_requested_at = time.monotonic()
            self.controller.terminate(handle.process)
        self._logger.info(
            "Sent termination to %s pid=%s group=%s",
            handle.command_head,
            handle.pid,
            handle.group_id,
        )
        return True

    def wait(self, handle: ProcessHandle) -> ProcessExit:
        """Block until the process exits, escalating after a kill grace period."""

        while True:
            try:
                exit_code = handle.process.wait(timeout=0.2)
                break
            except subprocess.TimeoutExpired:
                self._escalate_if_due(handle)

        for reader in handle._readers:
            reader.join(timeout=1.0)
        signal_name = _signal_name(exit_code)
        return ProcessExit(
            exit_code=exit_code,
            signal_name=signal_name,
            killed=handle.kill_requested,
            duration_seconds=time.monotonic() - handle.started_monotonic,
            stdout_tail="\n".join(handle.stdout_tail),
            stderr_tail="\n".join(handle.stderr_tail),
        )

    def _escalate_if_due(self, handle: ProcessHandle) -> None:
        with handle._lock:
            if not handle.kill_requested or handle.force_killed:
                return
            if handle.kill_requested_at is None:
                return
            if time.monotonic() - handle.kill_requested_at < self.kill_grace_seconds:
                return
            handle.force_killed = True
            self.controller.force_kill(handle.process)
        self._logger.warning(
            "Process %s pid=%s ignored termination for %.1fs; force killed",
            handle.command_head,
            handle.pid,
            self.kill_grace_seconds,
        )


def _start_reader(
    stream: IO[str] | None,
    *,
    tail: deque[str],
    sink: queue.Queue[object] | None,
    name: str,
) -> threading.Thread:
    def _pump() -> None:
        if stream is None:
            if sink is not None:
                sink.put(_STDOUT_EOF)
            return
        try:
            for raw_line in stream:
                line = raw_line.rstrip("\r\n")
                tail.append(line)
                if sink is not None:
                    sink.put(line)
        except (OSError, ValueError):
            # pipe closed underneath the reader
            pass
        finally:
            if sink is not None:
                sink.put(_STDOUT_EOF)
            stream.close()

    thread = threading.Thread(target=_pump, name=name, daemon=True)
    thread.start()
    return thread


def _signal_name(exit_code: int) -> str | None:
    if exit_code >= 0:
        return None
    try:
        return signal.Signals(-exit_code).name
    except ValueError:
        return f"SIG{-exit_code}"
