"""Shared test fixtures."""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from transcribe_queue.config import (
    AdapterSettings,
    EngineSettings,
    HostEnvironment,
    LoggingSettings,
    Settings,
)
from transcribe_queue.engine.bootstrap import Engine, engine_runtime


def wait_for(
    predicate: Callable[[], bool],
    *,
    timeout: float = 15.0,
    interval: float = 0.05,
) -> None:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(interval)
    raise AssertionError(f"Condition not met within {timeout}s")


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings(
        db_path=tmp_path / "queue.db",
        engine=EngineSettings(
            worker_count=2,
            poll_interval_seconds=0.05,
            kill_grace_seconds=2.0,
            workdir=tmp_path / "work",
        ),
        adapters=AdapterSettings(uv_path="uv"),
        logging=LoggingSettings(),
        environment=HostEnvironment(
            os_name="linux",
            arch="x86_64",
            supports_nvidia=False,
            supports_mps=False,
            default_device="cpu",
        ),
    )


@pytest.fixture()
def engine(settings: Settings) -> Iterator[Engine]:
    with engine_runtime(settings) as runtime:
        yield runtime
        runtime.pool.stop(kill_running=True, timeout=10)


@pytest.fixture()
def make_input(tmp_path: Path) -> Callable[..., Path]:
    def _make(name: str = "audio.wav", lines: tuple[str, ...] = ("hello", "world")) -> Path:
        path = tmp_path / "inputs" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("\n".join(lines) + "\n", "utf-8")
        return path

    return _make


@pytest.fixture()
def wait_until() -> Callable[..., None]:
    return wait_for
