"""Runtime configuration for the transcription job queue."""

from __future__ import annotations

import os
import platform
import shutil
from dataclasses import dataclass, field
from pathlib import Path

_PREFIX = "TRANSCRIBE_QUEUE_"


@dataclass(slots=True)
class HostEnvironment:
    """Host capabilities detected at startup."""

    os_name: str
    arch: str
    supports_nvidia: bool
    supports_mps: bool
    default_device: str

    @classmethod
    def detect(cls) -> HostEnvironment:
        system = platform.system().lower()
        arch = platform.machine().lower()
        supports_nvidia = system == "linux" and arch in {"x86_64", "amd64"}
        supports_mps = system == "darwin" and arch == "arm64"

        forced = _env_optional_bool("FORCE_NVIDIA")
        if forced is not None:
            supports_nvidia = forced
        if _env_bool("DISABLE_NVIDIA", default=False):
            supports_nvidia = False
        if _env_bool("DISABLE_MPS", default=False):
            supports_mps = False

        default_device = "mps" if supports_mps else "cpu"
        override = _env("DEFAULT_DEVICE", "").strip()
        if override:
            default_device = override
        return cls(
            os_name=system,
            arch=arch,
            supports_nvidia=supports_nvidia,
            supports_mps=supports_mps,
            default_device=default_device,
        )


@dataclass(slots=True)
class EngineSettings:
    """Worker pool and process supervision settings."""

    worker_count: int = 2
    poll_interval_seconds: float = 1.0
    kill_grace_seconds: float = 5.0
    process_group_mode: str = "auto"
    workdir: Path = Path(".transcribe_queue/work")


@dataclass(slots=True)
class AdapterSettings:
    """Model backend locations and user-defined command template adapters."""

    uv_path: str = "uv"
    whisperx_env: Path = Path("data/whisperx-env")
    whisperx_model: str = "small"
    parakeet_env: Path = Path("data/parakeet-env")
    custom_adapters: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class LoggingSettings:
    level: str = "INFO"
    log_file: Path | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".transcribe_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    engine: EngineSettings = field(default_factory=EngineSettings)
    adapters: AdapterSettings = field(default_factory=AdapterSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    environment: HostEnvironment = field(default_factory=HostEnvironment.detect)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        log_file = _env("LOG_FILE", "").strip()
        return cls(
            db_path=db_path or Path(_env("DB_PATH", ".transcribe_queue.db")),
            sqlite_busy_timeout_ms=int(_env("SQLITE_BUSY_TIMEOUT_MS", "5000")),
            engine=EngineSettings(
                worker_count=int(_env("WORKER_COUNT", "2")),
                poll_interval_seconds=float(_env("POLL_INTERVAL_SECONDS", "1.0")),
                kill_grace_seconds=float(_env("KILL_GRACE_SECONDS", "5")),
                process_group_mode=_env("PROCESS_GROUP_MODE", "auto").strip().lower(),
                workdir=Path(_env("WORKDIR", ".transcribe_queue/work")),
            ),
            adapters=AdapterSettings(
                uv_path=_find_uv_path(),
                whisperx_env=Path(_env("WHISPERX_ENV", "data/whisperx-env")),
                whisperx_model=_env("WHISPERX_MODEL", "small"),
                parakeet_env=Path(_env("PARAKEET_ENV", "data/parakeet-env")),
                custom_adapters=_collect_custom_adapters(),
            ),
            logging=LoggingSettings(
                level=_env("LOG_LEVEL", "INFO").strip().upper(),
                log_file=Path(log_file) if log_file else None,
            ),
            environment=HostEnvironment.detect(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.engine.worker_count <= 0:
            raise ValueError(f"{_PREFIX}WORKER_COUNT must be > 0.")
        if self.engine.poll_interval_seconds <= 0:
            raise ValueError(f"{_PREFIX}POLL_INTERVAL_SECONDS must be > 0.")
        if self.engine.kill_grace_seconds < 0:
            raise ValueError(f"{_PREFIX}KILL_GRACE_SECONDS must be >= 0.")
        if self.engine.process_group_mode not in {"auto", "posix", "fallback"}:
            raise ValueError(
                f"{_PREFIX}PROCESS_GROUP_MODE must be one of auto, posix, fallback; "
                f"got {self.engine.process_group_mode!r}.",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError(f"{_PREFIX}SQLITE_BUSY_TIMEOUT_MS must be > 0.")


def _env(name: str, default: str) -> str:
    return os.getenv(f"{_PREFIX}{name}", default)


def _env_bool(name: str, *, default: bool) -> bool:
    parsed = _env_optional_bool(name)
    return default if parsed is None else parsed


def _env_optional_bool(name: str) -> bool | None:
    raw = _env(name, "").strip().lower()
    if not raw:
        return None
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {_PREFIX}{name}: {raw!r}")


def _find_uv_path() -> str:
    configured = _env("UV_PATH", "").strip()
    if configured:
        return configured
    return shutil.which("uv") or "uv"


def _collect_custom_adapters() -> dict[str, str]:
    raw = _env("CUSTOM_ADAPTERS", "").strip()
    if not raw:
        return {}

    adapters: dict[str, str] = {}
    for part in raw.split(";"):
        token = part.strip()
        if not token:
            continue
        if "|" not in token:
            raise ValueError(
                f"Invalid {_PREFIX}CUSTOM_ADAPTERS entry: "
                f"{token!r}. Expected format '<name>|<command template>'.",
            )
        name, template = token.split("|", 1)
        name = name.strip()
        template = template.strip()
        if not name or not template:
            raise ValueError(f"Invalid {_PREFIX}CUSTOM_ADAPTERS entry: {token!r}")
        if name in adapters:
            raise ValueError(f"Duplicate {_PREFIX}CUSTOM_ADAPTERS name: {name!r}")
        adapters[name] = template
    return adapters
