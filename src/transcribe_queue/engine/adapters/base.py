"""Adapter contract for transcription model backends."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from transcribe_queue.engine.errors import ValidationError
from transcribe_queue.engine.models import Transcript
from transcribe_queue.engine.progress import ProgressParser
from transcribe_queue.engine.transcripts import read_transcript

AUTO_LANGUAGE = "auto"


@dataclass(slots=True, frozen=True)
class AdapterCapabilities:
    """Capability flags advertised by an adapter."""

    supports_multitrack: bool = False
    supports_language_detect: bool = False

    def labels(self) -> tuple[str, ...]:
        labels = ["multitrack" if self.supports_multitrack else "single_track"]
        if self.supports_language_detect:
            labels.append("language_detect")
        return tuple(labels)


@dataclass(slots=True)
class AdapterRequest:
    """Inputs required to build the command for one track."""

    input_path: Path
    output_dir: Path
    parameters: Mapping[str, Any]
    track_index: int = 0
    track_count: int = 1


@dataclass(slots=True)
class CommandSpec:
    """Executable command description returned by an adapter.

    ``args`` is an argv list, or a pre-rendered command line on Windows.
    ``output_path`` is where the adapter process writes its transcript.
    """

    args: str | list[str]
    command_head: str
    output_path: Path
    env: dict[str, str] | None = None
    cwd: Path | None = None


@dataclass(slots=True)
class AdapterDescriptor:
    """Registered model backend."""

    name: str
    capabilities: AdapterCapabilities
    build_command: Callable[[AdapterRequest], CommandSpec]
    progress_parser: ProgressParser
    parse_output: Callable[[Path], Transcript] = read_transcript
    description: str = ""
    extra_validation: Callable[[Mapping[str, Any]], None] | None = field(default=None)

    def validate(self, *, track_count: int, parameters: Mapping[str, Any]) -> None:
        """Reject submissions this adapter cannot execute."""

        if track_count < 1:
            raise ValidationError("At least one input is required.")
        if track_count > 1 and not self.capabilities.supports_multitrack:
            raise ValidationError(f"Adapter {self.name!r} does not support multitrack input.")
        language = parameters.get("language")
        if language is not None and not isinstance(language, str):
            raise ValidationError("Parameter 'language' must be a string.")
        if language == AUTO_LANGUAGE and not self.capabilities.supports_language_detect:
            raise ValidationError(f"Adapter {self.name!r} does not support language detection.")
        if self.extra_validation is not None:
            self.extra_validation(parameters)


def str_parameter(
    parameters: Mapping[str, Any],
    key: str,
    default: str | None = None,
) -> str | None:
    value = parameters.get(key, default)
    if value is None:
        return None
    return str(value)
