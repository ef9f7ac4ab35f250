"""NVIDIA Parakeet adapter: English-only, single track."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from transcribe_queue.config import Settings
from transcribe_queue.engine.adapters.base import (
    AdapterCapabilities,
    AdapterDescriptor,
    AdapterRequest,
    CommandSpec,
    str_parameter,
)
from transcribe_queue.engine.errors import ValidationError
from transcribe_queue.engine.progress import PercentLineParser

DEFAULT_MODEL = "nvidia/parakeet-tdt-0.6b-v2"


def parakeet_adapter(settings: Settings) -> AdapterDescriptor:
    uv_path = settings.adapters.uv_path
    env_dir = settings.adapters.parakeet_env

    def build(request: AdapterRequest) -> CommandSpec:
        output_path = request.output_dir / "transcript.json"
        args = [
            uv_path,
            "run",
            "--project",
            str(env_dir),
            "parakeet-transcribe",
            str(request.input_path),
            "--model",
            str_parameter(request.parameters, "model", DEFAULT_MODEL) or DEFAULT_MODEL,
            "--output",
            str(output_path),
            "--timestamps",
        ]
        return CommandSpec(args=args, command_head=uv_path, output_path=output_path)

    return AdapterDescriptor(
        name="parakeet",
        capabilities=AdapterCapabilities(),
        build_command=build,
        progress_parser=PercentLineParser(),
        description="NVIDIA Parakeet TDT (English only).",
        extra_validation=_validate_parameters,
    )


def _validate_parameters(parameters: Mapping[str, Any]) -> None:
    language = parameters.get("language")
    if language is not None and language != "en":
        raise ValidationError("Adapter 'parakeet' only transcribes English (language='en').")
