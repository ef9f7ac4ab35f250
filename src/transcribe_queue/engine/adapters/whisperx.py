"""WhisperX adapter executed through ``uv run`` in a dedicated environment."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

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

_COMPUTE_TYPES = {"float16", "float32", "int8"}


def whisperx_adapter(settings: Settings) -> AdapterDescriptor:
    """WhisperX with alignment, optional diarization and language detection."""

    uv_path = settings.adapters.uv_path
    env_dir = settings.adapters.whisperx_env
    default_model = settings.adapters.whisperx_model
    default_device = "cuda" if settings.environment.supports_nvidia else "cpu"

    def build(request: AdapterRequest) -> CommandSpec:
        params = request.parameters
        device = str_parameter(params, "device", default_device) or default_device
        args = [
            uv_path,
            "run",
            "--project",
            str(env_dir),
            "whisperx",
            str(request.input_path),
            "--model",
            str_parameter(params, "model", default_model) or default_model,
            "--device",
            device,
            "--compute_type",
            str_parameter(params, "compute_type", _default_compute_type(device)) or "float32",
            "--output_dir",
            str(request.output_dir),
            "--output_format",
            "json",
            "--print_progress",
            "True",
        ]
        language = str_parameter(params, "language")
        if language and language != AUTO_LANGUAGE:
            args.extend(["--language", language])
        if params.get("batch_size") is not None:
            args.extend(["--batch_size", str(int(params["batch_size"]))])
        if params.get("diarize"):
            args.append("--diarize")
            for key in ("min_speakers", "max_speakers"):
                if params.get(key) is not None:
                    args.extend([f"--{key}", str(int(params[key]))])
        return CommandSpec(
            args=args,
            command_head=uv_path,
            # whisperx names its JSON after the input file stem
            output_path=request.output_dir / f"{request.input_path.stem}.json",
        )

    return AdapterDescriptor(
        name="whisperx",
        capabilities=AdapterCapabilities(
            supports_multitrack=True,
            supports_language_detect=True,
        ),
        build_command=build,
        progress_parser=PercentLineParser(marker="progress:"),
        description="WhisperX transcription with word alignment.",
        extra_validation=_validate_parameters,
    )


def _default_compute_type(device: str) -> str:
    return "float16" if device == "cuda" else "float32"


def _validate_parameters(parameters: Mapping[str, Any]) -> None:
    compute_type = parameters.get("compute_type")
    if compute_type is not None and (
        not isinstance(compute_type, str) or compute_type not in _COMPUTE_TYPES
    ):
        raise ValidationError(
            f"Unsupported compute_type {compute_type!r}; "
            f"expected one of {', '.join(sorted(_COMPUTE_TYPES))}.",
        )
    for key in ("batch_size", "min_speakers", "max_speakers"):
        value = parameters.get(key)
        if value is None:
            continue
        try:
            number = int(value)
        except (TypeError, ValueError) as error:
            raise ValidationError(f"Parameter {key!r} must be an integer.") from error
        if number <= 0:
            raise ValidationError(f"Parameter {key!r} must be positive.")
