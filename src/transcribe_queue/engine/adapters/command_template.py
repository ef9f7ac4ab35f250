"""Adapters defined by a command line template."""

from __future__ import annotations

import os
import shlex
import string
import subprocess
from collections.abc import Mapping

from transcribe_queue.engine.adapters.base import (
    AUTO_LANGUAGE,
    AdapterCapabilities,
    AdapterDescriptor,
    AdapterRequest,
    CommandSpec,
    str_parameter,
)
from transcribe_queue.engine.errors import ValidationError
from transcribe_queue.engine.progress import PercentLineParser, ProgressParser


class CommandTemplateError(ValueError):
    """Template is unusable for building adapter commands."""


def command_template_adapter(  # noqa: PLR0913
    *,
    name: str,
    template: str,
    device: str,
    capabilities: AdapterCapabilities | None = None,
    progress_parser: ProgressParser | None = None,
    default_model: str = "",
    os_name: str | None = None,
) -> AdapterDescriptor:
    """Build a descriptor whose commands come from ``template``.

    The template must reference ``{input}`` and ``{output}``; the rendered
    command must write a transcript JSON to ``{output}``.
    """

    _check_template(template)

    def build(request: AdapterRequest) -> CommandSpec:
        output_path = request.output_dir / f"track-{request.track_index}.json"
        language = str_parameter(request.parameters, "language") or ""
        if language == AUTO_LANGUAGE:
            language = ""
        values = {
            "input": str(request.input_path),
            "output": str(output_path),
            "output_dir": str(request.output_dir),
            "model": str_parameter(request.parameters, "model", default_model) or "",
            "language": language,
            "device": str_parameter(request.parameters, "device", device) or device,
        }
        try:
            args, command_head = render_command(template=template, values=values, os_name=os_name)
        except CommandTemplateError as error:
            raise ValidationError(str(error)) from error
        return CommandSpec(args=args, command_head=command_head, output_path=output_path)

    return AdapterDescriptor(
        name=name,
        capabilities=capabilities or AdapterCapabilities(),
        build_command=build,
        progress_parser=progress_parser or PercentLineParser(),
        description=f"Command template: {template}",
    )


def render_command(
    *,
    template: str,
    values: Mapping[str, str],
    os_name: str | None = None,
) -> tuple[str | list[str], str]:
    """Render ``template`` into argv (POSIX) or a command line string (Windows)."""

    stripped = template.strip()
    _check_template(stripped)

    current_os_name = os_name or os.name
    try:
        if current_os_name == "nt":
            rendered = _render_windows_command_template(template=stripped, values=values).strip()
            if not rendered:
                raise CommandTemplateError("Command template rendered empty command.")
            return rendered, rendered.split(maxsplit=1)[0]

        rendered = stripped.format(**{key: shlex.quote(value) for key, value in values.items()})
    except KeyError as error:
        raise CommandTemplateError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise CommandTemplateError("Command template rendered empty command.")
    return argv, argv[0]


def _check_template(template: str) -> None:
    stripped = template.strip()
    if not stripped:
        raise CommandTemplateError("Command template is empty.")
    for required in ("{input}", "{output}"):
        if required not in stripped:
            raise CommandTemplateError(f"Command template must include {required}.")


def _render_windows_command_template(*, template: str, values: Mapping[str, str]) -> str:
    formatter = string.Formatter()
    rendered_parts: list[str] = []
    in_double_quotes = False

    for literal_text, field_name, format_spec, conversion in formatter.parse(template):
        rendered_parts.append(literal_text)
        in_double_quotes = _advance_windows_quote_state(literal_text, in_double_quotes)
        if field_name is None:
            continue

        value = values[field_name]
        value_text = _apply_string_conversion(value, conversion, format_spec)
        if in_double_quotes:
            rendered_parts.append(value_text.replace('"', '\\"'))
            continue

        rendered_parts.append(subprocess.list2cmdline([value_text]))

    return "".join(rendered_parts)


def _apply_string_conversion(
    value: str,
    conversion: str | None,
    format_spec: str | None,
) -> str:
    if conversion == "r":
        converted = repr(value)
    elif conversion == "a":
        converted = ascii(value)
    elif conversion in (None, "", "s"):
        converted = str(value)
    else:
        raise CommandTemplateError(f"Unsupported format conversion: !{conversion}")

    if format_spec:
        return format(converted, format_spec)
    return converted


def _advance_windows_quote_state(literal_text: str, in_double_quotes: bool) -> bool:
    for index, char in enumerate(literal_text):
        if char != '"':
            continue
        backslashes = 0
        scan_index = index - 1
        while scan_index >= 0 and literal_text[scan_index] == "\\":
            backslashes += 1
            scan_index -= 1
        if backslashes % 2 == 1:
            continue
        in_double_quotes = not in_double_quotes
    return in_double_quotes

