"""Progress parsing for adapter output streams."""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from typing import Protocol

from transcribe_queue.engine.errors import ProgressParseError

_PERCENT_PATTERN = r"(?P<percent>[-+]?\d+(?:\.\d+)?)\s*%"


@dataclass(slots=True, frozen=True)
class ProgressEvent:
    """One accepted progress update."""

    percent: float
    line_no: int
    line: str


class ProgressParser(Protocol):
    """Protocol implemented by progress parsing strategies.

    ``parse`` returns ``None`` for lines without progress information and
    raises ``ProgressParseError`` for lines that claim to carry progress but
    cannot be interpreted.
    """

    def parse(self, line: str) -> float | None: ...


class PercentLineParser:
    """Percentages in free-form text lines, e.g. ``Progress: 42.50%...``."""

    def __init__(self, *, marker: str | None = None, pattern: str = _PERCENT_PATTERN) -> None:
        self.marker = marker.lower() if marker else None
        self._pattern = re.compile(pattern)

    def parse(self, line: str) -> float | None:
        if self.marker is not None and self.marker not in line.lower():
            return None
        match = self._pattern.search(line)
        if match is None:
            if self.marker is not None:
                raise ProgressParseError(f"Progress marker without percentage: {line!r}")
            return None
        try:
            value = float(match.group("percent"))
        except ValueError as error:
            raise ProgressParseError(f"Invalid percentage in line: {line!r}") from error
        return _checked_percent(value, line)


class JsonLineParser:
    """Structured lines: ``{"progress": 0.42}`` (fraction) or ``{"percent": 42}``."""

    def parse(self, line: str) -> float | None:
        stripped = line.strip()
        if not stripped.startswith("{"):
            return None
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError as error:
            raise ProgressParseError(f"Malformed JSON progress line: {error}") from error
        if not isinstance(payload, dict):
            raise ProgressParseError("JSON progress line must be an object.")

        if "percent" in payload:
            return _checked_percent(_as_number(payload["percent"], line), line)
        if "progress" in payload:
            return _checked_percent(_as_number(payload["progress"], line) * 100.0, line)
        return None


def _as_number(value: object, line: str) -> float:
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ProgressParseError(f"Non-numeric progress value in line: {line!r}")
    return float(value)


def _checked_percent(value: float, line: str) -> float:
    if not 0.0 <= value <= 100.0:  # noqa: PLR2004
        raise ProgressParseError(f"Progress out of range ({value}) in line: {line!r}")
    return value


class ProgressTracker:
    """Turns a line stream into non-decreasing progress events.

    The event sequence is lazy, finite (it ends with the stream) and can be
    consumed only once.
    """

    def __init__(
        self,
        parser: ProgressParser,
        *,
        initial_percent: float = 0.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.parser = parser
        self._percent = initial_percent
        self._consumed = False
        self._skipped = 0
        self._logger = logger or logging.getLogger(__name__)

    @property
    def percent(self) -> float:
        return self._percent

    @property
    def skipped_lines(self) -> int:
        """Malformed progress lines seen so far."""

        return self._skipped

    def track(self, lines: Iterable[str]) -> Iterator[ProgressEvent]:
        if self._consumed:
            raise RuntimeError("Progress stream already consumed.")
        self._consumed = True
        return self._events(lines)

    def _events(self, lines: Iterable[str]) -> Iterator[ProgressEvent]:
        for line_no, line in enumerate(lines, start=1):
            try:
                value = self.parser.parse(line)
            except ProgressParseError as error:
                self._skipped += 1
                self._logger.warning("Skipping progress line %d: %s", line_no, error)
                continue
            if value is None or value <= self._percent:
                continue
            self._percent = value
            yield ProgressEvent(percent=value, line_no=line_no, line=line)


def scale_track_progress(percent: float, *, track_index: int, track_count: int) -> float:
    """Map per-track progress into the job-wide 0-100 range."""

    if track_count <= 1:
        return percent
    share = 100.0 / track_count
    return track_index * share + percent * share / 100.0
