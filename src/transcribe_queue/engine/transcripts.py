"""Read/write helpers for transcript JSON files."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from transcribe_queue.engine.models import Transcript, TranscriptSegment


def read_transcript(path: Path) -> Transcript:
    """Load a ``{"language": ..., "segments": [...]}`` transcript file.

    Raises ``ValueError`` when the file is missing or does not follow the
    format, so callers can treat every unreadable output the same way.
    """

    if not path.exists():
        raise ValueError(f"Transcript not found: {path}")
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Transcript JSON parse error in {path}: {error}") from error
    if not isinstance(payload, dict):
        raise ValueError(f"Transcript root must be an object: {path}")

    raw_segments = payload.get("segments")
    if not isinstance(raw_segments, list):
        raise ValueError(f"Transcript has no segments list: {path}")

    segments = [
        _parse_segment(item, index=index, path=path) for index, item in enumerate(raw_segments)
    ]
    language = payload.get("language")
    return Transcript(
        segments=segments,
        language=language if isinstance(language, str) and language else None,
    )


def write_transcript(path: Path, transcript: Transcript) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(transcript_to_payload(transcript), ensure_ascii=False, indent=2),
        "utf-8",
    )


def transcript_to_payload(transcript: Transcript) -> dict[str, Any]:
    segments: list[dict[str, Any]] = []
    for segment in transcript.segments:
        item: dict[str, Any] = {
            "start": segment.start,
            "end": segment.end,
            "text": segment.text,
        }
        if segment.speaker is not None:
            item["speaker"] = segment.speaker
        if segment.track_index is not None:
            item["track_index"] = segment.track_index
        segments.append(item)
    return {"language": transcript.language, "segments": segments}


def _parse_segment(item: object, *, index: int, path: Path) -> TranscriptSegment:
    if not isinstance(item, dict):
        raise ValueError(f"Segment #{index} is not an object in {path}")
    try:
        start = float(item["start"])
        end = float(item.get("end", start))
    except (KeyError, TypeError, ValueError) as error:
        raise ValueError(f"Segment #{index} has invalid timing in {path}") from error
    text = item.get("text", "")
    if not isinstance(text, str):
        raise ValueError(f"Segment #{index} has non-string text in {path}")
    speaker = item.get("speaker")
    track_index = item.get("track_index")
    if isinstance(track_index, bool) or not isinstance(track_index, int | None):
        raise ValueError(f"Segment #{index} has non-integer track_index in {path}")
    return TranscriptSegment(
        start=start,
        end=end,
        text=text.strip(),
        speaker=speaker if isinstance(speaker, str) else None,
        track_index=track_index,
    )
