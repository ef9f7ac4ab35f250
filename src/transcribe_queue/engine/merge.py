"""Merge stage for multitrack jobs."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from transcribe_queue.engine.adapters.registry import AdapterRegistry
from transcribe_queue.engine.errors import AdapterNotFoundError, JobNotFoundError, MergeError
from transcribe_queue.engine.models import (
    JobStatus,
    MergeStatus,
    Transcript,
    TranscriptSegment,
)
from transcribe_queue.engine.repository import JobRepository
from transcribe_queue.engine.transcripts import write_transcript

MERGED_FILENAME = "merged.json"


@dataclass(slots=True)
class TrackTranscript:
    """Parsed output of one track with its declared start offset."""

    track_index: int
    offset_seconds: float
    transcript: Transcript


def merge_transcripts(tracks: Sequence[TrackTranscript]) -> Transcript:
    """Combine track transcripts into one timeline.

    Segments are shifted by their track offset and ordered by absolute start;
    ties go to the track with the smaller offset, then the smaller index, then
    the original segment order.
    """

    keyed: list[tuple[tuple[float, float, int, int], TranscriptSegment]] = []
    for track in tracks:
        for order, segment in enumerate(track.transcript.segments):
            start = segment.start + track.offset_seconds
            shifted = TranscriptSegment(
                start=start,
                end=segment.end + track.offset_seconds,
                text=segment.text,
                speaker=segment.speaker,
                track_index=track.track_index,
            )
            keyed.append(((start, track.offset_seconds, track.track_index, order), shifted))
    keyed.sort(key=lambda item: item[0])

    languages = {track.transcript.language for track in tracks if track.transcript.language}
    return Transcript(
        segments=[segment for _, segment in keyed],
        language=languages.pop() if len(languages) == 1 else None,
    )


class MergeCoordinator:
    """Drives merge_status Pending -> Merging -> Merged | Failed.

    A failed merge never touches the job or track statuses; it can be
    re-triggered from the stored track outputs without re-running the adapter.
    """

    def __init__(
        self,
        *,
        repository: JobRepository,
        registry: AdapterRegistry,
        workdir: Path,
        logger: logging.Logger | None = None,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.workdir = workdir
        self._logger = logger or logging.getLogger(__name__)

    def merge(self, job_id: str) -> MergeStatus:
        """Run the merge stage for a job whose tracks have all succeeded."""

        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if not job.is_multitrack:
            raise MergeError(f"Job {job_id} is single track; nothing to merge.")
        if not self.repository.set_merge_status(
            job_id=job_id,
            expected=[MergeStatus.PENDING],
            status=MergeStatus.MERGING,
        ):
            raise MergeError(f"Job {job_id} merge is not pending.")

        try:
            merged_path = self._merge_outputs(job_id=job_id, adapter=job.adapter)
        except MergeError as error:
            self._logger.warning("Merge failed for job %s: %s", job_id, error)
            self.repository.set_merge_status(
                job_id=job_id,
                expected=[MergeStatus.MERGING],
                status=MergeStatus.FAILED,
                merge_error=str(error),
            )
            return MergeStatus.FAILED

        self.repository.set_merge_status(
            job_id=job_id,
            expected=[MergeStatus.MERGING],
            status=MergeStatus.MERGED,
            output_path=str(merged_path),
        )
        self._logger.info(
            "Merged %d tracks for job %s into %s",
            job.track_count,
            job_id,
            merged_path,
        )
        return MergeStatus.MERGED

    def retrigger(self, job_id: str) -> MergeStatus:
        """Re-run a failed merge for a succeeded multitrack job."""

        job = self.repository.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if not job.is_multitrack:
            raise MergeError(f"Job {job_id} is single track; nothing to merge.")
        if job.status != JobStatus.SUCCEEDED:
            raise MergeError(f"Job {job_id} is {job.status.value}; merge retry needs succeeded.")
        if job.merge_status != MergeStatus.FAILED:
            raise MergeError(
                f"Job {job_id} merge is {job.merge_status.value}; "
                "only failed merges can be retried.",
            )
        if not self.repository.set_merge_status(
            job_id=job_id,
            expected=[MergeStatus.FAILED],
            status=MergeStatus.PENDING,
        ):
            raise MergeError(f"Job {job_id} merge changed concurrently.")
        return self.merge(job_id)

    def _merge_outputs(self, *, job_id: str, adapter: str) -> Path:
        try:
            descriptor = self.registry.lookup(adapter)
        except AdapterNotFoundError as error:
            raise MergeError(str(error)) from error

        parsed: list[TrackTranscript] = []
        for track in self.repository.list_tracks(job_id):
            if track.status != JobStatus.SUCCEEDED or not track.output_path:
                raise MergeError(f"Track {track.track_index} has no successful output.")
            try:
                transcript = descriptor.parse_output(Path(track.output_path))
            except (OSError, ValueError) as error:
                raise MergeError(f"Track {track.track_index}: {error}") from error
            parsed.append(
                TrackTranscript(
                    track_index=track.track_index,
                    offset_seconds=track.offset_seconds,
                    transcript=transcript,
                ),
            )

        merged_path = self.workdir / job_id / MERGED_FILENAME
        try:
            write_transcript(merged_path, merge_transcripts(parsed))
        except OSError as error:
            raise MergeError(f"Cannot write merged transcript {merged_path}: {error}") from error
        return merged_path
