"""Error taxonomy for the transcription engine."""

from __future__ import annotations


class TranscribeQueueError(RuntimeError):
    """Base class for engine errors."""


class ValidationError(TranscribeQueueError):
    """Submission rejected before any job record is created."""


class AdapterNotFoundError(TranscribeQueueError, LookupError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Adapter not registered: {name}")
        self.name = name


class DuplicateAdapterError(TranscribeQueueError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Adapter already registered: {name}")
        self.name = name


class JobNotFoundError(TranscribeQueueError, LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class ProcessStartError(TranscribeQueueError):
    """The OS refused to spawn the adapter command."""


class ProcessRuntimeError(TranscribeQueueError):
    """Adapter process exited unsuccessfully."""

    def __init__(self, message: str, *, exit_code: int, stderr_tail: str = "") -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail


class ProgressParseError(TranscribeQueueError, ValueError):
    """A progress line could not be interpreted. Recoverable."""


class MergeError(TranscribeQueueError):
    """Merging track transcripts failed; track results stay intact."""
