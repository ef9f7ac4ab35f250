"""Transcription job execution engine.

A fixed pool of worker threads claims queued jobs from SQLite with a
compare-and-swap update, runs the resolved adapter command in its own process
group, streams progress from the adapter's stdout and records one terminal
state per job. Multitrack jobs run their tracks one after another and finish
with a merge stage whose status is tracked separately from the job status, so
a failed merge can be retried without transcribing anything again.

Cancellation only ever signals the process group; the worker that owns the job
observes the exit and records ``killed``.
"""
