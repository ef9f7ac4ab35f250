"""Transcription job queue with process-group supervised adapters."""

__version__ = "0.1.0"
