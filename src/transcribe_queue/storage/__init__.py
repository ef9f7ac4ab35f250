"""SQLite storage for the transcription job queue."""
