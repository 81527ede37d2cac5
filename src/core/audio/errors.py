"""
Error taxonomy for the audio chunk pipeline.

Every error the pipeline raises derives from AudioProcessingError so the
HTTP layer can translate the whole family into client-facing messages
with a single handler, while still distinguishing the cases that matter.
"""


class AudioProcessingError(Exception):
    """Base class for audio pipeline failures."""
    pass


class StorageError(AudioProcessingError):
    """Raised when a remote object store write fails."""
    pass


class StorageConfigurationError(StorageError):
    """
    Raised when no usable storage backend can be configured.

    The storage factory catches this and falls back to simulated mode,
    so callers normally never see it.
    """
    pass


class SessionNotFoundError(AudioProcessingError):
    """Raised when a chunk references a session that doesn't exist."""

    def __init__(self, session_id: int) -> None:
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class InvalidChunkError(AudioProcessingError):
    """Raised when an uploaded chunk is malformed (bad index, no data)."""
    pass


class MergeError(AudioProcessingError):
    """Raised when no merge strategy could produce an artifact."""
    pass
