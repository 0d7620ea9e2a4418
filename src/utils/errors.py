"""
Exception types raised by the transcription and alignment pipeline.

The job orchestrator turns any of these (or any other exception escaping a
stage) into a failed job with str(error) as the user-facing message.
"""


class PipelineError(RuntimeError):
    """Base class for pipeline failures."""


class TranscriptionError(PipelineError):
    """A book could not be transcribed at all (e.g. it has no chapters)."""


class EngineUnavailableError(PipelineError):
    """The speech-recognition library is not installed or cannot be imported."""


class EngineInitializationError(PipelineError):
    """The engine failed to load on the selected backend and on the CPU fallback."""


class ModelDownloadError(PipelineError):
    """A model artifact could not be downloaded from the registry."""


class UnsupportedDocumentError(PipelineError):
    """The document carries no extractable text (scanned or image-only)."""


class JobCancelledError(PipelineError):
    """Raised inside the worker when a job's cancellation token is set."""
