from __future__ import annotations


class PipelineError(Exception):
    """Base class for every failure raised by the transcription pipeline."""


class SourceNotFound(PipelineError):
    pass


class MediaNotFound(PipelineError):
    pass


class ConversionError(PipelineError):
    """An audio tooling subprocess (ffmpeg/ffprobe) failed."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


class ConfigurationError(PipelineError):
    pass


class IllegalTransitionError(PipelineError):
    def __init__(self, entity: str, event: str, state: str) -> None:
        super().__init__(f"Cannot {event} {entity} in state '{state}'")
        self.entity = entity
        self.event = event
        self.state = state


class EngineError(PipelineError):
    pass


class EngineConnectionError(EngineError):
    pass


class TranscriptionError(EngineError):
    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable
