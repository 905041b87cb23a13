"""Errors raised by the speech and language engine clients."""

from typing import Optional


class EngineError(Exception):
    """Base class for failures of an external engine call."""
    pass


class TranscriptionError(EngineError):
    pass


class ConversationError(EngineError):
    pass


class SynthesisError(EngineError):
    """Raised when the synthesis engine does not return audio."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
