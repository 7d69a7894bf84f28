"""
Error types for the continuous transcription engine.
"""

import enum


class CaptureError(RuntimeError):
    """Audio hardware or format unavailable. Fatal to the session."""


class SessionStateError(RuntimeError):
    """Raised when a lifecycle call is not legal in the current session state."""


class BackendErrorKind(enum.Enum):
    CANCELLED = "cancelled"
    RECOVERABLE = "recoverable"


class BackendError(Exception):
    """Error reported by a recognition backend for one task."""

    def __init__(self, message: str, kind: BackendErrorKind = BackendErrorKind.RECOVERABLE):
        super().__init__(message)
        self.kind = kind

    @classmethod
    def cancelled(cls, message: str = "recognition task cancelled") -> "BackendError":
        return cls(message, BackendErrorKind.CANCELLED)

    @classmethod
    def recoverable(cls, message: str) -> "BackendError":
        return cls(message, BackendErrorKind.RECOVERABLE)

    @property
    def is_cancelled(self) -> bool:
        return self.kind is BackendErrorKind.CANCELLED
