"""
Continuous Transcript

Accumulates one continuous transcript from a live audio source while the
speech recognizer underneath is periodically restarted on silence, on its
maximum task duration, or after recoverable errors.
"""

__version__ = "1.0.0"
__description__ = "Continuous live transcription with seamless recognizer restarts"

from .audio_capture import AudioCapture
from .backends import RecognitionBackend, WhisperBackend
from .config import EngineConfig, RestartPolicy
from .engine import TranscriptionEngine
from .errors import BackendError, CaptureError, SessionStateError
from .logger import RealTimeDisplay, TranscriptAuditLogger
from .models import (
    ResultEvent,
    RawSegment,
    Segment,
    SessionRecord,
    SessionState,
    TaskState,
    TerminalReason,
    TranscriptSnapshot,
)
from .recorder import SessionRecorder
from .segment_merger import SegmentMerger
from .storage import SessionStore

__all__ = [
    "AudioCapture",
    "BackendError",
    "CaptureError",
    "EngineConfig",
    "RawSegment",
    "RealTimeDisplay",
    "RecognitionBackend",
    "RestartPolicy",
    "ResultEvent",
    "Segment",
    "SegmentMerger",
    "SessionRecord",
    "SessionRecorder",
    "SessionState",
    "SessionStateError",
    "SessionStore",
    "TaskState",
    "TerminalReason",
    "TranscriptAuditLogger",
    "TranscriptSnapshot",
    "TranscriptionEngine",
    "WhisperBackend",
]
