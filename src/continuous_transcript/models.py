"""
Value types shared by the capture, recognition and accumulation layers.
All of them are immutable so snapshots can be handed to other threads freely.
"""

import enum
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np


class SessionState(enum.Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.STOPPED, SessionState.FAILED)


class TaskState(enum.Enum):
    STARTING = "task_starting"
    RUNNING = "task_running"
    RESTARTING = "task_restarting"
    STOPPED = "task_stopped"


class TerminalReason(enum.Enum):
    STOP = "stop"
    TIMEOUT = "timeout"
    ERROR = "error"
    BACKGROUNDED = "backgrounded"

    @property
    def releases_capture(self) -> bool:
        """Only an explicit stop or backgrounding closes the input stream."""
        return self in (TerminalReason.STOP, TerminalReason.BACKGROUNDED)


class RestartReason(enum.Enum):
    SILENCE = "silence"
    MAX_DURATION = "max_duration"
    ERROR = "error"
    TASK_COMPLETED = "task_completed"


@dataclass(frozen=True)
class AudioFormat:
    """Fixed PCM format of every buffer in a session."""

    sample_rate: int = 16000
    channels: int = 1
    dtype: str = "float32"
    block_duration: float = 0.1

    @property
    def blocksize(self) -> int:
        return int(self.sample_rate * self.block_duration)


@dataclass(frozen=True)
class AudioBuffer:
    """A block of mono samples with its position in the capture stream."""

    sequence: int
    samples: np.ndarray
    sample_rate: int
    captured_at: float

    @property
    def duration(self) -> float:
        return len(self.samples) / self.sample_rate


@dataclass(frozen=True)
class RawSegment:
    """A backend segment; ``start`` is relative to the task that produced it."""

    text: str
    start: float
    duration: float
    confidence: float = 0.0


@dataclass(frozen=True)
class ResultEvent:
    """Backend hypothesis for the whole current task."""

    is_final: bool
    text: str
    segments: Tuple[RawSegment, ...] = ()


@dataclass(frozen=True)
class Segment:
    """A transcript segment placed on the session timeline."""

    text: str
    start_time: float
    end_time: float
    confidence: float = 0.0

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time

    @staticmethod
    def format_time(seconds: float) -> str:
        """Format time in HH:MM:SS.ms format."""
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        seconds = seconds % 60
        return f"{hours:02d}:{minutes:02d}:{seconds:06.3f}"

    def to_dict(self) -> Dict:
        return {
            "text": self.text,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "Segment":
        return cls(
            text=data["text"],
            start_time=float(data["start_time"]),
            end_time=float(data["end_time"]),
            confidence=float(data.get("confidence", 0.0)),
        )

    def __str__(self) -> str:
        return f"[{self.format_time(self.start_time)} --> {self.format_time(self.end_time)}] {self.text}"


@dataclass(frozen=True)
class StateChange:
    """Lifecycle notification for UI consumers."""

    session_state: SessionState
    task_state: Optional[TaskState]
    reason: Optional[str] = None
    generation: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.session_state.is_terminal


@dataclass(frozen=True)
class TranscriptSnapshot:
    """Read-only view of a session published after every update."""

    display_text: str
    committed_text: str
    partial_text: str
    segments: Tuple[Segment, ...]
    level: float
    state: SessionState
    task_state: Optional[TaskState]
    generation: int
    restart_count: int


@dataclass(frozen=True)
class SessionRecord:
    """Finalized session handed to persistence exactly once."""

    session_id: str
    started_at: float
    ended_at: float
    terminal_reason: str
    committed_text: str
    segments: Tuple[Segment, ...] = field(default_factory=tuple)
    audio_reference: Optional[str] = None
    restart_count: int = 0

    @property
    def word_count(self) -> int:
        return len(self.committed_text.split())

    @property
    def duration(self) -> float:
        return max(0.0, self.ended_at - self.started_at)

    def to_dict(self) -> Dict:
        return {
            "session_id": self.session_id,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "terminal_reason": self.terminal_reason,
            "committed_text": self.committed_text,
            "segments": [segment.to_dict() for segment in self.segments],
            "audio_reference": self.audio_reference,
            "restart_count": self.restart_count,
            "word_count": self.word_count,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "SessionRecord":
        return cls(
            session_id=data["session_id"],
            started_at=float(data["started_at"]),
            ended_at=float(data["ended_at"]),
            terminal_reason=data["terminal_reason"],
            committed_text=data.get("committed_text", ""),
            segments=tuple(Segment.from_dict(item) for item in data.get("segments", [])),
            audio_reference=data.get("audio_reference"),
            restart_count=int(data.get("restart_count", 0)),
        )


def compose_text(committed: str, partial: str, separator: str = " ") -> str:
    """Join committed and partial text, skipping whichever side is empty."""
    if not committed:
        return partial
    if not partial:
        return committed
    return f"{committed}{separator}{partial}"
