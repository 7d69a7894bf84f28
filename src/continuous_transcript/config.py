"""
Tunable engine settings.

The silence and task-duration values are empirically chosen defaults, not
derived constants; every field can be overridden from the command line.
"""

from dataclasses import dataclass, field

from .models import AudioFormat


@dataclass
class RestartPolicy:
    """When the recognition manager replaces its backend task."""

    silence_threshold: float = 0.15
    silence_duration: float = 1.5
    max_task_duration: float = 55.0
    error_backoff: float = 0.35
    finalize_timeout: float = 2.0
    max_consecutive_errors: int = 5

    def validate(self):
        if not 0.0 <= self.silence_threshold <= 1.0:
            raise ValueError(f"silence_threshold must be within [0, 1], got {self.silence_threshold}")
        if self.silence_duration <= 0:
            raise ValueError("silence_duration must be positive")
        if self.max_task_duration <= 0:
            raise ValueError("max_task_duration must be positive")
        if self.error_backoff < 0:
            raise ValueError("error_backoff must not be negative")
        if self.finalize_timeout <= 0:
            raise ValueError("finalize_timeout must be positive")
        if self.max_consecutive_errors < 1:
            raise ValueError("max_consecutive_errors must be at least 1")


@dataclass
class EngineConfig:
    """Settings for one transcription session."""

    audio_format: AudioFormat = field(default_factory=AudioFormat)
    policy: RestartPolicy = field(default_factory=RestartPolicy)
    separator: str = " "
    queue_size: int = 64
    stop_timeout: float = 5.0

    def validate(self):
        self.policy.validate()
        if self.audio_format.sample_rate <= 0 or self.audio_format.channels <= 0:
            raise ValueError(f"Invalid audio format: {self.audio_format}")
        if self.audio_format.blocksize <= 0:
            raise ValueError("block_duration too small for the sample rate")
        if self.queue_size < 1:
            raise ValueError("queue_size must be at least 1")
