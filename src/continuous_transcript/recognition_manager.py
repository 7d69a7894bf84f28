"""
Recognition task lifecycle and restart policy.

The manager keeps exactly one backend task alive at a time and replaces it on
silence, on its maximum duration, or after a recoverable error. It only ever
holds subscription handles from the capture controller, so replacing a task
can never reopen or close the input stream.

All methods except the buffer and output forwarders run on the engine's
processing thread.
"""

import enum
import logging
import time
from dataclasses import dataclass
from functools import partial
from typing import Any, Callable, Optional

from .audio_capture import AudioCapture, Subscription
from .backends import BackendMessage, RecognitionBackend
from .config import RestartPolicy
from .errors import BackendError
from .level_monitor import LevelMonitor, normalized_level
from .models import AudioBuffer, AudioFormat, RestartReason, ResultEvent, TaskState
from .timeline import task_offset

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskOutput:
    """A backend message tagged with the generation that produced it."""

    generation: int
    payload: BackendMessage


@dataclass(frozen=True)
class LevelReading:
    level: float
    at: float


class Deadline(enum.Enum):
    BACKOFF_ELAPSED = "backoff_elapsed"
    MAX_DURATION = "max_duration"
    FINALIZE_TIMEOUT = "finalize_timeout"


@dataclass
class Task:
    """One attempt at the recognition backend within a session."""

    generation: int
    task_start: float
    offset: float
    token: Any
    subscription: Optional[Subscription] = None
    state: TaskState = TaskState.STARTING
    last_result: Optional[ResultEvent] = None


class RecognitionSessionManager:
    """Owns the active recognition task and decides when to replace it."""

    def __init__(
        self,
        capture: AudioCapture,
        backend: RecognitionBackend,
        audio_format: AudioFormat,
        policy: RestartPolicy,
        post: Callable[[object], None],
        clock: Callable[[], float] = time.monotonic,
        on_task_state: Optional[Callable[[TaskState, Optional[RestartReason], int], None]] = None,
    ):
        self.capture = capture
        self.backend = backend
        self.audio_format = audio_format
        self.policy = policy
        self.post = post
        self.clock = clock
        self.on_task_state = on_task_state

        self.level_monitor = LevelMonitor(policy.silence_threshold, policy.silence_duration)
        self.session_start: Optional[float] = None
        self.generation = 0
        self.restart_count = 0
        self.consecutive_errors = 0

        self._active: Optional[Task] = None
        self._level_subscription: Optional[Subscription] = None
        self._silence_pending_since: Optional[float] = None
        self._backoff_deadline: Optional[float] = None

    @property
    def active_task(self) -> Optional[Task]:
        return self._active

    @property
    def restart_pending(self) -> bool:
        return self._silence_pending_since is not None

    @property
    def backoff_pending(self) -> bool:
        return self._backoff_deadline is not None

    @property
    def errors_exhausted(self) -> bool:
        return self.consecutive_errors >= self.policy.max_consecutive_errors

    def attach(self, session_start: float):
        """Begin metering the session's audio."""
        self.session_start = session_start
        self._level_subscription = self.capture.subscribe(self._measure, name="level-monitor")

    def detach(self):
        if self._level_subscription is not None:
            self.capture.unsubscribe(self._level_subscription)
            self._level_subscription = None

    def _measure(self, buffer: AudioBuffer):
        # Runs on the subscription thread; only posts a reading.
        self.post(LevelReading(normalized_level(buffer.samples), self.clock()))

    def _forward(self, generation: int, payload: BackendMessage):
        # Runs on whatever thread the backend emits from.
        self.post(TaskOutput(generation, payload))

    def _feed(self, token: Any, buffer: AudioBuffer):
        self.backend.push(buffer, token)

    def _notify(self, state: TaskState, reason: Optional[RestartReason] = None):
        if self._active is not None:
            self._active.state = state
        if self.on_task_state:
            self.on_task_state(state, reason, self.generation)

    def start_task(self) -> Optional[Task]:
        """Open a new backend task. A failed open schedules an error restart."""
        if self._active is not None:
            raise RuntimeError(f"Recognition task {self._active.generation} is still active")
        if self.session_start is None:
            raise RuntimeError("Recognition manager is not attached to a session")

        now = self.clock()
        self.generation += 1
        generation = self.generation
        self._backoff_deadline = None
        if self.on_task_state:
            self.on_task_state(TaskState.STARTING, None, generation)

        try:
            token = self.backend.open_session(self.audio_format, partial(self._forward, generation))
        except BackendError as e:
            self.record_error(e)
            logger.warning(f"Recognition task {generation} failed to open: {e}")
            self._schedule_backoff(now)
            return None

        self._active = Task(
            generation=generation,
            task_start=now,
            offset=task_offset(self.session_start, now),
            token=token,
        )
        self._active.subscription = self.capture.subscribe(partial(self._feed, token), name=f"task-{generation}")
        self._silence_pending_since = None
        self.level_monitor.reset(now)
        self._notify(TaskState.RUNNING)
        logger.info(f"Recognition task {generation} started at +{self._active.offset:.2f}s")
        return self._active

    def _close_active(self):
        task = self._active
        if task is None:
            return
        self._active = None
        if task.subscription is not None:
            self.capture.unsubscribe(task.subscription)
        try:
            self.backend.close(task.token)
        except Exception as e:
            logger.error(f"Error closing recognition task {task.generation}: {e}")
        task.state = TaskState.STOPPED

    def _schedule_backoff(self, now: float):
        self._backoff_deadline = now + self.policy.error_backoff
        if self.on_task_state:
            self.on_task_state(TaskState.RESTARTING, RestartReason.ERROR, self.generation)

    def restart_task(self, reason: RestartReason) -> Optional[Task]:
        """Replace the active task. Error restarts wait for the backoff first."""
        now = self.clock()
        previous = self._active.generation if self._active else self.generation
        self._close_active()
        self._silence_pending_since = None
        self.restart_count += 1
        logger.info(f"Restarting recognition task {previous} ({reason.value})")

        if reason is RestartReason.ERROR:
            self._schedule_backoff(now)
            return None
        if self.on_task_state:
            self.on_task_state(TaskState.RESTARTING, reason, previous)
        return self.start_task()

    def stop_task(self):
        """Cancel the active task and any scheduled restart; open nothing new."""
        if self._backoff_deadline is not None:
            logger.info("Cancelling pending recognition restart")
        self._backoff_deadline = None
        self._silence_pending_since = None
        had_task = self._active is not None
        self._close_active()
        if had_task and self.on_task_state:
            self.on_task_state(TaskState.STOPPED, None, self.generation)

    def record_error(self, error: BackendError):
        self.consecutive_errors += 1
        logger.warning(
            f"Recognition error ({self.consecutive_errors}/{self.policy.max_consecutive_errors}): {error}"
        )

    def note_result(self, event: ResultEvent):
        if self._active is not None:
            self._active.last_result = event
        if event.is_final:
            self.consecutive_errors = 0

    def on_level(self, level: float, now: float):
        """Feed a level reading into silence detection."""
        self.level_monitor.observe(level, now)
        task = self._active
        if task is None:
            return

        if self._silence_pending_since is not None and level > self.policy.silence_threshold:
            logger.debug(f"Speech resumed in task {task.generation}; silence restart withdrawn")
            self._silence_pending_since = None
            return

        if (
            self._silence_pending_since is None
            and task.last_result is not None
            and self.level_monitor.is_silent(now)
        ):
            self._silence_pending_since = now
            logger.info(
                f"Silence for {self.level_monitor.silence_elapsed(now):.1f}s in task {task.generation}, "
                f"restart pending until final result"
            )

    def next_deadline(self) -> Optional[float]:
        deadlines = []
        if self._backoff_deadline is not None:
            deadlines.append(self._backoff_deadline)
        if self._active is not None:
            deadlines.append(self._active.task_start + self.policy.max_task_duration)
        if self._silence_pending_since is not None:
            deadlines.append(self._silence_pending_since + self.policy.finalize_timeout)
        return min(deadlines) if deadlines else None

    def due(self, now: float) -> Optional[Deadline]:
        """The first deadline that has passed, if any."""
        if self._backoff_deadline is not None and now >= self._backoff_deadline:
            return Deadline.BACKOFF_ELAPSED
        task = self._active
        if task is None:
            return None
        if now - task.task_start >= self.policy.max_task_duration:
            return Deadline.MAX_DURATION
        if (
            self._silence_pending_since is not None
            and now - self._silence_pending_since >= self.policy.finalize_timeout
        ):
            return Deadline.FINALIZE_TIMEOUT
        return None
