"""
Transcript accumulation engine.

The engine owns the session's committed text, the partial text of the active
recognition task and the merged segment store. Every mutation happens on one
processing thread that consumes an inbox of backend results, backend errors,
level readings and terminal requests, so no state is ever written from two
threads. Consumers only ever see immutable snapshots.
"""

import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

from .audio_capture import AudioCapture
from .backends import RecognitionBackend
from .config import EngineConfig
from .errors import BackendError, CaptureError, SessionStateError
from .logger import TranscriptAuditLogger
from .models import (
    ResultEvent,
    RestartReason,
    Segment,
    SessionRecord,
    SessionState,
    StateChange,
    TaskState,
    TerminalReason,
    TranscriptSnapshot,
    compose_text,
)
from .recognition_manager import Deadline, LevelReading, RecognitionSessionManager, TaskOutput
from .recorder import SessionRecorder
from .segment_merger import SegmentMerger
from .storage import SessionStore

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[TranscriptSnapshot], None]
StateListener = Callable[[StateChange], None]

_TRANSITIONS = {
    SessionState.IDLE: {SessionState.STARTING},
    SessionState.STARTING: {SessionState.RUNNING, SessionState.FAILED},
    SessionState.RUNNING: {SessionState.STOPPING, SessionState.FAILED},
    SessionState.STOPPING: {SessionState.STOPPED},
    SessionState.STOPPED: set(),
    SessionState.FAILED: set(),
}

# Upper bound on how long the processing loop sleeps without re-checking deadlines.
MAX_WAIT = 1.0


@dataclass(frozen=True)
class TerminalRequest:
    reason: TerminalReason


def new_session_id() -> str:
    return f"session_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"


class TranscriptionEngine:
    """Accumulates one coherent transcript across many recognition tasks."""

    def __init__(
        self,
        capture: AudioCapture,
        backend: RecognitionBackend,
        config: Optional[EngineConfig] = None,
        store: Optional[SessionStore] = None,
        audit: Optional[TranscriptAuditLogger] = None,
        session_id: Optional[str] = None,
        audio_reference: Optional[str] = None,
        recorder: Optional[SessionRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.config = config or EngineConfig()
        self.config.validate()
        self.capture = capture
        self.backend = backend
        self.store = store
        self.audit = audit
        self.session_id = session_id or new_session_id()
        self.audio_reference = audio_reference
        self.recorder = recorder
        self.clock = clock
        self.wall_clock = wall_clock

        self._inbox: "queue.Queue[object]" = queue.Queue()
        self.manager = RecognitionSessionManager(
            capture,
            backend,
            self.config.audio_format,
            self.config.policy,
            post=self._inbox.put,
            clock=clock,
            on_task_state=self._on_task_state,
        )
        self.merger = SegmentMerger()

        # Session state, written only by the processing thread
        self.state = SessionState.IDLE
        self.task_state: Optional[TaskState] = None
        self.level = 0.0
        self.session_start: Optional[float] = None
        self.started_at: Optional[float] = None
        self.terminal_reason: Optional[TerminalReason] = None
        self.record: Optional[SessionRecord] = None
        self._committed_text = ""
        self._partial_text = ""
        self._persisted = False

        self._snapshot_listeners: List[SnapshotListener] = []
        self._state_listeners: List[StateListener] = []
        self._latest: Optional[TranscriptSnapshot] = None

        self._thread: Optional[threading.Thread] = None
        self._finished = threading.Event()

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def committed_text(self) -> str:
        return self._committed_text

    @property
    def partial_text(self) -> str:
        return self._partial_text

    @property
    def display_text(self) -> str:
        return compose_text(self._committed_text, self._partial_text, self.config.separator)

    @property
    def segments(self) -> Tuple[Segment, ...]:
        return self.merger.segments

    def snapshot(self) -> TranscriptSnapshot:
        """Latest published snapshot, safe to read from any thread."""
        return self._latest or self._build_snapshot()

    def _build_snapshot(self) -> TranscriptSnapshot:
        return TranscriptSnapshot(
            display_text=self.display_text,
            committed_text=self._committed_text,
            partial_text=self._partial_text,
            segments=self.merger.segments,
            level=self.level,
            state=self.state,
            task_state=self.task_state,
            generation=self.manager.generation,
            restart_count=self.manager.restart_count,
        )

    def add_snapshot_listener(self, listener: SnapshotListener):
        self._snapshot_listeners.append(listener)

    def add_state_listener(self, listener: StateListener):
        self._state_listeners.append(listener)

    def _publish(self):
        snapshot = self._build_snapshot()
        self._latest = snapshot
        for listener in list(self._snapshot_listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error(f"Snapshot listener failed: {e}")

    def _emit_state(self, change: StateChange):
        for listener in list(self._state_listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"State listener failed: {e}")

    def _audit(self, event: str, text: Optional[str] = None, incoming: int = 0, note: Optional[str] = None):
        if self.audit is None:
            return
        self.audit.record(
            event,
            session_id=self.session_id,
            text=text,
            incoming_segment_count=incoming,
            segments=self.merger.segments,
            note=note,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _transition(self, new_state: SessionState, reason: Optional[str] = None):
        if new_state not in _TRANSITIONS[self.state]:
            raise SessionStateError(f"Cannot move session from {self.state.value} to {new_state.value}")
        logger.info(f"Session {self.session_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self._emit_state(StateChange(new_state, self.task_state, reason, self.manager.generation))
        self._audit("state_change", note=f"{new_state.value}" + (f" ({reason})" if reason else ""))

    def _on_task_state(self, task_state: TaskState, reason: Optional[RestartReason], generation: int):
        self.task_state = task_state
        self._emit_state(StateChange(self.state, task_state, reason.value if reason else None, generation))
        if task_state is TaskState.RESTARTING:
            self._audit("state_change", note=f"task restarting ({reason.value if reason else 'unknown'})")

    def start(self, background: bool = True):
        """Open capture and the first recognition task.

        With ``background=False`` no processing thread is started and the
        caller drives the engine through :meth:`run_pending`.
        """
        self._transition(SessionState.STARTING)
        try:
            self.capture.start(self.config.audio_format)
        except CaptureError as e:
            logger.error(f"Audio capture failed to start: {e}")
            self._transition(SessionState.FAILED, str(e))
            self._publish()
            self._finished.set()
            raise

        self.session_start = self.clock()
        self.started_at = self.wall_clock()
        self._start_recording()
        self.manager.attach(self.session_start)
        self._audit("session_start")
        first_task = self.manager.start_task()
        # The session runs even without a first task: the failed open is an
        # error restart, and the task stays RESTARTING until the backoff elapses.
        self._transition(SessionState.RUNNING)
        if first_task is None:
            logger.warning(f"Session {self.session_id} started without a recognition task; retrying after backoff")
            self._check_exhausted()
        self._publish()

        if background:
            self._thread = threading.Thread(target=self._run, name=f"engine-{self.session_id}", daemon=True)
            self._thread.start()

    def _start_recording(self):
        if self.recorder is None:
            return
        try:
            path = self.recorder.start(self.capture, self.session_id, self.config.audio_format)
        except OSError as e:
            logger.error(f"Session audio will not be recorded: {e}")
            self.recorder = None
            return
        if self.audio_reference is None:
            self.audio_reference = str(path)

    def on_terminal_event(self, reason: TerminalReason):
        """Request finalization. Safe to call from any thread."""
        self._inbox.put(TerminalRequest(reason))

    def stop(self, reason: TerminalReason = TerminalReason.STOP) -> Optional[SessionRecord]:
        """Finalize the session and wait for teardown to complete."""
        if self.state is SessionState.IDLE:
            raise SessionStateError("Session was never started")
        if self.state.is_terminal:
            return self.record

        self.on_terminal_event(reason)
        if self._thread is not None and self._thread is not threading.current_thread():
            if not self._finished.wait(self.config.stop_timeout):
                logger.error(f"Session {self.session_id} did not finish within {self.config.stop_timeout}s")
            self._thread.join(timeout=self.config.stop_timeout)
        else:
            self.run_pending()
        return self.record

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the session reaches a terminal state."""
        return self._finished.wait(timeout)

    @property
    def is_finished(self) -> bool:
        return self._finished.is_set()

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    def _run(self):
        logger.info(f"Processing loop for {self.session_id} started")
        while not self._finished.is_set():
            try:
                message = self._inbox.get(timeout=self._wait_timeout())
            except queue.Empty:
                message = None
            self._step(message)
        logger.info(f"Processing loop for {self.session_id} stopped")

    def run_pending(self) -> int:
        """Process every queued message, then any due deadline."""
        processed = 0
        while not self._finished.is_set():
            try:
                message = self._inbox.get_nowait()
            except queue.Empty:
                break
            self._step(message)
            processed += 1
        if not self._finished.is_set():
            self._step(None)
        return processed

    def _wait_timeout(self) -> float:
        deadline = self.manager.next_deadline()
        if deadline is None:
            return MAX_WAIT
        return min(MAX_WAIT, max(0.0, deadline - self.clock()))

    def _step(self, message: Optional[object]):
        try:
            if message is not None:
                self._dispatch(message)
            if self.state is SessionState.RUNNING:
                self._poll()
        except Exception as e:
            logger.exception(f"Unexpected error in session {self.session_id}: {e}")
            self._terminate(TerminalReason.ERROR)

    def _dispatch(self, message: object):
        if isinstance(message, TerminalRequest):
            self._terminate(message.reason)
        elif isinstance(message, LevelReading):
            self._on_level(message)
        elif isinstance(message, TaskOutput):
            if self.state is not SessionState.RUNNING:
                logger.debug(f"Dropping task output received while {self.state.value}")
            elif isinstance(message.payload, BackendError):
                self._on_backend_error(message.payload, message.generation)
            else:
                self._on_task_result(message.payload, message.generation)
        else:
            logger.warning(f"Unknown message type: {type(message).__name__}")

    def _on_level(self, reading: LevelReading):
        if self.state is not SessionState.RUNNING:
            return
        self.level = reading.level
        self.manager.on_level(reading.level, reading.at)
        self._publish()

    def _on_task_result(self, event: ResultEvent, generation: int):
        if not self.on_result(event, generation):
            return
        if event.is_final:
            reason = RestartReason.SILENCE if self.manager.restart_pending else RestartReason.TASK_COMPLETED
            self._restart(reason)

    def _on_backend_error(self, error: BackendError, generation: int):
        task = self.manager.active_task
        if error.is_cancelled:
            logger.debug(f"Ignoring cancellation from task {generation}")
            return
        if task is None or task.generation != generation:
            logger.debug(f"Ignoring error from stale task {generation}: {error}")
            return

        self.manager.record_error(error)
        self._audit("error", note=str(error))
        if self.manager.errors_exhausted:
            logger.error(f"Giving up after {self.manager.consecutive_errors} consecutive recognition errors")
            self._terminate(TerminalReason.ERROR)
            return
        self._restart(RestartReason.ERROR)

    def _poll(self):
        # A restart can itself schedule a zero-length backoff; bound the chain.
        for _ in range(3):
            due = self.manager.due(self.clock())
            if due is None or self.state is not SessionState.RUNNING:
                return
            if due is Deadline.BACKOFF_ELAPSED:
                self.manager.start_task()
                self._check_exhausted()
            elif due is Deadline.MAX_DURATION:
                self._restart(RestartReason.MAX_DURATION)
            elif due is Deadline.FINALIZE_TIMEOUT:
                logger.info("No final result after silence; committing partial text")
                self._restart(RestartReason.SILENCE)
            self._publish()

    def _check_exhausted(self):
        if self.manager.active_task is None and self.manager.errors_exhausted:
            logger.error("Recognition backend keeps failing; ending session")
            self._terminate(TerminalReason.ERROR)

    def _restart(self, reason: RestartReason):
        self._commit_partial_as_final(note=f"restart ({reason.value})")
        self.manager.restart_task(reason)
        self._check_exhausted()
        self._publish()

    # ------------------------------------------------------------------
    # Accumulation
    # ------------------------------------------------------------------

    def on_result(self, event: ResultEvent, generation: Optional[int] = None) -> bool:
        """Apply a result of the active task. Returns False if it was discarded."""
        task = self.manager.active_task
        if task is None or (generation is not None and generation != task.generation):
            logger.debug(f"Discarding result from stale task {generation}")
            return False
        if self.merger.is_sealed(task.generation):
            logger.debug(f"Discarding result for sealed task {task.generation}")
            return False

        self.manager.note_result(event)
        incoming = len(event.segments)
        if event.is_final:
            self._commit(event.text)
            self._partial_text = ""
            self.merger.merge(task.generation, task.offset, event.segments, True)
            logger.info(f"[FINAL] task {task.generation}: {event.text.strip()}")
            self._audit("final", text=self.display_text, incoming=incoming)
        else:
            self._partial_text = event.text.strip()
            self.merger.merge(task.generation, task.offset, event.segments, False)
            logger.debug(f"[partial] task {task.generation}: {len(event.text)}ch, {incoming} segments")
            self._audit("partial", text=self.display_text, incoming=incoming)

        self._publish()
        return True

    def _commit(self, text: str):
        text = text.strip()
        if text:
            self._committed_text = compose_text(self._committed_text, text, self.config.separator)

    def _commit_partial_as_final(self, note: Optional[str] = None):
        """Treat the active task's current hypothesis as final."""
        task = self.manager.active_task
        if self._partial_text:
            logger.info(f"Committing partial text of task {task.generation if task else '-'}: {self._partial_text}")
            self._commit(self._partial_text)
            self._partial_text = ""
            self._audit("final", text=self.display_text, note=note)
        if task is not None and not self.merger.is_sealed(task.generation):
            self.merger.seal(task.generation)

    def _terminate(self, reason: TerminalReason):
        if self.state is not SessionState.RUNNING:
            return

        self.terminal_reason = reason
        self._transition(SessionState.STOPPING, reason.value)
        self._commit_partial_as_final(note=f"terminal ({reason.value})")
        self.manager.stop_task()
        self.manager.detach()
        if self.recorder is not None:
            self.recorder.stop()
        if reason.releases_capture:
            self.capture.stop()
        self._transition(SessionState.STOPPED, reason.value)

        self.record = SessionRecord(
            session_id=self.session_id,
            started_at=self.started_at,
            ended_at=self.wall_clock(),
            terminal_reason=reason.value,
            committed_text=self._committed_text,
            segments=self.merger.segments,
            audio_reference=self.audio_reference,
            restart_count=self.manager.restart_count,
        )
        self._audit("session_stop", text=self._committed_text)
        self._persist(self.record)
        self._publish()
        self._finished.set()

    def _persist(self, record: SessionRecord):
        if self.store is None or self._persisted:
            return
        self._persisted = True
        try:
            path = self.store.save(record)
            logger.info(f"Saved session record to {path}")
        except Exception as e:
            logger.error(f"Failed to save session {record.session_id}: {e}")
