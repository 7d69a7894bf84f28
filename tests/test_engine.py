"""
Tests for the transcript accumulation engine.
"""

import time
import wave

import pytest
from unittest.mock import MagicMock, patch

from continuous_transcript.errors import BackendError, CaptureError, SessionStateError
from continuous_transcript.logger import TranscriptAuditLogger
from continuous_transcript.models import (
    ResultEvent,
    SessionState,
    TaskState,
    TerminalReason,
)
from continuous_transcript.recognition_manager import LevelReading
from continuous_transcript.recorder import SessionRecorder


def timeline(segments):
    return [(round(s.start_time, 3), round(s.duration, 3), s.text) for s in segments]


@pytest.fixture
def engine(make_engine):
    engine = make_engine()
    engine.start(background=False)
    return engine


class TestAccumulation:
    """Test cases for committed and partial text."""

    def test_two_task_session(self, engine, backend, clock):
        """Finals from consecutive tasks join into one transcript and timeline."""
        clock.advance(5.0)
        backend.final("Hello world", [("Hello", 0.0, 1.5), ("world", 1.5, 1.5)])
        engine.run_pending()

        assert engine.manager.active_task.offset == pytest.approx(5.0)

        backend.final("How are you", [("How", 0.0, 1.0), ("are you", 1.0, 1.5)])
        engine.run_pending()

        assert engine.committed_text == "Hello world How are you"
        assert timeline(engine.segments) == [
            (0.0, 1.5, "Hello"),
            (1.5, 1.5, "world"),
            (5.0, 1.0, "How"),
            (6.0, 1.5, "are you"),
        ]

    def test_partial_is_replaced_not_appended(self, engine, backend):
        backend.partial("I scream icecream", [("I", 0.0, 0.5), ("scream", 0.5, 0.5), ("icecream", 1.0, 0.8)])
        backend.partial("Ice cream", [("Ice cream", 0.0, 1.8)])
        engine.run_pending()

        assert engine.partial_text == "Ice cream"
        assert engine.display_text == "Ice cream"
        assert timeline(engine.segments) == [(0.0, 1.8, "Ice cream")]

    def test_display_text_joins_committed_and_partial(self, engine, backend):
        backend.final("Hello world")
        engine.run_pending()
        backend.partial("How")
        engine.run_pending()

        assert engine.display_text == "Hello world How"
        backend.partial("")
        engine.run_pending()
        assert engine.display_text == "Hello world"

    def test_duplicate_partial_is_idempotent(self, engine, backend):
        backend.partial("same", [("same", 0.0, 1.0)])
        engine.run_pending()
        first = engine.snapshot()

        backend.partial("same", [("same", 0.0, 1.0)])
        engine.run_pending()

        assert engine.snapshot().display_text == first.display_text
        assert engine.snapshot().segments == first.segments

    def test_final_is_committed_once(self, engine, backend):
        backend.final("Hello")
        engine.run_pending()

        assert engine.committed_text == "Hello"
        assert engine.partial_text == ""
        assert engine.manager.generation == 2

    def test_result_from_stale_task_is_dropped(self, engine, backend):
        backend.final("first")
        engine.run_pending()

        backend.partial("late echo", token=1)
        engine.run_pending()

        assert engine.partial_text == ""
        assert engine.committed_text == "first"

    def test_on_result_applies_to_active_task(self, engine):
        assert engine.on_result(ResultEvent(False, "direct"))
        assert engine.partial_text == "direct"
        assert not engine.on_result(ResultEvent(False, "stale"), generation=99)

    def test_snapshots_are_immutable_copies(self, engine, backend):
        backend.partial("one")
        engine.run_pending()
        before = engine.snapshot()

        backend.partial("one two")
        engine.run_pending()

        assert before.display_text == "one"
        assert engine.snapshot().display_text == "one two"


class TestRestarts:
    """Test cases for task replacement during a session."""

    def test_capture_opened_once_across_restarts(self, engine, backend, capture, stream_factory, clock):
        for i in range(4):
            clock.advance(3.0)
            backend.final(f"sentence {i}")
            engine.run_pending()

        assert engine.manager.restart_count == 4
        assert capture.start_count == 1
        assert capture.stop_count == 0
        assert len(stream_factory.streams) == 1

    def test_max_duration_commits_partial(self, engine, backend, clock):
        backend.partial("a very long monologue")
        engine.run_pending()

        clock.advance(55.0)
        engine.run_pending()

        assert engine.committed_text == "a very long monologue"
        assert engine.partial_text == ""
        assert engine.manager.generation == 2
        assert backend.closed == [1]

    def test_silence_restart_reason(self, engine, backend, clock):
        changes = []
        engine.add_state_listener(changes.append)
        backend.partial("hello")
        engine.run_pending()

        engine.manager.post(LevelReading(0.0, clock.advance(1.5)))
        engine.run_pending()
        assert engine.manager.restart_pending

        backend.final("hello there")
        engine.run_pending()

        restarting = [c for c in changes if c.task_state is TaskState.RESTARTING]
        assert restarting[-1].reason == "silence"
        assert engine.committed_text == "hello there"

    def test_finalize_timeout_commits_partial(self, engine, backend, clock):
        backend.partial("no final coming")
        engine.run_pending()
        engine.manager.post(LevelReading(0.0, clock.advance(1.5)))
        engine.run_pending()

        clock.advance(2.0)
        engine.run_pending()

        assert engine.committed_text == "no final coming"
        assert engine.manager.generation == 2

    def test_level_is_published(self, engine, clock):
        engine.manager.post(LevelReading(0.42, clock()))
        engine.run_pending()

        assert engine.snapshot().level == pytest.approx(0.42)

    def test_recoverable_error_restarts_after_backoff(self, engine, backend, clock):
        backend.partial("before the error")
        backend.fail()
        engine.run_pending()

        assert engine.committed_text == "before the error"
        assert engine.manager.active_task is None
        assert backend.opened == [1]

        clock.advance(0.35)
        engine.run_pending()

        assert backend.opened == [1, 2]
        assert engine.state is SessionState.RUNNING

    def test_cancellation_is_ignored(self, engine, backend):
        backend.emit(BackendError.cancelled())
        engine.run_pending()

        assert engine.manager.consecutive_errors == 0
        assert engine.manager.active_task.generation == 1

    def test_repeated_errors_end_session(self, engine, backend, capture, clock):
        for _ in range(3):
            backend.fail()
            engine.run_pending()
            clock.advance(0.35)
            engine.run_pending()

        assert engine.state is SessionState.STOPPED
        assert engine.terminal_reason is TerminalReason.ERROR
        assert capture.is_running  # left to the owner

    def test_unexpected_exception_ends_session_with_error(self, engine, backend):
        with patch.object(engine.merger, 'merge', side_effect=RuntimeError("boom")):
            backend.partial("text")
            engine.run_pending()

        assert engine.state is SessionState.STOPPED
        assert engine.terminal_reason is TerminalReason.ERROR


class TestLifecycle:
    """Test cases for starting and finalizing sessions."""

    def test_start_runs_first_task(self, engine, backend, capture):
        assert engine.state is SessionState.RUNNING
        assert engine.task_state is TaskState.RUNNING
        assert backend.opened == [1]
        assert capture.is_running

    def test_capture_error_fails_session(self, make_engine, stream_factory, backend):
        stream_factory.fail_start = True
        engine = make_engine()

        with pytest.raises(CaptureError):
            engine.start(background=False)

        assert engine.state is SessionState.FAILED
        assert engine.is_finished
        assert backend.opened == []

    def test_first_task_failure_retries_after_backoff(self, make_engine, backend, clock):
        """A session whose first task fails to open runs and opens one after the backoff."""
        backend.open_failures = 1
        engine = make_engine()
        engine.start(background=False)

        assert engine.state is SessionState.RUNNING
        assert engine.task_state is TaskState.RESTARTING
        assert engine.manager.active_task is None
        assert backend.opened == []

        clock.advance(0.35)
        engine.run_pending()

        assert backend.opened == [1]
        assert engine.task_state is TaskState.RUNNING
        assert engine.manager.active_task.generation == 2

    def test_recording_becomes_audio_reference(self, make_engine, stream_factory, temp_dir, sample_audio_data):
        audio_data, _ = sample_audio_data
        recorder = SessionRecorder(temp_dir)
        engine = make_engine(recorder=recorder)
        engine.start(background=False)

        stream_factory.stream.feed(audio_data)
        deadline = time.monotonic() + 2.0
        while recorder.frames_written < len(audio_data) and time.monotonic() < deadline:
            time.sleep(0.01)
        record = engine.stop()

        assert record.audio_reference.endswith("session_test.wav")
        assert not recorder.is_recording
        with wave.open(record.audio_reference, "rb") as wav:
            assert wav.getnframes() == len(audio_data)

    def test_recording_failure_does_not_stop_session(self, make_engine, temp_dir):
        with open(f"{temp_dir}/session_test.wav", "wb") as f:
            f.write(b"taken")
        engine = make_engine(recorder=SessionRecorder(temp_dir))
        engine.start(background=False)

        record = engine.stop()

        assert engine.recorder is None
        assert record.audio_reference is None
        assert record.terminal_reason == "stop"

    def test_start_twice_is_rejected(self, engine):
        with pytest.raises(SessionStateError):
            engine.start(background=False)

    def test_stop_before_start_is_rejected(self, make_engine):
        with pytest.raises(SessionStateError):
            make_engine().stop()

    def test_stop_commits_partial(self, engine, backend, capture):
        """Text visible at the moment of stopping ends up in the record."""
        backend.partial("unfinished thought")
        engine.run_pending()

        record = engine.stop()

        assert record.committed_text == "unfinished thought"
        assert record.terminal_reason == "stop"
        assert engine.state is SessionState.STOPPED
        assert engine.display_text == "unfinished thought"
        assert backend.closed == [1]
        assert capture.stop_count == 1

    def test_result_queued_before_stop_is_kept(self, engine, backend):
        backend.final("last words")
        record = engine.stop()

        assert record.committed_text == "last words"

    def test_stop_cancels_pending_restart(self, engine, backend, clock):
        backend.fail()
        engine.run_pending()
        assert engine.manager.backoff_pending

        engine.stop()
        clock.advance(5.0)
        engine.run_pending()

        assert backend.opened == [1]

    def test_timeout_keeps_capture_running(self, engine, capture):
        engine.on_terminal_event(TerminalReason.TIMEOUT)
        engine.run_pending()

        assert engine.state is SessionState.STOPPED
        assert capture.is_running
        assert capture.stop_count == 0

    def test_backgrounded_releases_capture(self, engine, capture):
        engine.stop(TerminalReason.BACKGROUNDED)
        assert capture.stop_count == 1

    def test_results_after_stop_are_ignored(self, engine, backend):
        engine.stop()
        backend.final("too late")
        engine.run_pending()

        assert engine.committed_text == ""

    def test_record_persisted_exactly_once(self, make_engine, backend):
        store = MagicMock()
        engine = make_engine(store=store, audio_reference="recording.wav")
        engine.start(background=False)
        backend.final("persist me", [("persist me", 0.0, 1.0)])
        engine.run_pending()

        record = engine.stop()
        assert engine.stop() is record
        engine.on_terminal_event(TerminalReason.STOP)
        engine.run_pending()

        store.save.assert_called_once_with(record)
        assert record.session_id == "session_test"
        assert record.audio_reference == "recording.wav"
        assert record.started_at == 1700000000.0
        assert record.restart_count == 1
        assert [s.text for s in record.segments] == ["persist me"]

    def test_store_failure_does_not_raise(self, make_engine):
        store = MagicMock()
        store.save.side_effect = OSError("disk full")
        engine = make_engine(store=store)
        engine.start(background=False)

        record = engine.stop()

        assert record is not None
        assert engine.state is SessionState.STOPPED

    def test_state_listener_sequence(self, make_engine):
        changes = []
        engine = make_engine()
        engine.add_state_listener(changes.append)

        engine.start(background=False)
        engine.stop()

        states = []
        for change in changes:
            if not states or states[-1] is not change.session_state:
                states.append(change.session_state)
        assert states == [SessionState.STARTING, SessionState.RUNNING, SessionState.STOPPING, SessionState.STOPPED]
        assert changes[-1].is_terminal

    def test_listener_errors_are_contained(self, make_engine, backend):
        engine = make_engine()
        engine.add_snapshot_listener(MagicMock(side_effect=ValueError("bad UI")))
        seen = []
        engine.add_snapshot_listener(seen.append)
        engine.start(background=False)

        backend.partial("still works")
        engine.run_pending()

        assert seen[-1].display_text == "still works"
        assert engine.state is SessionState.RUNNING

    def test_audit_trail(self, make_engine, backend):
        audit = TranscriptAuditLogger()
        engine = make_engine(audit=audit)
        engine.start(background=False)

        backend.partial("hi")
        backend.final("hi there")
        engine.run_pending()
        engine.stop()

        events = [entry.event for entry in audit.entries]
        assert events.index("session_start") < events.index("partial")
        assert "partial" in events
        assert "final" in events
        assert events[-1] == "session_stop"
        assert all(entry.session_id == "session_test" for entry in audit.entries)

    def test_background_processing(self, make_engine, backend):
        engine = make_engine()
        engine.start()
        try:
            backend.final("from the loop")
        finally:
            record = engine.stop()

        assert record.committed_text == "from the loop"
        assert engine.is_finished
