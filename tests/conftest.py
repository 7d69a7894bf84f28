"""
Pytest configuration and fixtures for Continuous Transcript tests.
"""

import pytest
import tempfile
import os
import sys
import numpy as np

# Add src to Python path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from continuous_transcript.audio_capture import AudioCapture
from continuous_transcript.backends import RecognitionBackend
from continuous_transcript.config import EngineConfig, RestartPolicy
from continuous_transcript.engine import TranscriptionEngine
from continuous_transcript.errors import BackendError
from continuous_transcript.models import RawSegment, ResultEvent


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class FakeStream:
    """Stands in for sounddevice.InputStream."""

    def __init__(self, callback, fail_start=False, **kwargs):
        self.callback = callback
        self.kwargs = kwargs
        self.fail_start = fail_start
        self.started = False
        self.stopped = False
        self.closed = False

    def start(self):
        if self.fail_start:
            raise RuntimeError("device busy")
        self.started = True

    def stop(self):
        self.stopped = True

    def close(self):
        self.closed = True

    def feed(self, samples):
        """Deliver one block as the audio driver would."""
        data = np.asarray(samples, dtype=np.float32).reshape(-1, 1)
        self.callback(data, len(data), None, None)


class StreamFactory:
    """Records every stream the capture controller creates."""

    def __init__(self, fail_create=False, fail_start=False):
        self.fail_create = fail_create
        self.fail_start = fail_start
        self.streams = []

    def __call__(self, **kwargs):
        if self.fail_create:
            raise RuntimeError("no such device")
        callback = kwargs.pop('callback')
        stream = FakeStream(callback, fail_start=self.fail_start, **kwargs)
        self.streams.append(stream)
        return stream

    @property
    def stream(self):
        return self.streams[-1] if self.streams else None


class ScriptedBackend(RecognitionBackend):
    """Backend driven by the test: results are emitted on demand."""

    def __init__(self):
        self.opened = []
        self.closed = []
        self.pushed = []
        self.emitters = {}
        self.open_failures = 0
        self._next_token = 0

    def open_session(self, audio_format, emit):
        if self.open_failures:
            self.open_failures -= 1
            raise BackendError.recoverable("backend unavailable")
        self._next_token += 1
        token = self._next_token
        self.emitters[token] = emit
        self.opened.append(token)
        return token

    def push(self, buffer, token):
        self.pushed.append((token, buffer))

    def close(self, token):
        self.closed.append(token)

    @property
    def current(self):
        return self.opened[-1]

    def emit(self, message, token=None):
        self.emitters[token or self.current](message)

    def partial(self, text, segments=(), token=None):
        self.emit(ResultEvent(False, text, tuple(RawSegment(*s) for s in segments)), token)

    def final(self, text, segments=(), token=None):
        self.emit(ResultEvent(True, text, tuple(RawSegment(*s) for s in segments)), token)

    def fail(self, message="network lost", token=None):
        self.emit(BackendError.recoverable(message), token)


@pytest.fixture
def temp_dir():
    """Provide a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def stream_factory():
    return StreamFactory()


@pytest.fixture
def capture(stream_factory, clock):
    capture = AudioCapture(stream_factory=stream_factory, clock=clock)
    yield capture
    capture.stop()


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def policy():
    return RestartPolicy(
        silence_threshold=0.15,
        silence_duration=1.5,
        max_task_duration=55.0,
        error_backoff=0.35,
        finalize_timeout=2.0,
        max_consecutive_errors=3,
    )


@pytest.fixture
def make_engine(capture, backend, clock, policy):
    """Build an engine wired to the fake capture, backend and clock."""
    def _make(**kwargs):
        kwargs.setdefault('config', EngineConfig(policy=policy))
        kwargs.setdefault('wall_clock', ManualClock(1700000000.0))
        return TranscriptionEngine(capture, backend, clock=clock, session_id="session_test", **kwargs)
    return _make


@pytest.fixture
def sample_audio_data():
    """Generate sample audio data for testing."""
    sample_rate = 16000
    duration = 0.1
    frequency = 440  # A4 note

    t = np.linspace(0, duration, int(sample_rate * duration), False)
    audio_data = (0.5 * np.sin(2 * np.pi * frequency * t)).astype(np.float32)

    return audio_data, sample_rate
