"""
Recognition backends.

A backend turns a stream of audio buffers for one task into result events.
Each event carries the backend's full hypothesis for the task so far; the
engine never expects incremental deltas.
"""

import itertools
import logging
import math
import threading
from typing import Any, Callable, Dict, List, Optional, Union

import numpy as np

from .errors import BackendError
from .models import AudioBuffer, AudioFormat, RawSegment, ResultEvent

logger = logging.getLogger(__name__)

BackendMessage = Union[ResultEvent, BackendError]
Emit = Callable[[BackendMessage], None]


class RecognitionBackend:
    """Interface every recognition backend implements."""

    def open_session(self, audio_format: AudioFormat, emit: Emit) -> Any:
        """Start a recognition task and return its token."""
        raise NotImplementedError

    def push(self, buffer: AudioBuffer, token: Any):
        raise NotImplementedError

    def close(self, token: Any):
        """Cancel the task. Pending work reports a cancelled error."""
        raise NotImplementedError


class _WhisperTask:
    """Audio and decoding state for one faster-whisper task."""

    def __init__(self, token: int, audio_format: AudioFormat, emit: Emit):
        self.token = token
        self.audio_format = audio_format
        self.emit = emit
        self.chunks: List[np.ndarray] = []
        self.samples = 0
        self.decoded_samples = 0
        self.lock = threading.Lock()
        self.stop_event = threading.Event()
        self.finished = False
        self.thread: Optional[threading.Thread] = None

    def append(self, samples: np.ndarray):
        with self.lock:
            self.chunks.append(samples)
            self.samples += len(samples)

    def audio(self) -> np.ndarray:
        with self.lock:
            if not self.chunks:
                return np.zeros(0, dtype=np.float32)
            audio = np.concatenate(self.chunks)
            self.chunks = [audio]
            return audio

    @property
    def duration(self) -> float:
        return self.samples / self.audio_format.sample_rate


class WhisperBackend(RecognitionBackend):
    """Pseudo-streaming recognition on top of faster-whisper.

    Every ``decode_interval`` seconds the task's whole audio is transcribed
    again and reported as a partial result. When the audio after the last
    recognized word exceeds ``endpoint_silence``, the hypothesis is reported
    as final and the task stops decoding.
    """

    def __init__(
        self,
        model_name: str = "small",
        language: Optional[str] = "en",
        device: str = "auto",
        compute_type: str = "default",
        decode_interval: float = 1.0,
        min_audio: float = 1.0,
        endpoint_silence: float = 1.2,
        model=None,
    ):
        self.model_name = model_name
        self.language = language
        self.device = device
        self.compute_type = compute_type
        self.decode_interval = decode_interval
        self.min_audio = min_audio
        self.endpoint_silence = endpoint_silence

        self.model = model
        self._model_lock = threading.Lock()
        self._tasks: Dict[int, _WhisperTask] = {}
        self._tokens = itertools.count(1)

    def _initialize_model(self):
        """Load the faster-whisper model once."""
        with self._model_lock:
            if self.model is not None:
                return
            from faster_whisper import WhisperModel

            logger.info(f"Loading faster-whisper model: {self.model_name}")
            self.model = WhisperModel(
                self.model_name,
                device=self.device,
                compute_type=self.compute_type
            )
            logger.info("Model loaded successfully")

    def open_session(self, audio_format: AudioFormat, emit: Emit) -> int:
        try:
            self._initialize_model()
        except Exception as e:
            raise BackendError.recoverable(f"Whisper model unavailable: {e}") from e

        token = next(self._tokens)
        task = _WhisperTask(token, audio_format, emit)
        task.thread = threading.Thread(target=self._decode_loop, args=(task,), name=f"whisper-task-{token}", daemon=True)
        self._tasks[token] = task
        task.thread.start()
        logger.debug(f"Opened whisper task {token}")
        return token

    def push(self, buffer: AudioBuffer, token: int):
        task = self._tasks.get(token)
        if task is None or task.finished:
            return
        task.append(buffer.samples)

    def close(self, token: int):
        """Signal the task to stop without waiting for an in-flight decode."""
        task = self._tasks.pop(token, None)
        if task is None:
            return
        task.stop_event.set()
        logger.debug(f"Closed whisper task {token}")

    def _decode_loop(self, task: _WhisperTask):
        while not task.stop_event.wait(self.decode_interval):
            if task.finished:
                continue
            if task.duration < self.min_audio or task.samples == task.decoded_samples:
                continue
            try:
                audio = task.audio()
                task.decoded_samples = len(audio)
                result = self._transcribe(audio, task.audio_format.sample_rate)
            except Exception as e:
                logger.error(f"Transcription failed for task {task.token}: {e}")
                if not task.stop_event.is_set():
                    task.emit(BackendError.recoverable(str(e)))
                    task.finished = True
                continue

            if task.stop_event.is_set():
                break
            if result is None:
                continue
            if result.is_final:
                task.finished = True
            task.emit(result)

        if not task.finished:
            task.emit(BackendError.cancelled())

    def _transcribe(self, audio: np.ndarray, sample_rate: int) -> Optional[ResultEvent]:
        """Decode the task audio and decide whether the utterance has ended."""
        segments, info = self.model.transcribe(
            audio.astype(np.float32),
            language=self.language,
            beam_size=1,  # Faster inference
            best_of=1,    # Faster inference
            vad_filter=True,  # Filter out non-speech
            vad_parameters=dict(
                min_silence_duration_ms=500,
                speech_pad_ms=200
            )
        )

        raw_segments = []
        for segment in segments:
            text = segment.text.strip()
            if not text:
                continue
            raw_segments.append(RawSegment(
                text=text,
                start=float(segment.start),
                duration=max(0.0, float(segment.end) - float(segment.start)),
                confidence=float(math.exp(getattr(segment, 'avg_logprob', 0.0))),
            ))

        if not raw_segments:
            return None

        text = " ".join(segment.text for segment in raw_segments)
        last_end = raw_segments[-1].start + raw_segments[-1].duration
        trailing_silence = len(audio) / sample_rate - last_end
        return ResultEvent(
            is_final=trailing_silence >= self.endpoint_silence,
            text=text,
            segments=tuple(raw_segments),
        )
