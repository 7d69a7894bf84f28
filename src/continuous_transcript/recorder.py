"""
Session audio recording.
Writes every captured buffer of a session into one 16-bit PCM WAV file.
"""

import logging
import threading
import wave
from pathlib import Path
from typing import Optional, Union

import numpy as np

from .audio_capture import AudioCapture, Subscription
from .models import AudioBuffer, AudioFormat

logger = logging.getLogger(__name__)


class SessionRecorder:
    """Capture subscriber that keeps the session audio next to its transcript."""

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.path: Optional[Path] = None
        self.frames_written = 0

        self._wave = None
        self._capture: Optional[AudioCapture] = None
        self._subscription: Optional[Subscription] = None
        self._lock = threading.Lock()

    @property
    def is_recording(self) -> bool:
        return self._wave is not None

    def start(self, capture: AudioCapture, session_id: str, audio_format: AudioFormat) -> Path:
        """Open ``<directory>/<session_id>.wav`` and subscribe to capture."""
        if self.is_recording:
            raise RuntimeError(f"Already recording to {self.path}")

        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{session_id}.wav"
        if path.exists():
            raise FileExistsError(f"Recording {path} already exists")

        wav = wave.open(str(path), "wb")
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(audio_format.sample_rate)

        with self._lock:
            self._wave = wav
            self.path = path
            self.frames_written = 0
        self._capture = capture
        self._subscription = capture.subscribe(self._write, name="recorder")
        logger.info(f"Recording session audio to {path}")
        return path

    def _write(self, buffer: AudioBuffer):
        pcm = (np.clip(buffer.samples, -1.0, 1.0) * 32767).astype(np.int16)
        with self._lock:
            if self._wave is None:
                return
            self._wave.writeframes(pcm.tobytes())
            self.frames_written += len(pcm)

    def stop(self) -> Optional[Path]:
        """Unsubscribe and close the file. The capture stream is left alone."""
        if self._subscription is not None:
            self._capture.unsubscribe(self._subscription)
            self._subscription = None
            self._capture = None

        with self._lock:
            if self._wave is None:
                return self.path
            self._wave.close()
            self._wave = None

        logger.info(f"Recorded {self.frames_written} frames to {self.path}")
        return self.path
