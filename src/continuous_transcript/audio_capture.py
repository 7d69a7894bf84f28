"""
Continuous audio capture with fan-out to independent subscribers.

The capture controller is the only owner of the input stream. Subscribers get
buffers through their own bounded queue and delivery thread, so subscribing,
unsubscribing or a slow consumer never touches the stream itself.
"""

import itertools
import logging
import queue
import threading
import time
from typing import Callable, Dict, List, Optional

import numpy as np
import sounddevice as sd

from .errors import CaptureError
from .models import AudioBuffer, AudioFormat

logger = logging.getLogger(__name__)

BufferHandler = Callable[[AudioBuffer], None]


class Subscription:
    """Bounded hand-off from the capture callback to one consumer."""

    def __init__(self, handler: BufferHandler, name: str, maxsize: int = 64):
        self.handler = handler
        self.name = name
        self.queue: "queue.Queue[AudioBuffer]" = queue.Queue(maxsize=maxsize)
        self.dropped = 0
        self.delivered = 0
        self.errors = 0
        self.active = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self.active = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._deliver, name=f"subscription-{self.name}", daemon=True)
        self._thread.start()

    def offer(self, buffer: AudioBuffer) -> bool:
        """Queue a buffer without blocking; a full queue drops it."""
        if not self.active:
            return False
        try:
            self.queue.put_nowait(buffer)
            return True
        except queue.Full:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 50 == 0:
                logger.warning(f"Subscriber {self.name} is falling behind, dropped {self.dropped} buffers")
            return False

    def _deliver(self):
        while not self._stop_event.is_set():
            try:
                buffer = self.queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if self._stop_event.is_set():
                break
            try:
                self.handler(buffer)
                self.delivered += 1
            except Exception as e:
                self.errors += 1
                logger.error(f"Subscriber {self.name} failed on buffer {buffer.sequence}: {e}")

    def close(self, timeout: float = 1.0):
        self.active = False
        self._stop_event.set()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
        self._thread = None


class AudioCapture:
    """Single input stream for a whole session, shared by all subscribers."""

    def __init__(
        self,
        device: Optional[int] = None,
        queue_size: int = 64,
        stream_factory: Optional[Callable] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.device = device
        self.queue_size = queue_size
        self.stream_factory = stream_factory or sd.InputStream
        self.clock = clock

        self.audio_format: Optional[AudioFormat] = None
        self.stream = None
        self.is_running = False

        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._sequence = itertools.count()
        self._names = itertools.count(1)

        # Lifecycle counters
        self.start_count = 0
        self.stop_count = 0

        # Error tracking
        self.errors = 0
        self.max_errors = 5

    @staticmethod
    def list_audio_devices() -> Dict[str, List[Dict]]:
        """List available audio devices."""
        try:
            devices = sd.query_devices()
            input_devices = []
            output_devices = []

            for i, device in enumerate(devices):
                device_info = {
                    'id': i,
                    'name': device['name'],
                    'channels': device['max_input_channels'] if device['max_input_channels'] > 0 else device['max_output_channels'],
                    'sample_rate': device['default_samplerate']
                }

                if device['max_input_channels'] > 0:
                    input_devices.append(device_info)
                if device['max_output_channels'] > 0:
                    output_devices.append(device_info)

            return {'input': input_devices, 'output': output_devices}
        except Exception as e:
            logger.error(f"Failed to list audio devices: {e}")
            return {'input': [], 'output': []}

    def _create_stream(self, audio_format: AudioFormat):
        """Create the input stream, mapping driver errors to CaptureError."""
        try:
            stream = self.stream_factory(
                device=self.device,
                channels=audio_format.channels,
                samplerate=audio_format.sample_rate,
                blocksize=audio_format.blocksize,
                callback=self._callback,
                dtype=audio_format.dtype,
            )
            logger.info(f"Created input stream (device: {self.device}, {audio_format.sample_rate} Hz)")
            return stream
        except Exception as e:
            logger.error(f"Failed to create input stream: {e}")
            raise CaptureError(f"Cannot open input device {self.device}: {e}") from e

    def _callback(self, indata, frames, time_info, status):
        """Stream callback: wrap the block once and fan it out."""
        try:
            if status:
                logger.warning(f"Audio status: {status}")

            if len(indata.shape) > 1:
                samples = np.mean(indata, axis=1)
            else:
                samples = indata.flatten()
            samples = np.array(samples, dtype=np.float32)
            samples.flags.writeable = False

            buffer = AudioBuffer(
                sequence=next(self._sequence),
                samples=samples,
                sample_rate=self.audio_format.sample_rate,
                captured_at=self.clock(),
            )

            if self.is_running:
                with self._lock:
                    subscribers = list(self._subscriptions)
                for subscription in subscribers:
                    subscription.offer(buffer)

        except Exception as e:
            self.errors += 1
            logger.error(f"Capture callback error ({self.errors}/{self.max_errors}): {e}")
            if self.errors >= self.max_errors:
                logger.error("Too many capture errors, pausing input stream")
                if self.stream:
                    self.stream.stop()

    def subscribe(self, handler: BufferHandler, name: Optional[str] = None) -> Subscription:
        """Register a consumer. Never starts or stops the stream."""
        subscription = Subscription(handler, name or f"subscriber-{next(self._names)}", self.queue_size)
        subscription.start()
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug(f"Subscribed {subscription.name}")
        return subscription

    def unsubscribe(self, subscription: Subscription):
        """Remove a consumer. Never starts or stops the stream."""
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription.close()
        logger.debug(f"Unsubscribed {subscription.name} (delivered {subscription.delivered}, dropped {subscription.dropped})")

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def start(self, audio_format: Optional[AudioFormat] = None):
        """Open the input stream. A controller is started at most once."""
        if self.is_running:
            logger.warning("Audio capture already running")
            return
        if self.start_count:
            raise CaptureError("Audio capture was already used for a session; create a new controller")

        self.audio_format = audio_format or AudioFormat()
        logger.info("Starting audio capture...")

        self.start_count += 1
        self.errors = 0
        self.stream = self._create_stream(self.audio_format)

        try:
            self.is_running = True
            self.stream.start()
            logger.info("Audio capture started successfully")
        except Exception as e:
            logger.error(f"Failed to start audio capture: {e}")
            self.is_running = False
            self._close_stream()
            raise CaptureError(f"Input stream failed to start: {e}") from e

    def stop(self):
        """Close the input stream and every remaining subscription."""
        with self._state_lock:
            if not self.is_running:
                return
            self.is_running = False
            self.stop_count += 1

        logger.info("Stopping audio capture...")
        self._close_stream()

        with self._lock:
            remaining = list(self._subscriptions)
            self._subscriptions.clear()
        for subscription in remaining:
            subscription.close()

        logger.info("Audio capture stopped")

    def _close_stream(self):
        if self.stream:
            try:
                self.stream.stop()
                self.stream.close()
            except Exception as e:
                logger.error(f"Error stopping input stream: {e}")
            finally:
                self.stream = None

    def is_healthy(self) -> Dict[str, bool]:
        """Check if the input stream is healthy."""
        return {
            'stream': self.stream is not None and self.errors < self.max_errors,
            'running': self.is_running,
        }

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
