"""
Continuous Transcript command line application.
Captures one input device for a whole session and prints the accumulated
transcript while the recognition backend is restarted underneath it.
"""

import argparse
import logging
import signal
import sys
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Optional

from .audio_capture import AudioCapture
from .backends import RecognitionBackend, WhisperBackend
from .config import EngineConfig, RestartPolicy
from .engine import TranscriptionEngine
from .errors import CaptureError
from .logger import RealTimeDisplay, TranscriptAuditLogger
from .models import AudioFormat, SessionRecord, TerminalReason, TranscriptSnapshot
from .recorder import SessionRecorder
from .storage import SessionStore

logger = logging.getLogger(__name__)


class LiveTranscriber:
    """Runs one transcription session from the command line."""

    def __init__(
        self,
        device: Optional[int] = None,
        sample_rate: int = 16000,
        model_name: str = "small",
        language: str = "en",
        policy: Optional[RestartPolicy] = None,
        sessions_dir: str = "sessions",
        recordings_dir: Optional[str] = "recordings",
        audit_file: Optional[str] = None,
        audit_format: str = "json",
        real_time_display: bool = False,
        backend: Optional[RecognitionBackend] = None,
        capture: Optional[AudioCapture] = None,
    ):
        self.device = device
        self.sample_rate = sample_rate
        self.model_name = model_name
        self.language = language
        self.policy = policy or RestartPolicy()
        self.sessions_dir = sessions_dir
        self.recordings_dir = recordings_dir
        self.audit_file = audit_file
        self.audit_format = audit_format
        self.real_time_display = real_time_display

        # Components
        self.backend = backend
        self.capture = capture
        self.engine: Optional[TranscriptionEngine] = None
        self.store: Optional[SessionStore] = None
        self.audit: Optional[TranscriptAuditLogger] = None
        self.recorder: Optional[SessionRecorder] = None
        self.display = RealTimeDisplay() if real_time_display else None

        # Control
        self.is_running = False
        self.shutdown_event = threading.Event()
        self.record: Optional[SessionRecord] = None
        self._printed_length = 0

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.shutdown_event.set()

    def _on_snapshot(self, snapshot: TranscriptSnapshot):
        """Print newly committed text, or redraw the live display."""
        if self.display:
            self.display.update(snapshot)
            return

        committed = snapshot.committed_text
        if len(committed) > self._printed_length:
            new_text = committed[self._printed_length:].strip()
            self._printed_length = len(committed)
            if new_text:
                time_str = datetime.now().strftime("%H:%M:%S")
                print(f"[{time_str}] {new_text}")

    def start(self):
        """Start the transcription session."""
        if self.is_running:
            logger.warning("Session already running")
            return

        logger.info("Starting continuous transcription...")
        config = EngineConfig(audio_format=AudioFormat(sample_rate=self.sample_rate), policy=self.policy)
        config.validate()

        self.store = SessionStore(self.sessions_dir)
        if self.audit_file:
            self.audit = TranscriptAuditLogger(output_file=self.audit_file, format_type=self.audit_format)
            self.audit.start()

        if self.capture is None:
            self.capture = AudioCapture(device=self.device, queue_size=config.queue_size)
        if self.backend is None:
            self.backend = WhisperBackend(model_name=self.model_name, language=self.language)
        if self.recordings_dir:
            self.recorder = SessionRecorder(self.recordings_dir)

        self.engine = TranscriptionEngine(
            self.capture,
            self.backend,
            config=config,
            store=self.store,
            audit=self.audit,
            recorder=self.recorder,
        )
        self.engine.add_snapshot_listener(self._on_snapshot)

        try:
            self.engine.start()
        except CaptureError:
            self._close_audit()
            raise

        self.is_running = True

        print("\n" + "=" * 60)
        print("CONTINUOUS TRANSCRIPTION ACTIVE")
        print("=" * 60)
        print(f"Session: {self.engine.session_id}")
        print(f"Model: {self.model_name} ({self.language})")
        print(f"Input device: {self.device if self.device is not None else 'default'}")
        print(f"Sessions directory: {self.store.directory}")
        if self.engine.audio_reference:
            print(f"Recording: {self.engine.audio_reference}")
        if self.audit:
            print(f"Audit log: {', '.join(p for p in (self.audit.json_path, self.audit.csv_path) if p)}")
        print("Press Ctrl+C to stop transcription")
        print("=" * 60)

    def run(self, stats_interval: float = 30.0):
        """Wait for a signal or for the session to end on its own."""
        if not self.is_running:
            logger.error("Session not started")
            return

        last_stats = time.monotonic()
        try:
            while not self.shutdown_event.is_set():
                if self.engine.wait(0.5):
                    logger.info(f"Session ended ({self.engine.terminal_reason.value})")
                    break

                if time.monotonic() - last_stats >= stats_interval:
                    last_stats = time.monotonic()
                    snapshot = self.engine.snapshot()
                    logger.info(
                        f"Stats: {len(snapshot.committed_text.split())} words, "
                        f"{len(snapshot.segments)} segments, {snapshot.restart_count} restarts"
                    )
        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")
        finally:
            self.shutdown()

    def shutdown(self) -> Optional[SessionRecord]:
        """Finalize the session, release capture and close the audit log."""
        if not self.is_running:
            return self.record

        logger.info("Shutting down transcription session...")
        self.is_running = False
        self.shutdown_event.set()

        self.record = self.engine.stop(TerminalReason.STOP)
        # Timeout and error endings leave the input stream to its owner.
        if self.capture:
            self.capture.stop()
        self._close_audit()

        if self.record:
            path = self.store.path_for(self.record.session_id)
            logger.info(
                f"Session completed: {self.record.word_count} words in {self.record.duration:.1f}s, "
                f"{self.record.restart_count} restarts"
            )
            print(f"\nSaved session: {path}")
        return self.record

    def _close_audit(self):
        if self.audit:
            logger.info(f"Audit statistics: {self.audit.get_statistics()}")
            self.audit.stop()

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


def list_audio_devices():
    """List available audio input devices."""
    print("Scanning audio devices...")
    devices = AudioCapture.list_audio_devices()

    print("\n=== AUDIO INPUT DEVICES ===")
    if not devices['input']:
        print("  No input devices found")
    for device in devices['input']:
        print(f"  [{device['id']:2d}] {device['name']}")
        print(f"       {device['channels']} channels, {device['sample_rate']:.0f} Hz")


def list_sessions(sessions_dir: str):
    """Print stored sessions, newest first."""
    records = SessionStore(sessions_dir).list_sessions()
    if not records:
        print(f"No sessions stored in {Path(sessions_dir).resolve()}")
        return
    for record in records:
        started = datetime.fromtimestamp(record.started_at).strftime("%Y-%m-%d %H:%M:%S")
        print(f"{record.session_id}  {started}  {record.duration:7.1f}s  "
              f"{record.word_count:5d} words  ({record.terminal_reason})")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Continuous live transcription with seamless recognizer restarts",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List available audio devices
  continuous-transcript --list-devices

  # Transcribe the default microphone
  continuous-transcript

  # Use a specific device, language and model
  continuous-transcript --device 2 --lang es --model medium

  # Keep an audit trail of every transcript update
  continuous-transcript --audit-log audit/today --audit-format both
        """
    )

    # Device selection
    parser.add_argument('--list-devices', '-l', action='store_true',
                        help='List available audio devices and exit')
    parser.add_argument('--list-sessions', action='store_true',
                        help='List stored sessions and exit')
    parser.add_argument('--device', '-d', type=int,
                        help='Input device ID (use --list-devices to see options)')

    # Audio settings
    parser.add_argument('--sample-rate', '-r', type=int, default=16000,
                        help='Audio sample rate in Hz (default: 16000)')

    # Transcription settings
    parser.add_argument('--lang', type=str, default='en',
                        help='Language code for transcription (default: en)')
    parser.add_argument('--model', type=str, default='small',
                        choices=['tiny', 'base', 'small', 'medium', 'large', 'large-v2', 'large-v3'],
                        help='Whisper model to use (default: small)')

    # Restart policy
    defaults = RestartPolicy()
    parser.add_argument('--silence-threshold', type=float, default=defaults.silence_threshold,
                        help=f'Normalized level below which audio counts as silence (default: {defaults.silence_threshold})')
    parser.add_argument('--silence-duration', type=float, default=defaults.silence_duration,
                        help=f'Seconds of silence before a task restart (default: {defaults.silence_duration})')
    parser.add_argument('--max-task-duration', type=float, default=defaults.max_task_duration,
                        help=f'Maximum seconds per recognition task (default: {defaults.max_task_duration})')
    parser.add_argument('--error-backoff', type=float, default=defaults.error_backoff,
                        help=f'Seconds to wait before restarting after an error (default: {defaults.error_backoff})')
    parser.add_argument('--finalize-timeout', type=float, default=defaults.finalize_timeout,
                        help=f'Seconds to wait for a final result after silence (default: {defaults.finalize_timeout})')
    parser.add_argument('--max-errors', type=int, default=defaults.max_consecutive_errors,
                        help=f'Consecutive recognition errors before giving up (default: {defaults.max_consecutive_errors})')

    # Output options
    parser.add_argument('--sessions-dir', type=str, default='sessions',
                        help='Directory for finalized session records (default: sessions)')
    parser.add_argument('--recordings-dir', type=str, default='recordings',
                        help='Directory for session audio recordings (default: recordings)')
    parser.add_argument('--no-record', action='store_true',
                        help='Do not keep a WAV recording of the session')
    parser.add_argument('--audit-log', type=str,
                        help='Base path of the audit log (disabled if not specified)')
    parser.add_argument('--audit-format', type=str, default='json',
                        choices=['json', 'csv', 'both'],
                        help='Audit log format: json, csv, or both (default: json)')
    parser.add_argument('--display', action='store_true',
                        help='Show a full-screen live transcript')

    # Debug options
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if args.list_devices:
        list_audio_devices()
        return 0
    if args.list_sessions:
        list_sessions(args.sessions_dir)
        return 0

    policy = RestartPolicy(
        silence_threshold=args.silence_threshold,
        silence_duration=args.silence_duration,
        max_task_duration=args.max_task_duration,
        error_backoff=args.error_backoff,
        finalize_timeout=args.finalize_timeout,
        max_consecutive_errors=args.max_errors,
    )

    try:
        policy.validate()
        transcriber = LiveTranscriber(
            device=args.device,
            sample_rate=args.sample_rate,
            model_name=args.model,
            language=args.lang,
            policy=policy,
            sessions_dir=args.sessions_dir,
            recordings_dir=None if args.no_record else args.recordings_dir,
            audit_file=args.audit_log,
            audit_format=args.audit_format,
            real_time_display=args.display,
        )
        transcriber.install_signal_handlers()
        with transcriber:
            transcriber.run()
        return 0

    except CaptureError as e:
        logger.error(f"Audio capture unavailable: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        return 2
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Application failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
