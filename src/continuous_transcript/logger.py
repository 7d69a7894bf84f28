"""
Audit logging and console display for transcript sessions.

Every accepted update of a session can be recorded as an audit entry so that
hypothesis revisions and dropped text can be traced after the fact. Entries
are kept in a bounded in-memory history and optionally written to JSON lines
and/or CSV files by a background thread.
"""

import csv
import json
import logging
import os
import queue
import threading
import time
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque, Dict, Iterable, List, Optional, TextIO

from .models import Segment, TranscriptSnapshot

logger = logging.getLogger(__name__)

AUDIT_EVENTS = ("session_start", "partial", "final", "error", "state_change", "session_stop")

CSV_HEADER = [
    "Sequence", "Time", "Session", "Event", "TextLength", "TextDelta",
    "IncomingSegments", "StoredSegments", "SegmentDelta", "FirstStart",
    "LastEnd", "ReplacedPriorText", "Truncated", "Note", "Text",
]


class AuditEntry:
    """One recorded update of a transcript session."""

    def __init__(
        self,
        sequence: int,
        timestamp: float,
        session_id: Optional[str],
        event: str,
        text: str,
        text_delta: int,
        incoming_segment_count: int,
        stored_segment_count: int,
        stored_segment_delta: int,
        first_segment_start: Optional[float],
        last_segment_end: Optional[float],
        replaced_prior_text: bool,
        max_text_length: int = 500,
        note: Optional[str] = None,
    ):
        self.sequence = sequence
        self.timestamp = timestamp
        self.session_id = session_id
        self.event = event
        self.text_length = len(text)
        self.text_delta = text_delta
        self.incoming_segment_count = incoming_segment_count
        self.stored_segment_count = stored_segment_count
        self.stored_segment_delta = stored_segment_delta
        self.first_segment_start = first_segment_start
        self.last_segment_end = last_segment_end
        self.replaced_prior_text = replaced_prior_text
        self.was_truncated = len(text) > max_text_length
        self.text = text[:max_text_length]
        self.note = note

    def to_dict(self) -> Dict:
        """Convert to dictionary format."""
        return {
            "sequence": self.sequence,
            "time": datetime.fromtimestamp(self.timestamp).isoformat(timespec="milliseconds"),
            "timestamp": self.timestamp,
            "session_id": self.session_id,
            "event": self.event,
            "text_length": self.text_length,
            "text_delta": self.text_delta,
            "incoming_segment_count": self.incoming_segment_count,
            "stored_segment_count": self.stored_segment_count,
            "stored_segment_delta": self.stored_segment_delta,
            "first_segment_start": self.first_segment_start,
            "last_segment_end": self.last_segment_end,
            "replaced_prior_text": self.replaced_prior_text,
            "was_truncated": self.was_truncated,
            "note": self.note,
            "text": self.text,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_csv_row(self) -> List[str]:
        """Convert to CSV row format."""
        data = self.to_dict()
        return [
            str(self.sequence),
            data["time"],
            self.session_id or "",
            self.event,
            str(self.text_length),
            str(self.text_delta),
            str(self.incoming_segment_count),
            str(self.stored_segment_count),
            str(self.stored_segment_delta),
            "" if self.first_segment_start is None else f"{self.first_segment_start:.3f}",
            "" if self.last_segment_end is None else f"{self.last_segment_end:.3f}",
            str(self.replaced_prior_text),
            str(self.was_truncated),
            self.note or "",
            self.text,
        ]

    def __str__(self) -> str:
        flag = " (revised)" if self.replaced_prior_text else ""
        return (
            f"#{self.sequence:04d} {self.event:13s} {self.text_length:5d}ch "
            f"{self.stored_segment_count:3d}seg{flag}: {self.text[:60]}"
        )


class TranscriptAuditLogger:
    """Records session updates and writes them to disk in the background."""

    def __init__(
        self,
        output_file: Optional[str] = None,
        format_type: str = "json",
        console_output: bool = False,
        max_entries: int = 300,
        max_text_length: int = 500,
        auto_flush: bool = True,
        clock=time.time,
    ):
        """
        Initialize the audit logger.

        Args:
            output_file: Path to output file. If None, entries are only kept in memory.
            format_type: Output format ("json", "csv", or "both").
            console_output: Whether to print entries to the console.
            max_entries: Number of entries kept in memory.
            max_text_length: Text longer than this is truncated in entries.
            auto_flush: Whether to auto-flush after each write.
        """
        if format_type not in ("json", "csv", "both"):
            raise ValueError(f"Unknown audit format: {format_type}")

        self.format_type = format_type
        self.console_output = console_output
        self.max_text_length = max_text_length
        self.auto_flush = auto_flush
        self.clock = clock

        # Session management
        self.session_start = clock()
        self.entry_count = 0
        self.entries: Deque[AuditEntry] = deque(maxlen=max_entries)
        self._last_text = ""
        self._last_segment_count = 0

        # File handles
        self.json_path: Optional[str] = None
        self.csv_path: Optional[str] = None
        self.json_file: Optional[TextIO] = None
        self.csv_file: Optional[TextIO] = None
        self.csv_writer = None

        # Threading
        self.write_queue: "queue.Queue[AuditEntry]" = queue.Queue()
        self.is_running = False
        self.write_thread: Optional[threading.Thread] = None
        self.lock = threading.Lock()

        if output_file is not None:
            self._setup_output_files(output_file)

    def _setup_output_files(self, output_file: str):
        """Setup output files based on format type."""
        path = Path(output_file)
        base = path.with_suffix("") if path.suffix in (".jsonl", ".csv") else path

        if self.format_type in ["json", "both"]:
            self.json_path = f"{base}.jsonl"
            logger.info(f"Audit JSON output: {self.json_path}")

        if self.format_type in ["csv", "both"]:
            self.csv_path = f"{base}.csv"
            logger.info(f"Audit CSV output: {self.csv_path}")

    def _open_files(self):
        """Open output files for writing."""
        try:
            if self.json_path:
                self.json_file = open(self.json_path, 'w', encoding='utf-8')

            if self.csv_path:
                self.csv_file = open(self.csv_path, 'w', newline='', encoding='utf-8')
                self.csv_writer = csv.writer(self.csv_file)
                self.csv_writer.writerow(CSV_HEADER)
                if self.auto_flush:
                    self.csv_file.flush()

        except Exception as e:
            logger.error(f"Failed to open audit files: {e}")
            self._close_files()
            raise

    def _close_files(self):
        if self.json_file:
            self.json_file.close()
            self.json_file = None

        if self.csv_file:
            self.csv_file.close()
            self.csv_file = None
            self.csv_writer = None

    def _write_worker(self):
        """Background thread for writing entries to files."""
        while self.is_running or not self.write_queue.empty():
            try:
                entry = self.write_queue.get(timeout=0.5)
            except queue.Empty:
                continue
            self._write_entry_to_files(entry)

    def _write_entry_to_files(self, entry: AuditEntry):
        try:
            if self.json_file:
                self.json_file.write(entry.to_json() + '\n')
                if self.auto_flush:
                    self.json_file.flush()

            if self.csv_writer:
                self.csv_writer.writerow(entry.to_csv_row())
                if self.auto_flush:
                    self.csv_file.flush()

        except Exception as e:
            logger.error(f"Failed to write audit entry {entry.sequence}: {e}")

    def start(self):
        """Open output files and start the writer thread."""
        if self.is_running:
            return

        self._open_files()
        self.is_running = True
        self.write_thread = threading.Thread(target=self._write_worker, name="audit-writer", daemon=True)
        self.write_thread.start()
        logger.info("Audit logger started")

    def stop(self):
        """Stop the logger and ensure all entries are written."""
        if not self.is_running:
            return

        self.is_running = False
        if self.write_thread:
            self.write_thread.join(timeout=5.0)
            self.write_thread = None

        self._close_files()
        logger.info("Audit logger stopped")

    def record(
        self,
        event: str,
        session_id: Optional[str] = None,
        text: Optional[str] = None,
        incoming_segment_count: int = 0,
        segments: Iterable[Segment] = (),
        note: Optional[str] = None,
    ) -> AuditEntry:
        """Record one session update.

        ``text`` is the transcript as displayed after the update; when it is
        None the previously recorded text is carried over.
        """
        if event not in AUDIT_EVENTS:
            raise ValueError(f"Unknown audit event: {event}")

        segments = tuple(segments)
        with self.lock:
            current = self._last_text if text is None else text
            replaced = bool(self._last_text) and not current.startswith(self._last_text)
            self.entry_count += 1
            entry = AuditEntry(
                sequence=self.entry_count,
                timestamp=self.clock(),
                session_id=session_id,
                event=event,
                text=current,
                text_delta=len(current) - len(self._last_text),
                incoming_segment_count=incoming_segment_count,
                stored_segment_count=len(segments),
                stored_segment_delta=len(segments) - self._last_segment_count,
                first_segment_start=segments[0].start_time if segments else None,
                last_segment_end=segments[-1].end_time if segments else None,
                replaced_prior_text=replaced,
                max_text_length=self.max_text_length,
                note=note,
            )
            self.entries.append(entry)
            self._last_text = current
            self._last_segment_count = len(segments)

        if replaced:
            logger.debug(f"Audit #{entry.sequence}: {event} revised earlier text")

        if self.console_output:
            print(str(entry))

        if self.is_running:
            self.write_queue.put(entry)
        return entry

    def get_statistics(self) -> Dict:
        """Get logging statistics."""
        with self.lock:
            events: Dict[str, int] = {}
            for entry in self.entries:
                events[entry.event] = events.get(entry.event, 0) + 1
            return {
                "session_start": self.session_start,
                "session_duration": self.clock() - self.session_start,
                "total_entries": self.entry_count,
                "retained_entries": len(self.entries),
                "revisions": sum(1 for entry in self.entries if entry.replaced_prior_text),
                "events": events,
                "queue_size": self.write_queue.qsize(),
            }

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()


class RealTimeDisplay:
    """Real-time console display of the session transcript."""

    def __init__(self, max_lines: int = 20, width: int = 80, clear_screen: bool = True):
        self.max_lines = max_lines
        self.width = width
        self.clear_screen = clear_screen
        self.lock = threading.Lock()
        self._last_render: Optional[str] = None

    def render(self, snapshot: TranscriptSnapshot) -> List[str]:
        """Lay out the snapshot as console lines."""
        meter = "#" * int(round(snapshot.level * 20))
        task = snapshot.task_state.value if snapshot.task_state else "-"
        lines = [
            "=" * self.width,
            "CONTINUOUS TRANSCRIPT",
            "=" * self.width,
            f"State: {snapshot.state.value}  Task: {task} (#{snapshot.generation}, "
            f"{snapshot.restart_count} restarts)  Level: [{meter:<20s}]",
            "",
        ]

        body = []
        for segment in snapshot.segments[-self.max_lines:]:
            body.append(str(segment))
        if snapshot.partial_text:
            body.append(f"... {snapshot.partial_text}")
        if not body and snapshot.display_text:
            body.append(snapshot.display_text)
        lines.extend(body[-self.max_lines:])

        lines.extend(["", "Press Ctrl+C to stop..."])
        return lines

    def update(self, snapshot: TranscriptSnapshot):
        """Redraw if anything visible changed."""
        with self.lock:
            output = "\n".join(self.render(snapshot))
            if output == self._last_render:
                return
            self._last_render = output
            self._redraw(output)

    def _redraw(self, output: str):
        if self.clear_screen:
            os.system('cls' if os.name == 'nt' else 'clear')
        print(output)

    def clear(self):
        with self.lock:
            self._last_render = None
