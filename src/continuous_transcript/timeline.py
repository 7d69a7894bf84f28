"""
Placing task-relative timestamps on the session timeline.

Every recognition task's clock restarts at zero. Adding the task's offset from
the session start keeps timestamps from consecutive tasks from colliding.
"""

from typing import Iterable, List

from .models import RawSegment, Segment


def task_offset(session_start: float, task_start: float) -> float:
    """Seconds between the session start and a task start."""
    offset = task_start - session_start
    if offset < 0:
        raise ValueError(f"Task started {-offset:.3f}s before its session")
    return offset


def adjust_segment(raw: RawSegment, offset: float) -> Segment:
    start_time = offset + raw.start
    return Segment(
        text=raw.text,
        start_time=start_time,
        end_time=start_time + max(0.0, raw.duration),
        confidence=raw.confidence,
    )


def adjust_segments(raw_segments: Iterable[RawSegment], offset: float) -> List[Segment]:
    return [adjust_segment(raw, offset) for raw in raw_segments]
