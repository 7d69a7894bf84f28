"""
Merging per-task segment lists into one session-wide segment store.

A backend re-sends the complete segment list of its task with every result,
so the store replaces everything a generation contributed earlier instead of
appending. Segments from older generations are never modified.
"""

import logging
import math
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .models import RawSegment, Segment
from .timeline import adjust_segments

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StoredSegment:
    generation: int
    segment: Segment


@dataclass(frozen=True)
class MergeConflict:
    """Two segments of one generation landed on the same start time."""

    generation: int
    start_time: float
    kept: Segment
    dropped: Segment


def _key(start_time: float) -> int:
    return int(round(start_time * 1000))


def _is_valid(segment: Segment) -> bool:
    if math.isnan(segment.start_time) or math.isnan(segment.end_time):
        return False
    if segment.start_time < 0 or segment.end_time < 0:
        return False
    return bool(segment.text.strip())


class SegmentMerger:
    """Ordered, deduplicated segment store keyed by adjusted start time."""

    def __init__(self):
        self._store: List[StoredSegment] = []
        self._sealed: Set[int] = set()
        self.conflicts: List[MergeConflict] = []

    @property
    def segments(self) -> Tuple[Segment, ...]:
        return tuple(item.segment for item in self._store)

    def __len__(self) -> int:
        return len(self._store)

    def is_sealed(self, generation: int) -> bool:
        return generation in self._sealed

    def seal(self, generation: int):
        """Accept no further segments for ``generation``."""
        self._sealed.add(generation)

    def segments_for(self, generation: int) -> Tuple[Segment, ...]:
        return tuple(item.segment for item in self._store if item.generation == generation)

    def merge(
        self,
        generation: int,
        offset: float,
        raw_segments: Iterable[RawSegment],
        is_final_for_task: bool,
    ) -> Tuple[Segment, ...]:
        """Replace ``generation``'s segments with the adjusted ``raw_segments``."""
        if generation in self._sealed:
            logger.warning(f"Ignoring segments for sealed generation {generation}")
            return self.segments

        incoming = [segment for segment in adjust_segments(raw_segments, offset) if _is_valid(segment)]
        if incoming:
            incoming = self._resolve_collisions(generation, incoming)
            incoming = self._clamp_to_floor(generation, incoming)
            kept = [item for item in self._store if item.generation != generation]
            kept.extend(StoredSegment(generation, segment) for segment in incoming)
            kept.sort(key=lambda item: (item.segment.start_time, item.generation))
            self._store = kept
        else:
            logger.debug(f"Generation {generation} result carried no usable segments; keeping stored ones")

        if is_final_for_task:
            self.seal(generation)
        return self.segments

    def _clamp_to_floor(self, generation: int, segments: List[Segment]) -> List[Segment]:
        # Content of a later task may not start inside content of an earlier one.
        # Overlapping segments are pushed back one after another, keeping their durations.
        earlier = [item.segment.end_time for item in self._store if item.generation < generation]
        if not earlier:
            return segments
        cursor = max(earlier)
        shifted = []
        for index, segment in enumerate(segments):
            if segment.start_time >= cursor:
                shifted.extend(segments[index:])
                break
            moved = replace(segment, start_time=cursor, end_time=cursor + segment.duration)
            logger.debug(
                f"Shifting '{segment.text}' of generation {generation} "
                f"from {segment.start_time:.3f}s to {moved.start_time:.3f}s"
            )
            shifted.append(moved)
            cursor = moved.end_time
        return shifted

    def _resolve_collisions(self, generation: int, segments: List[Segment]) -> List[Segment]:
        by_start: Dict[int, Segment] = {}
        for segment in segments:
            key = _key(segment.start_time)
            existing = by_start.get(key)
            if existing is None:
                by_start[key] = segment
                continue
            kept, dropped = (segment, existing) if segment.duration > existing.duration else (existing, segment)
            by_start[key] = kept
            conflict = MergeConflict(generation, kept.start_time, kept, dropped)
            self.conflicts.append(conflict)
            logger.warning(
                f"Segment collision in generation {generation} at {kept.start_time:.3f}s: "
                f"kept '{kept.text}' ({kept.duration:.3f}s), dropped '{dropped.text}' ({dropped.duration:.3f}s)"
            )
        return sorted(by_start.values(), key=lambda segment: segment.start_time)

    def segment_at(self, time_position: float) -> Optional[Segment]:
        """Segment covering a session time, if any."""
        for item in self._store:
            if item.segment.start_time <= time_position <= item.segment.end_time:
                return item.segment
        return None

    def segments_in_range(self, start_time: float, end_time: float) -> Tuple[Segment, ...]:
        return tuple(
            item.segment
            for item in self._store
            if item.segment.start_time <= end_time and item.segment.end_time >= start_time
        )

    def text_for(self, generation: int, separator: str = " ") -> str:
        return separator.join(segment.text for segment in self.segments_for(generation))

    def clear(self):
        self._store.clear()
        self._sealed.clear()
        self.conflicts.clear()
