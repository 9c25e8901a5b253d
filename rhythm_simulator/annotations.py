# rhythm_simulator/annotations.py
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from .constants import BeatLabel, RhythmCode, seconds_to_ms


@dataclass(frozen=True)
class AnnotationEvent:
    """MIT-BIH style annotation: a beat, or a rhythm change ('+') carrying its rhythm code."""
    time_ms: int
    beat: BeatLabel
    rhythm: Optional[RhythmCode] = None

    @property
    def is_rhythm_change(self) -> bool:
        return self.rhythm is not None

    def as_tuple(self):
        return (self.time_ms, self.beat.code, self.rhythm.value if self.rhythm else None)

    def __repr__(self):
        rhythm = f", rhythm='{self.rhythm.value}'" if self.rhythm else ""
        return f"AnnotationEvent(t={self.time_ms}ms, beat='{self.beat.code}'{rhythm})"


class AnnotationLog:
    """Chronological beat and rhythm-change annotations of one simulation run."""

    def __init__(self):
        self._events: List[AnnotationEvent] = []

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[AnnotationEvent]:
        return iter(self._events)

    def __getitem__(self, index):
        return self._events[index]

    def rhythm_change(self, episode_start_ms: int, first_rr_sec: float, rhythm: RhythmCode):
        """Rhythm onset, placed halfway through the first RR interval of the episode."""
        self._events.append(AnnotationEvent(episode_start_ms + seconds_to_ms(first_rr_sec / 2.0),
                                            BeatLabel.RHYTHM_ONSET_MARKER, rhythm))

    def beat(self, time_ms: int, label: BeatLabel):
        self._events.append(AnnotationEvent(int(time_ms), label))

    def truncate_after(self, last_time_ms: Optional[int]):
        """Drop events later than the last retained beat (all events if none was retained)."""
        if last_time_ms is None:
            self._events = []
        else:
            self._events = [e for e in self._events if e.time_ms <= last_time_ms]

    @property
    def events(self) -> List[AnnotationEvent]:
        return list(self._events)

    def beat_events(self) -> List[AnnotationEvent]:
        return [e for e in self._events if not e.is_rhythm_change]

    def rhythm_events(self) -> List[AnnotationEvent]:
        return [e for e in self._events if e.is_rhythm_change]

    def to_columns(self) -> Dict[str, list]:
        """Parallel time / type / rhythm columns, as in MIT-BIH annotation files."""
        return {
            "ann_time": [e.time_ms for e in self._events],
            "ann_type": [e.beat.code for e in self._events],
            "ann_rhythm": [e.rhythm.value if e.rhythm else None for e in self._events],
        }
