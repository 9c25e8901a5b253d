# rhythm_simulator/context.py
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from .annotations import AnnotationLog
from .constants import BeatLabel, RhythmCode, RhythmState, TargetBeat, seconds_to_ms
from .rr_sources import RRIntervalPool


@dataclass(frozen=True)
class BeatRecord:
    """One synthesized heartbeat; onset_ms is the cumulative time at the end of its RR interval."""
    rr_sec: float
    label: BeatLabel
    target: TargetBeat
    state: RhythmState
    onset_ms: int


@dataclass
class SimulationContext:
    """
    Mutable state of one simulation run.

    Owned by the rhythm state machine; the beat synthesizer reads and advances
    the pool indices and may rewrite sinus pool slots that are not consumed yet.
    """
    rng: np.random.Generator
    signal_length_ms: int
    sinus_pool: RRIntervalPool
    af_pool: Optional[RRIntervalPool] = None
    time_ms: int = 0
    sinus_index: int = 0
    af_index: int = 0
    previous_state: Optional[RhythmState] = None
    active_rhythm: Optional[RhythmState] = None
    bt_type: Optional[int] = None        # 2 bigeminy, 3 trigeminy
    bt_countdown: int = 0                # beats until the next ventricular ectopic, counting it
    bt_rhythm: Optional[RhythmCode] = None
    beats: List[BeatRecord] = field(default_factory=list)
    annotations: AnnotationLog = field(default_factory=AnnotationLog)
    beat_counts: Counter = field(default_factory=Counter)
    episode_counts: Counter = field(default_factory=Counter)

    @property
    def finished(self) -> bool:
        return self.time_ms > self.signal_length_ms

    @property
    def num_beats(self) -> int:
        return len(self.beats)

    def announce_rhythm(self, category: RhythmState, code: RhythmCode, first_rr_sec: float):
        """Emit a rhythm-change annotation unless this rhythm category is already active."""
        if self.active_rhythm != category:
            self.annotations.rhythm_change(self.time_ms, first_rr_sec, code)
            self.active_rhythm = category

    def record_beat(self, state: RhythmState, rr_sec: float, label: BeatLabel, target: TargetBeat) -> BeatRecord:
        self.time_ms += seconds_to_ms(rr_sec)
        beat = BeatRecord(rr_sec=float(rr_sec), label=label, target=target, state=state, onset_ms=self.time_ms)
        self.beats.append(beat)
        self.annotations.beat(self.time_ms, label)
        self.beat_counts[state] += 1
        return beat
