# rhythm_simulator/rhythm_logic.py
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from .annotations import AnnotationEvent
from .api_models import ArrhythmiaParams
from .beat_synthesis import BeatSynthesizer
from .constants import (
    AF_EPISODE_SUPPORT, AF_POOL_BEATS_PER_SEC, BIGEMINY_MIN_BEATS, BT_BASE_PREMATURITY_RANGE,
    BT_EPISODE_SUPPORT, MS_PER_SEC, SINUS_POOL_BEATS_PER_SEC, TRIGEMINY_MIN_BEATS,
    RhythmCode, RhythmState
)
from .context import BeatRecord, SimulationContext
from .episode_distributions import (
    EpisodeDurationDistribution, calibrate_episode_distribution, positive_support_cdf
)
from .exceptions import InvalidParameter
from .rr_sources import AVNodeAfRR, RecordedRR, RRIntervalPool, SyntheticSinusRR
from .transition_matrix import MarkovChainModel, build_transition_matrix, normalize_burdens

logger = logging.getLogger(__name__)

BIGEMINY, TRIGEMINY = 2, 3


# --- Simulation Output ---
@dataclass
class Episode:
    state: RhythmState
    start_beat: int
    end_beat: int  # inclusive
    start_ms: int
    end_ms: int

    @property
    def num_beats(self) -> int:
        return self.end_beat - self.start_beat + 1


@dataclass
class RhythmSimulationResult:
    rr: np.ndarray
    target_beats: np.ndarray
    state_history: np.ndarray
    beat_times_ms: np.ndarray
    annotations: List[AnnotationEvent]
    beats: List[BeatRecord]
    markov: MarkovChainModel
    mean_heart_rate_bpm: float
    signal_length_sec: float

    def __len__(self) -> int:
        return len(self.rr)

    def qrs_indices(self, fs: int) -> np.ndarray:
        """Sample index of each QRS complex at sampling rate fs."""
        return np.round(self.beat_times_ms * fs / MS_PER_SEC).astype(int)

    def episodes(self) -> List[Episode]:
        """Maximal runs of consecutive beats generated in the same Markov state."""
        episodes: List[Episode] = []
        if len(self.state_history) == 0:
            return episodes
        boundaries = np.flatnonzero(np.diff(self.state_history)) + 1
        starts = np.concatenate([[0], boundaries])
        ends = np.concatenate([boundaries - 1, [len(self.state_history) - 1]])
        for start, end in zip(starts, ends):
            start_ms = int(self.beat_times_ms[start - 1]) if start > 0 else 0
            episodes.append(Episode(RhythmState(int(self.state_history[start])), int(start), int(end),
                                    start_ms, int(self.beat_times_ms[end])))
        return episodes

    def rhythm_burdens(self) -> Dict[RhythmState, float]:
        """Realized fraction of the generated time spent in each state."""
        total = float(np.sum(self.rr))
        if total <= 0:
            return {state: 0.0 for state in RhythmState}
        return {state: float(np.sum(self.rr[self.state_history == state.value])) / total for state in RhythmState}

    def to_dict(self) -> dict:
        return {
            "rr_intervals_sec": self.rr.tolist(),
            "target_beats": self.target_beats.tolist(),
            "state_history": self.state_history.tolist(),
            "beat_times_ms": self.beat_times_ms.tolist(),
            "annotations": [
                {"time_ms": e.time_ms, "beat_code": e.beat.code, "rhythm_code": e.rhythm.value if e.rhythm else None}
                for e in self.annotations
            ],
            "mean_heart_rate_bpm": self.mean_heart_rate_bpm,
            "transition_matrix": self.markov.matrix.tolist(),
            "rhythm_burdens": {state.name: burden for state, burden in self.rhythm_burdens().items()},
        }


# --- Markov Chain Driven Rhythm Generation ---
class RhythmStateMachine:
    """
    Drives the rhythm Markov chain over simulated time.

    Each step draws the next state from the transition matrix row of the current
    state, draws an episode length for it, and synthesizes the episode beat by
    beat until the record length is exceeded.
    """

    def __init__(
        self,
        model: MarkovChainModel,
        synthesizer: BeatSynthesizer,
        sinus_durations: EpisodeDurationDistribution,
        at_durations: EpisodeDurationDistribution,
        af_durations: Optional[EpisodeDurationDistribution] = None,
        bt_durations: Optional[EpisodeDurationDistribution] = None,
        bigeminy_probability: float = 0.5,
    ):
        self.model = model
        self.synthesizer = synthesizer
        self.durations = {
            RhythmState.SINUS_RHYTHM: sinus_durations,
            RhythmState.ATRIAL_FIBRILLATION: af_durations,
            RhythmState.ATRIAL_TACHYCARDIA: at_durations,
            RhythmState.BIGEMINY_TRIGEMINY: bt_durations,
        }
        self.bigeminy_probability = bigeminy_probability
        self._row_cdfs = {}
        for state in RhythmState:
            row = model.row(state)
            self._row_cdfs[state] = positive_support_cdf(row) if row.sum() > 0 else None
        self._episode_runners = {
            RhythmState.SINUS_RHYTHM: self._run_sinus,
            RhythmState.ATRIAL_FIBRILLATION: self._run_fibrillation,
            RhythmState.ATRIAL_TACHYCARDIA: self._run_tachycardia,
            RhythmState.BIGEMINY_TRIGEMINY: self._run_bigeminy_trigeminy,
            RhythmState.VPB_IN_SINUS: self._run_vpb_in_sinus,
            RhythmState.VPB_IN_TACHYCARDIA: self._run_vpb_in_tachycardia,
            RhythmState.VPB_IN_FIBRILLATION: self._run_vpb_in_fibrillation,
        }

    def next_state(self, ctx: SimulationContext) -> RhythmState:
        if ctx.previous_state is None:
            return self.model.initial_state
        row_cdf = self._row_cdfs[ctx.previous_state]
        if row_cdf is None:
            return ctx.previous_state
        columns, cdf = row_cdf
        return RhythmState(int(columns[np.searchsorted(cdf, ctx.rng.random(), side="left")]) + 1)

    def _episode_length(self, state: RhythmState, ctx: SimulationContext) -> int:
        distribution = self.durations.get(state)
        if distribution is None:
            raise InvalidParameter(f"no episode duration distribution for reachable state {state.name}")
        return distribution.sample(ctx.rng)

    def step(self, ctx: SimulationContext) -> RhythmState:
        state = self.next_state(ctx)
        self._episode_runners[state](ctx)
        ctx.episode_counts[state] += 1
        ctx.previous_state = state
        return state

    def run(self, ctx: SimulationContext) -> SimulationContext:
        while ctx.time_ms <= ctx.signal_length_ms:
            self.step(ctx)
        return ctx

    # --- Episode runners ---
    def _run_sinus(self, ctx: SimulationContext):
        state = RhythmState.SINUS_RHYTHM
        for _ in range(self._episode_length(state, ctx)):
            beat = self.synthesizer.sinus_beat(ctx)
            ctx.announce_rhythm(state, RhythmCode.SINUS, beat.rr_sec)
            ctx.record_beat(state, beat.rr_sec, beat.label, beat.target)
            if ctx.finished:
                break

    def _run_fibrillation(self, ctx: SimulationContext):
        state = RhythmState.ATRIAL_FIBRILLATION
        for _ in range(self._episode_length(state, ctx)):
            beat = self.synthesizer.fibrillation_beat(ctx)
            ctx.announce_rhythm(state, RhythmCode.ATRIAL_FIBRILLATION, beat.rr_sec)
            ctx.record_beat(state, beat.rr_sec, beat.label, beat.target)
            if ctx.finished:
                break

    def _run_tachycardia(self, ctx: SimulationContext):
        state = RhythmState.ATRIAL_TACHYCARDIA
        length = self._episode_length(state, ctx)
        if ctx.previous_state == state:
            # back-to-back AT episodes would otherwise reuse the shortened onset slot
            ctx.sinus_index += 1
        if length == 1:
            beat, subtype = self.synthesizer.isolated_atrial_ectopic(ctx)
            logger.debug(f"Isolated atrial ectopic ({subtype.name}) at {ctx.time_ms} ms")
            ctx.record_beat(state, beat.rr_sec, beat.label, beat.target)
            return
        beat, episode = self.synthesizer.start_atrial_tachycardia(ctx)
        ctx.announce_rhythm(state, RhythmCode.SUPRAVENTRICULAR_TACHYARRHYTHMIA, beat.rr_sec)
        ctx.record_beat(state, beat.rr_sec, beat.label, beat.target)
        for _ in range(length - 1):
            if ctx.finished:
                break
            beat = self.synthesizer.continue_atrial_tachycardia(ctx, episode)
            ctx.record_beat(state, beat.rr_sec, beat.label, beat.target)

    def _choose_bigeminy_or_trigeminy(self, ctx: SimulationContext, length: int) -> int:
        if ctx.rng.random() > self.bigeminy_probability:
            ctx.bt_type, ctx.bt_rhythm = TRIGEMINY, RhythmCode.TRIGEMINY
            if length < TRIGEMINY_MIN_BEATS:
                length = TRIGEMINY_MIN_BEATS
            elif length % 3 != 0:
                length = int(math.floor(length / 3.0 + 0.5)) * 3
        else:
            ctx.bt_type, ctx.bt_rhythm = BIGEMINY, RhythmCode.BIGEMINY
            if length < BIGEMINY_MIN_BEATS:
                length = BIGEMINY_MIN_BEATS
            elif length % 2 != 0:
                # fair coin between d-1 and d+1; a literal "rand >= 05" threshold would always give d-1
                length += 1 if ctx.rng.random() >= 0.5 else -1
        ctx.bt_countdown = ctx.bt_type
        return length

    def _run_bigeminy_trigeminy(self, ctx: SimulationContext):
        state = RhythmState.BIGEMINY_TRIGEMINY
        length = self._episode_length(state, ctx)
        base_prematurity = ctx.rng.uniform(*BT_BASE_PREMATURITY_RANGE)
        if ctx.previous_state != state or ctx.bt_type is None:
            length = self._choose_bigeminy_or_trigeminy(ctx, length)
        for _ in range(length):
            if ctx.bt_countdown > 1:
                beat = self.synthesizer.sinus_beat(ctx)
                ctx.announce_rhythm(state, ctx.bt_rhythm, beat.rr_sec)
                ctx.bt_countdown -= 1
            else:
                beat = self.synthesizer.bigeminy_ectopic(ctx, base_prematurity)
                ctx.bt_countdown = ctx.bt_type
            ctx.record_beat(state, beat.rr_sec, beat.label, beat.target)
            if ctx.finished:
                break

    def _run_vpb_in_sinus(self, ctx: SimulationContext):
        beat, subtype = self.synthesizer.isolated_vpb_in_sinus(ctx)
        logger.debug(f"Isolated VPB ({subtype.name}) at {ctx.time_ms} ms")
        ctx.record_beat(RhythmState.VPB_IN_SINUS, beat.rr_sec, beat.label, beat.target)

    def _run_vpb_in_tachycardia(self, ctx: SimulationContext):
        beat = self.synthesizer.vpb_in_tachycardia(ctx)
        ctx.record_beat(RhythmState.VPB_IN_TACHYCARDIA, beat.rr_sec, beat.label, beat.target)

    def _run_vpb_in_fibrillation(self, ctx: SimulationContext):
        beat = self.synthesizer.vpb_in_fibrillation(ctx)
        ctx.record_beat(RhythmState.VPB_IN_FIBRILLATION, beat.rr_sec, beat.label, beat.target)


# --- Setup & Finalization ---
def _sinus_source(params: ArrhythmiaParams, rng: np.random.Generator):
    if params.use_real_rr:
        return RecordedRR(params.recorded_sinus_rr_sec, rng)
    return SyntheticSinusRR(params.heart_rate_bpm, params.heart_rate_std_bpm, params.lf_hf_ratio, rng)


def _af_source(params: ArrhythmiaParams, rng: np.random.Generator):
    if params.use_real_rr:
        return RecordedRR(params.recorded_af_rr_sec, rng)
    return AVNodeAfRR(rng, params.fibrillation_frequency_hz)


def _finalize(ctx: SimulationContext, model: MarkovChainModel, mean_hr: float,
              signal_length_sec: float) -> RhythmSimulationResult:
    # beats ending after the requested length belong to the overshooting final episode
    kept = [beat for beat in ctx.beats if beat.onset_ms <= ctx.signal_length_ms]
    ctx.annotations.truncate_after(kept[-1].onset_ms if kept else None)
    return RhythmSimulationResult(
        rr=np.array([b.rr_sec for b in kept], dtype=float),
        target_beats=np.array([int(b.target) for b in kept], dtype=int),
        state_history=np.array([int(b.state) for b in kept], dtype=int),
        beat_times_ms=np.array([b.onset_ms for b in kept], dtype=int),
        annotations=ctx.annotations.events,
        beats=kept,
        markov=model,
        mean_heart_rate_bpm=mean_hr,
        signal_length_sec=signal_length_sec,
    )


def simulate_rhythm(params: Optional[ArrhythmiaParams] = None, **overrides) -> RhythmSimulationResult:
    """
    Generate the RR series, beat labels, state history and annotations of one record.

    Args:
        params: Simulation parameters; keyword overrides build or update them

    Returns:
        RhythmSimulationResult truncated to the requested signal length

    Raises:
        InvalidParameter: burden/duration combination outside the supported range
    """
    if params is None:
        params = ArrhythmiaParams(**overrides)
    elif overrides:
        params = ArrhythmiaParams(**{**params.model_dump(), **overrides})

    rng = np.random.default_rng(params.seed)
    T = params.duration_sec
    burdens = normalize_burdens(*params.burdens())
    logger.info(f"Generating RR intervals: {T:.1f}s, burdens AF={burdens.af:.3f} AT={burdens.at:.3f} "
                f"BT={burdens.bt:.3f} VPB={burdens.vpb:.3f} SR={burdens.sinus:.3f}")

    at_durations = EpisodeDurationDistribution.from_weights(params.at_episode_lengths,
                                                            params.at_episode_probabilities)

    sinus_pool = RRIntervalPool(_sinus_source(params, rng), int(math.ceil(SINUS_POOL_BEATS_PER_SEC * T)), "sinus")
    af_pool = None
    if burdens.af > 0:
        af_pool = RRIntervalPool(_af_source(params, rng), max(1, int(round(AF_POOL_BEATS_PER_SEC * T * burdens.af))), "af")
        # sinus rhythm must not be faster on average than the AF ventricular response
        if sinus_pool.mean() < af_pool.mean():
            sinus_pool.shift(af_pool.mean() - sinus_pool.mean())

    fixed_rate = getattr(sinus_pool.source, "fixed_heart_rate_bpm", None)
    mean_hr = float(fixed_rate) if fixed_rate is not None else float(np.mean(60.0 / sinus_pool.to_array()))

    model = build_transition_matrix(
        burdens,
        signal_length_sec=T,
        mean_sinus_rr_sec=60.0 / mean_hr,
        af_mean_duration=params.af_mean_duration_beats,
        at_mean_duration=at_durations.mean,
        bt_mean_duration=params.bt_mean_duration_beats,
        vpb_subtype_probabilities=params.vpb_subtype_probabilities,
        vpbs_in_at=params.vpbs_in_at,
        vpbs_in_af=params.vpbs_in_af,
    )

    sr_hi = max(int(math.ceil(SINUS_POOL_BEATS_PER_SEC * T)), 4 * int(math.ceil(model.sinus_mean_duration)))
    sinus_durations = calibrate_episode_distribution(model.sinus_mean_duration, 1, sr_hi)
    af_durations = calibrate_episode_distribution(params.af_mean_duration_beats, *AF_EPISODE_SUPPORT) if burdens.af > 0 else None
    bt_durations = calibrate_episode_distribution(params.bt_mean_duration_beats, *BT_EPISODE_SUPPORT) if burdens.bt > 0 else None

    machine = RhythmStateMachine(model, BeatSynthesizer(params.apb_subtype_probabilities, params.vpb_subtype_probabilities),
                                 sinus_durations, at_durations, af_durations, bt_durations,
                                 bigeminy_probability=params.bigeminy_probability)
    ctx = SimulationContext(rng=rng, signal_length_ms=int(round(T * MS_PER_SEC)), sinus_pool=sinus_pool, af_pool=af_pool)
    machine.run(ctx)

    result = _finalize(ctx, model, mean_hr, T)
    logger.info(f"Generated {len(result)} beats in {sum(ctx.episode_counts.values())} episodes "
                f"({len(result.annotations)} annotations)")
    return result
