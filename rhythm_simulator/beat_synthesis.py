# rhythm_simulator/beat_synthesis.py
import logging
from dataclasses import dataclass
from typing import Sequence, Tuple

import numpy as np

from .constants import (
    AF_MAX_RR_SEC, APB_DELAYED_RESET_FACTOR_RANGE, APB_PREMATURITY_RANGES,
    AT_MAX_RATE_DRAWS, AT_ONSET_DELAY_FACTOR_RANGE, AT_ONSET_PREMATURITY_RANGE,
    AT_RATE_LIMITS_BPM, AT_RATE_MULTIPLIER_RANGE, AT_RR_VARIABILITY,
    BT_PREMATURITY_JITTER, MIN_RR_INTERVAL_SEC, VPB_PREMATURITY_RANGES,
    ApbSubtype, BeatLabel, TargetBeat, VpbSubtype
)
from .context import SimulationContext
from .episode_distributions import positive_support_cdf
from .exceptions import InvalidParameter

logger = logging.getLogger(__name__)

MAX_AT_RR_DRAWS = 100


@dataclass(frozen=True)
class SynthesizedBeat:
    rr_sec: float
    label: BeatLabel
    target: TargetBeat


@dataclass(frozen=True)
class TachycardiaEpisode:
    """Parameters fixed at the onset of a sustained atrial tachycardia episode."""
    rate_bpm: float
    rate_ratio: float
    base_rr_sec: float


def _subtype_cdf(probabilities: Sequence[float], expected: int, name: str) -> Tuple[np.ndarray, np.ndarray]:
    p = np.asarray(probabilities, dtype=float)
    if p.shape != (expected,) or np.any(p < 0) or p.sum() <= 0:
        raise InvalidParameter(f"{name} subtype probabilities must be {expected} non-negative values with a positive sum")
    return positive_support_cdf(p)


def compensated_interval(interval_sec: float) -> float:
    """Pause-adjusted sinus slots never drop below the refractory floor."""
    return max(interval_sec, MIN_RR_INTERVAL_SEC)


class BeatSynthesizer:
    """
    Per-state RR interval rules.

    Every method consumes the pools through the simulation context: sinus and AF
    indices advance when a slot is used, and ectopic beats rewrite the sinus slot
    that the next sinus beat will read, which encodes compensatory pauses,
    delayed resets and interpolation.
    """

    def __init__(self, apb_subtype_probabilities: Sequence[float], vpb_subtype_probabilities: Sequence[float],
                 at_rr_variability: float = AT_RR_VARIABILITY):
        self._apb_cdf = _subtype_cdf(apb_subtype_probabilities, len(ApbSubtype), "atrial ectopic")
        self._vpb_cdf = _subtype_cdf(vpb_subtype_probabilities, len(VpbSubtype), "ventricular ectopic")
        self.at_rr_variability = at_rr_variability

    @staticmethod
    def _draw(subtype_cdf: Tuple[np.ndarray, np.ndarray], rng: np.random.Generator) -> int:
        support, cdf = subtype_cdf
        return int(support[np.searchsorted(cdf, rng.random(), side="left")]) + 1

    def draw_apb_subtype(self, rng: np.random.Generator) -> ApbSubtype:
        return ApbSubtype(self._draw(self._apb_cdf, rng))

    def draw_vpb_subtype(self, rng: np.random.Generator) -> VpbSubtype:
        return VpbSubtype(self._draw(self._vpb_cdf, rng))

    # --- Sinus rhythm ---
    def sinus_beat(self, ctx: SimulationContext) -> SynthesizedBeat:
        rr = ctx.sinus_pool[ctx.sinus_index]
        ctx.sinus_index += 1
        return SynthesizedBeat(rr, BeatLabel.NORMAL, TargetBeat.NORMAL)

    # --- Atrial fibrillation ---
    def _usable_af_index(self, ctx: SimulationContext) -> int:
        if ctx.af_pool is None:
            raise InvalidParameter("atrial fibrillation beat requested without an AF RR source")
        idx = ctx.af_index
        if ctx.af_pool.is_synthetic:
            # the AV node model occasionally produces implausibly long pauses
            while ctx.af_pool[idx] > AF_MAX_RR_SEC:
                idx += 1
        return idx

    def fibrillation_beat(self, ctx: SimulationContext) -> SynthesizedBeat:
        idx = self._usable_af_index(ctx)
        ctx.af_index = idx + 1
        return SynthesizedBeat(ctx.af_pool[idx], BeatLabel.NORMAL, TargetBeat.FIBRILLATION)

    # --- Atrial tachycardia ---
    def isolated_atrial_ectopic(self, ctx: SimulationContext) -> Tuple[SynthesizedBeat, ApbSubtype]:
        """Single atrial premature beat; it takes the place of one sinus beat."""
        rng = ctx.rng
        subtype = self.draw_apb_subtype(rng)
        current = ctx.sinus_pool[ctx.sinus_index]
        nxt = ctx.sinus_index + 1
        rr = current * rng.uniform(*APB_PREMATURITY_RANGES[subtype])
        if subtype == ApbSubtype.DELAYED_RESET:
            ctx.sinus_pool[nxt] = compensated_interval(
                ctx.sinus_pool[nxt] * rng.uniform(*APB_DELAYED_RESET_FACTOR_RANGE))
        elif subtype == ApbSubtype.FULL_COMPENSATORY:
            ctx.sinus_pool[nxt] = compensated_interval(2 * ctx.sinus_pool[nxt] - rr)
        elif subtype == ApbSubtype.INTERPOLATED:
            ctx.sinus_pool[nxt] = compensated_interval(ctx.sinus_pool[nxt] - rr)
        ctx.sinus_index += 1
        return SynthesizedBeat(rr, BeatLabel.ATRIAL_ECTOPIC, TargetBeat.ATRIAL_ECTOPIC), subtype

    def draw_tachycardia_rate(self, rng: np.random.Generator, sinus_rate_bpm: float) -> float:
        lo, hi = AT_RATE_LIMITS_BPM
        rate = rng.uniform(*AT_RATE_MULTIPLIER_RANGE) * sinus_rate_bpm
        draws = 1
        while rate > hi or rate < lo:
            if draws >= AT_MAX_RATE_DRAWS:
                rate = rng.uniform(lo, hi)
                break
            rate = rng.uniform(*AT_RATE_MULTIPLIER_RANGE) * sinus_rate_bpm
            draws += 1
        return rate

    def start_atrial_tachycardia(self, ctx: SimulationContext) -> Tuple[SynthesizedBeat, TachycardiaEpisode]:
        """First beat of a sustained episode: premature onset, delayed sinus reset queued."""
        rng = ctx.rng
        sinus_rate = ctx.sinus_pool.heart_rate_at(ctx.sinus_index)
        rate = self.draw_tachycardia_rate(rng, sinus_rate)
        base_rr = ctx.sinus_pool[ctx.sinus_index]
        rr = base_rr * rng.uniform(*AT_ONSET_PREMATURITY_RANGE)
        nxt = ctx.sinus_index + 1
        ctx.sinus_pool[nxt] = compensated_interval(ctx.sinus_pool[nxt] * rng.uniform(*AT_ONSET_DELAY_FACTOR_RANGE))
        ctx.sinus_index += 1
        episode = TachycardiaEpisode(rate_bpm=rate, rate_ratio=sinus_rate / rate, base_rr_sec=base_rr)
        logger.debug(f"AT episode onset at {ctx.time_ms} ms: {rate:.1f} bpm (ratio {episode.rate_ratio:.3f})")
        return SynthesizedBeat(rr, BeatLabel.ATRIAL_ECTOPIC, TargetBeat.ATRIAL_ECTOPIC), episode

    def continue_atrial_tachycardia(self, ctx: SimulationContext, episode: TachycardiaEpisode) -> SynthesizedBeat:
        base = episode.rate_ratio * episode.base_rr_sec
        v = self.at_rr_variability
        rr = 0.0
        for _ in range(MAX_AT_RR_DRAWS):
            rr = base * (1.0 + ctx.rng.uniform(-v, v))
            if rr >= MIN_RR_INTERVAL_SEC:
                break
        else:
            rr = MIN_RR_INTERVAL_SEC
        ctx.sinus_index += 1
        return SynthesizedBeat(rr, BeatLabel.ATRIAL_ECTOPIC, TargetBeat.ATRIAL_ECTOPIC)

    # --- Bigeminy / trigeminy ---
    def bigeminy_ectopic(self, ctx: SimulationContext, base_prematurity: float) -> SynthesizedBeat:
        """Coupled ventricular ectopic; the following sinus beat carries the full compensatory pause."""
        current = ctx.sinus_pool[ctx.sinus_index]
        prematurity = base_prematurity + ctx.rng.uniform(-BT_PREMATURITY_JITTER, BT_PREMATURITY_JITTER)
        rr = current * prematurity
        ctx.sinus_pool[ctx.sinus_index] = compensated_interval(2 * current - rr)
        return SynthesizedBeat(rr, BeatLabel.VENTRICULAR_ECTOPIC, TargetBeat.VENTRICULAR_ECTOPIC)

    # --- Isolated ventricular premature beats ---
    def isolated_vpb_in_sinus(self, ctx: SimulationContext) -> Tuple[SynthesizedBeat, VpbSubtype]:
        """VPB inserted before the current sinus slot, which is shortened or lengthened accordingly."""
        subtype = self.draw_vpb_subtype(ctx.rng)
        current = ctx.sinus_pool[ctx.sinus_index]
        rr = current * ctx.rng.uniform(*VPB_PREMATURITY_RANGES[subtype])
        if subtype == VpbSubtype.FULL_COMPENSATORY:
            ctx.sinus_pool[ctx.sinus_index] = compensated_interval(2 * current - rr)
        elif subtype == VpbSubtype.INTERPOLATED:
            ctx.sinus_pool[ctx.sinus_index] = compensated_interval(current - rr)
        return SynthesizedBeat(rr, BeatLabel.VENTRICULAR_ECTOPIC, TargetBeat.VENTRICULAR_ECTOPIC), subtype

    def vpb_in_tachycardia(self, ctx: SimulationContext) -> SynthesizedBeat:
        rr = ctx.sinus_pool[ctx.sinus_index]
        ctx.sinus_index += 1
        return SynthesizedBeat(rr, BeatLabel.VENTRICULAR_ECTOPIC, TargetBeat.VENTRICULAR_ECTOPIC)

    def vpb_in_fibrillation(self, ctx: SimulationContext) -> SynthesizedBeat:
        # the AF index is left in place: the next conducted beat reuses the interval
        idx = self._usable_af_index(ctx)
        ctx.af_index = idx
        return SynthesizedBeat(ctx.af_pool[idx], BeatLabel.VENTRICULAR_ECTOPIC, TargetBeat.VENTRICULAR_ECTOPIC)
