# rhythm_simulator/rr_sources.py
import logging
import math
from typing import List, Optional, Sequence

import numpy as np

from .constants import (
    AV_NODE_PARAMS, FIBRILLATION_FREQUENCY_RANGE_HZ, MIN_RR_INTERVAL_SEC,
    POOL_EXTENSION_ATTEMPTS, SINUS_RR_PARAMS, mean_rr_from_heart_rate
)
from .exceptions import InvalidParameter, PoolExhaustion

logger = logging.getLogger(__name__)


# --- RR Sources ---
class SyntheticSinusRR:
    """
    Sinus rhythm RR intervals from an ECGSYN-style RR process.

    The RR tachogram is a Gaussian process whose power spectrum is the sum of two
    Gaussian lobes: Mayer waves (baroreflex, ~0.1 Hz) and respiratory sinus
    arrhythmia (~0.25 Hz), weighted by lf_hf_ratio. Beats are placed by walking
    the tachogram in time.
    """
    is_synthetic = True

    def __init__(self, heart_rate_bpm: float, heart_rate_std_bpm: float, lf_hf_ratio: float,
                 rng: np.random.Generator, params: Optional[dict] = None):
        self.heart_rate_bpm = heart_rate_bpm
        self.heart_rate_std_bpm = heart_rate_std_bpm
        self.lf_hf_ratio = lf_hf_ratio
        self.rng = rng
        self.params = dict(SINUS_RR_PARAMS if params is None else params)

    @property
    def fixed_heart_rate_bpm(self) -> Optional[float]:
        return self.heart_rate_bpm

    def _rr_process(self, num_samples: int) -> np.ndarray:
        p = self.params
        sfrr = p["sampling_rate_hz"]
        w1, w2 = 2 * np.pi * p["lf_center_hz"], 2 * np.pi * p["hf_center_hz"]
        c1, c2 = 2 * np.pi * p["lf_std_hz"], 2 * np.pi * p["hf_std_hz"]
        sig1, sig2 = self.lf_hf_ratio, 1.0

        rr_mean = mean_rr_from_heart_rate(self.heart_rate_bpm)
        rr_std = 60.0 * self.heart_rate_std_bpm / (self.heart_rate_bpm ** 2)

        n = num_samples
        w = np.arange(n) * 2 * np.pi * sfrr / n
        hw = (sig1 * np.exp(-0.5 * ((w - w1) / c1) ** 2) / np.sqrt(2 * np.pi * c1 ** 2)
              + sig2 * np.exp(-0.5 * ((w - w2) / c2) ** 2) / np.sqrt(2 * np.pi * c2 ** 2))
        half = n // 2
        hw_sym = np.concatenate([hw[:half], hw[half - 1::-1]])
        sw = (sfrr / 2) * np.sqrt(hw_sym)

        phases = 2 * np.pi * self.rng.random(half - 1)
        ph = np.concatenate([[0.0], phases, [0.0], -phases[::-1]])
        x = np.real(np.fft.ifft(sw * np.exp(1j * ph))) / n

        x_std = np.std(x)
        if x_std < 1e-12 or rr_std == 0:
            return np.full(n, rr_mean)
        return rr_mean + x * (rr_std / x_std)

    def generate(self, num_beats: int) -> np.ndarray:
        rr_mean = mean_rr_from_heart_rate(self.heart_rate_bpm)
        sfrr = self.params["sampling_rate_hz"]
        # headroom for slower-than-average stretches
        span_sec = 1.5 * num_beats * rr_mean + 10.0
        num_samples = 2 ** int(math.ceil(math.log2(max(span_sec * sfrr, 16))))
        tachogram = np.maximum(self._rr_process(num_samples), MIN_RR_INTERVAL_SEC)

        beats = np.empty(num_beats)
        t = 0.0
        for i in range(num_beats):
            idx = min(int(t * sfrr), num_samples - 1)
            beats[i] = tachogram[idx]
            t += beats[i]
        return beats


class AVNodeAfRR:
    """
    AF ventricular response from an atrioventricular node model.

    Atrial impulses reach the AV node as a Poisson process at the fibrillation
    frequency. An impulse is conducted when the node has recovered; the next
    refractory period grows with the preceding RR (restitution). Blocked impulses
    may penetrate the node and prolong its refractoriness (concealed conduction).
    """
    is_synthetic = True
    fixed_heart_rate_bpm = None

    def __init__(self, rng: np.random.Generator, fibrillation_frequency_hz: Optional[float] = None,
                 params: Optional[dict] = None):
        self.rng = rng
        if fibrillation_frequency_hz is None:
            fibrillation_frequency_hz = float(rng.uniform(*FIBRILLATION_FREQUENCY_RANGE_HZ))
        self.fibrillation_frequency_hz = fibrillation_frequency_hz
        self.params = dict(AV_NODE_PARAMS if params is None else params)
        self._refractory_sec = self.params["refractory_min_sec"]

    def generate(self, num_beats: int) -> np.ndarray:
        p = self.params
        mean_arrival_sec = 1.0 / self.fibrillation_frequency_hz
        intervals: List[float] = []
        since_last_sec = 0.0
        refractory = self._refractory_sec
        while len(intervals) < num_beats:
            since_last_sec += self.rng.exponential(mean_arrival_sec)
            if since_last_sec >= refractory:
                rr = since_last_sec
                intervals.append(rr)
                since_last_sec = 0.0
                recovery = 1.0 - np.exp(-rr / p["recovery_time_constant_sec"])
                refractory = (p["refractory_min_sec"] + p["refractory_range_sec"] * recovery
                              + self.rng.normal(0.0, p["refractory_jitter_sec"]))
                refractory = max(refractory, MIN_RR_INTERVAL_SEC)
            elif self.rng.random() < p["concealed_conduction_probability"]:
                refractory += p["concealed_prolongation_sec"]
        self._refractory_sec = refractory
        return np.asarray(intervals)


class RecordedRR:
    """
    Externally supplied RR recording (e.g. a Holter excerpt).

    Extending past the end of the recording wraps around from a random offset.
    """
    is_synthetic = False
    fixed_heart_rate_bpm = None

    def __init__(self, intervals_sec: Sequence[float], rng: np.random.Generator):
        intervals = np.asarray(intervals_sec, dtype=float)
        if intervals.ndim != 1 or intervals.size == 0:
            raise InvalidParameter("recorded RR series must be a non-empty sequence")
        if np.any(~np.isfinite(intervals)) or np.any(intervals <= 0):
            raise InvalidParameter("recorded RR intervals must be positive and finite")
        self.intervals = intervals
        self.rng = rng
        self._position = 0

    def generate(self, num_beats: int) -> np.ndarray:
        out = np.empty(num_beats)
        filled = 0
        while filled < num_beats:
            if self._position >= self.intervals.size:
                self._position = int(self.rng.integers(0, self.intervals.size))
            take = min(num_beats - filled, self.intervals.size - self._position)
            out[filled:filled + take] = self.intervals[self._position:self._position + take]
            self._position += take
            filled += take
        return out


# --- RR Pools ---
class RRIntervalPool:
    """
    Growable, index-addressed store of pre-generated RR intervals.

    The sinus pool is both read and written: ectopic branches rewrite slots that
    have not been consumed yet to encode compensatory pauses. Reading or writing
    past the end extends the pool from its source; existing indices never move.
    """

    def __init__(self, source, initial_length: int, name: str = "rr"):
        self.source = source
        self.name = name
        self._chunk_length = max(1, int(initial_length))
        self._intervals: List[float] = []
        self._offset_sec = 0.0
        self.extensions = 0
        self._grow()

    def __len__(self) -> int:
        return len(self._intervals)

    def __getitem__(self, index: int) -> float:
        self._ensure(index)
        return self._intervals[index]

    def __setitem__(self, index: int, value: float):
        self._ensure(index)
        self._intervals[index] = float(value)

    def __repr__(self):
        return f"RRIntervalPool(name='{self.name}', len={len(self)}, extensions={self.extensions})"

    @property
    def is_synthetic(self) -> bool:
        return bool(getattr(self.source, "is_synthetic", False))

    def _ensure(self, index: int):
        if index < 0:
            raise IndexError(f"negative {self.name} pool index {index}")
        while index >= len(self._intervals):
            self._grow()
            self.extensions += 1
            logger.debug(f"Extended {self.name} pool to {len(self._intervals)} intervals")

    def _extend(self, num_beats: int):
        chunk = np.asarray(self.source.generate(num_beats), dtype=float)
        if chunk.size == 0:
            raise PoolExhaustion(f"{self.name} source produced no intervals")
        self._intervals.extend((chunk + self._offset_sec).tolist())

    def _grow(self):
        for attempt in range(1, POOL_EXTENSION_ATTEMPTS + 1):
            try:
                self._extend(self._chunk_length)
                return
            except PoolExhaustion as e:
                logger.warning(f"{e} (attempt {attempt}/{POOL_EXTENSION_ATTEMPTS})")
        raise InvalidParameter(
            f"{self.name} source produced no intervals in {POOL_EXTENSION_ATTEMPTS} consecutive attempts"
        )

    def mean(self) -> float:
        return float(np.mean(self._intervals))

    def shift(self, delta_sec: float):
        """Add a constant to every interval, including those generated later."""
        self._offset_sec += delta_sec
        self._intervals = [rr + delta_sec for rr in self._intervals]

    def heart_rate_at(self, index: int) -> float:
        """Local heart rate at a slot: the source's fixed rate, or 60/RR for recordings."""
        fixed = getattr(self.source, "fixed_heart_rate_bpm", None)
        if fixed is not None:
            return float(fixed)
        return 60.0 / self[index]

    def to_array(self) -> np.ndarray:
        return np.asarray(self._intervals)
