# rhythm_simulator/episode_distributions.py
import logging
import math
from dataclasses import dataclass, field
from typing import Sequence, Tuple

import numpy as np

from .constants import CALIBRATION_MAX_ITERATIONS, CALIBRATION_TOLERANCE_BEATS
from .exceptions import InvalidParameter

logger = logging.getLogger(__name__)


def positive_support_cdf(probabilities: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    """
    Indices of the positive-probability entries and their cumulative distribution.

    The last cumulative value is pinned to exactly 1 so that a uniform draw in
    [0, 1) always lands on an entry with positive probability.
    """
    p = np.asarray(probabilities, dtype=float)
    support = np.flatnonzero(p > 0)
    cdf = np.cumsum(p[support]) / p[support].sum()
    cdf[-1] = 1.0
    return support, cdf


@dataclass(frozen=True)
class EpisodeDurationDistribution:
    """
    Discrete distribution of episode lengths (in beats).

    Attributes:
        lengths: Supported episode lengths, ascending
        probabilities: Probability of each length, sums to 1
        decay_rate: Exponential decay rate used to build the PMF (0 for
            caller-supplied or point-mass distributions)
    """
    lengths: np.ndarray
    probabilities: np.ndarray
    decay_rate: float = 0.0
    _support: np.ndarray = field(init=False, repr=False, compare=False)
    _cdf: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        lengths = np.asarray(self.lengths, dtype=int)
        probabilities = np.asarray(self.probabilities, dtype=float)
        if lengths.ndim != 1 or lengths.shape != probabilities.shape or lengths.size == 0:
            raise InvalidParameter("episode lengths and probabilities must be non-empty vectors of equal length")
        if np.any(lengths < 1):
            raise InvalidParameter("episode lengths must be positive")
        if np.any(probabilities < 0) or probabilities.sum() <= 0:
            raise InvalidParameter("episode probabilities must be non-negative with a positive sum")
        probabilities = probabilities / probabilities.sum()
        object.__setattr__(self, "lengths", lengths)
        object.__setattr__(self, "probabilities", probabilities)
        support, cdf = positive_support_cdf(probabilities)
        object.__setattr__(self, "_support", support)
        object.__setattr__(self, "_cdf", cdf)

    @property
    def mean(self) -> float:
        return float(np.sum(self.lengths * self.probabilities))

    @property
    def support(self):
        return int(self.lengths[0]), int(self.lengths[-1])

    def sample(self, rng: np.random.Generator) -> int:
        """Draw one episode length: the first length whose cumulative probability reaches a uniform draw."""
        idx = int(np.searchsorted(self._cdf, rng.random(), side="left"))
        return int(self.lengths[self._support[idx]])

    @classmethod
    def from_weights(cls, lengths: Sequence[int], weights: Sequence[float]) -> "EpisodeDurationDistribution":
        """Caller-supplied distribution (e.g. atrial tachycardia); weights are normalized."""
        order = np.argsort(np.asarray(lengths))
        return cls(np.asarray(lengths)[order], np.asarray(weights, dtype=float)[order])


def _exponential_pmf(support: np.ndarray, decay_rate: float) -> np.ndarray:
    # shifted exponent keeps the largest term at exp(0) for either sign of the rate
    exponent = -decay_rate * (support - (support[0] if decay_rate >= 0 else support[-1]))
    pmf = np.exp(exponent)
    return pmf / pmf.sum()


def calibrate_episode_distribution(target_mean: float, lo: int, hi: int) -> EpisodeDurationDistribution:
    """
    Build an exponential-decay PMF over episode lengths [lo, hi] whose mean matches target_mean.

    Truncating exp(-b*k) to a finite support and renormalizing moves its mean away
    from 1/b, so the auxiliary target d' is corrected by the realized error until
    the realized mean is within tolerance.

    Args:
        target_mean: Desired mean episode length in beats (clamped to >= 1)
        lo: Shortest supported episode
        hi: Longest supported episode

    Returns:
        Calibrated EpisodeDurationDistribution

    Raises:
        InvalidParameter: if the support is empty, the target cannot be reached
            within the support, or the correction does not converge
    """
    if lo < 1 or hi < lo:
        raise InvalidParameter(f"invalid episode support [{lo}, {hi}]")
    if not math.isfinite(target_mean):
        raise InvalidParameter(f"mean episode duration must be finite, got {target_mean}")
    target = max(float(target_mean), 1.0)
    support = np.arange(lo, hi + 1)

    # Episodes can not be shorter than the support floor: degenerate to its point mass
    if target <= lo + CALIBRATION_TOLERANCE_BEATS:
        if target < lo:
            logger.debug(f"Mean duration {target:.2f} below support floor {lo}; using fixed {lo}-beat episodes")
        probabilities = np.zeros(support.size)
        probabilities[0] = 1.0
        return EpisodeDurationDistribution(support, probabilities, decay_rate=math.inf)
    if target >= (lo + hi) / 2.0:
        # a decaying PMF on [lo, hi] can not reach the midpoint of its support
        raise InvalidParameter(
            f"mean episode duration {target:.2f} not reachable with episodes in [{lo}, {hi}]"
        )

    aux_target = target
    decay_rate = 1.0 / aux_target
    pmf = _exponential_pmf(support, decay_rate)
    realized = float(np.sum(support * pmf))
    iterations = 0
    while abs(realized - target) > CALIBRATION_TOLERANCE_BEATS:
        iterations += 1
        aux_target += target - realized
        if iterations > CALIBRATION_MAX_ITERATIONS or aux_target <= 0:
            raise InvalidParameter(
                f"episode duration calibration did not converge (target {target:.2f}, support [{lo}, {hi}])"
            )
        decay_rate = 1.0 / aux_target
        pmf = _exponential_pmf(support, decay_rate)
        realized = float(np.sum(support * pmf))

    logger.debug(f"Calibrated episode distribution on [{lo}, {hi}]: target {target:.2f}, "
                 f"realized {realized:.3f}, b={decay_rate:.5f} after {iterations} corrections")
    return EpisodeDurationDistribution(support, pmf, decay_rate=decay_rate)
