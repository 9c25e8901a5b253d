# rhythm_simulator/transition_matrix.py
import logging
from dataclasses import dataclass, field
from typing import Dict, Sequence

import numpy as np

from .constants import (
    AF_MEAN_RR_SEC, NUM_STATES, VPB_BURDEN_CAP, VPB_SUB_BURDEN_SHARE,
    VPB_SUBTYPE_EPISODE_WEIGHTS, RhythmState, VpbSubtype
)
from .exceptions import InvalidParameter

logger = logging.getLogger(__name__)

ROW_SUM_TOLERANCE = 1e-9


@dataclass(frozen=True)
class RhythmBurdens:
    """Fractions of total recording time per rhythm, after capping and normalization."""
    af: float
    at: float
    bt: float
    vpb: float

    @property
    def total(self) -> float:
        return self.af + self.at + self.bt + self.vpb

    @property
    def sinus(self) -> float:
        residual = 1.0 - self.total
        return residual if residual > 1e-12 else 0.0


@dataclass
class MarkovChainModel:
    """Transition matrix plus the derived quantities needed to drive and check the chain."""
    matrix: np.ndarray
    initial_state: RhythmState
    burdens: RhythmBurdens
    vpb_sub_burdens: Dict[RhythmState, float]
    sinus_episode_count: float
    sinus_mean_duration: float
    episode_counts: Dict[str, float] = field(default_factory=dict)

    def row(self, state: RhythmState) -> np.ndarray:
        return self.matrix[state.index]

    def probability(self, origin: RhythmState, destination: RhythmState) -> float:
        return float(self.matrix[origin.index, destination.index])


def normalize_burdens(af: float, at: float, bt: float, vpb: float) -> RhythmBurdens:
    """
    Cap the VPB burden at 0.9 and rescale all burdens when they exceed the whole record.

    Rescaling is intended clamping, not an error: the requested proportions are
    kept and the total becomes exactly 1.
    """
    for name, value in (("af", af), ("at", at), ("bt", bt), ("vpb", vpb)):
        if not 0.0 <= value <= 1.0:
            raise InvalidParameter(f"{name} burden must be within [0, 1], got {value}")
    if vpb > VPB_BURDEN_CAP:
        logger.warning(f"VPB burden {vpb:.3f} capped at {VPB_BURDEN_CAP}")
        vpb = VPB_BURDEN_CAP
    total = af + at + bt + vpb
    if total > 1.0:
        logger.warning(f"Total arrhythmia burden {total:.3f} exceeds 1; rescaling proportionally")
        af, at, bt, vpb = af / total, at / total, bt / total, vpb / total
    return RhythmBurdens(af=af, at=at, bt=bt, vpb=vpb)


def vpb_episode_duration_in_sinus(vpb_subtype_probabilities: Sequence[float]) -> float:
    """Mean sinus-time taken by an isolated VPB, weighted over its subtypes."""
    p = np.asarray(vpb_subtype_probabilities, dtype=float)
    p = p / p.sum()
    return float(sum(p[subtype - 1] * weight for subtype, weight in VPB_SUBTYPE_EPISODE_WEIGHTS.items()))


def dominant_rhythm(burdens: RhythmBurdens) -> RhythmState:
    """
    Rhythm a sinus-free record starts (and stays) in.

    Ties resolve to the first listed of AF, AT, BT. With no AF/AT/BT burden at all
    the chain starts in sinus rhythm.
    """
    candidates = [(0.0, RhythmState.SINUS_RHYTHM),
                  (burdens.af, RhythmState.ATRIAL_FIBRILLATION),
                  (burdens.at, RhythmState.ATRIAL_TACHYCARDIA),
                  (burdens.bt, RhythmState.BIGEMINY_TRIGEMINY)]
    best_burden, best_state = candidates[0]
    for burden, state in candidates[1:]:
        if burden > best_burden:
            best_burden, best_state = burden, state
    tied = [state.name for burden, state in candidates[1:] if burden == best_burden and burden > 0]
    if len(tied) > 1:
        logger.warning(f"Sinus-free record with tied dominant rhythms {tied}; using {best_state.name}")
    return best_state


def build_transition_matrix(
    burdens: RhythmBurdens,
    signal_length_sec: float,
    mean_sinus_rr_sec: float,
    af_mean_duration: float,
    at_mean_duration: float,
    bt_mean_duration: float,
    vpb_subtype_probabilities: Sequence[float],
    vpbs_in_at: bool = False,
    vpbs_in_af: bool = False,
    af_mean_rr_sec: float = AF_MEAN_RR_SEC,
) -> MarkovChainModel:
    """
    Derive the 7-state Markov transition matrix from rhythm burdens and mean episode durations.

    The record length T is split into episodes: every non-sinus episode is entered
    from (and returns to) sinus rhythm, so the number of sinus episodes is the sum
    of the episode counts of the other branches. Transition probabilities out of
    sinus rhythm are each branch's share of that count.

    Args:
        burdens: Normalized rhythm burdens (see normalize_burdens)
        signal_length_sec: Record length T in seconds
        mean_sinus_rr_sec: Mean RR during sinus rhythm, also used for AT and BT
        af_mean_duration: Mean AF episode length in beats
        at_mean_duration: Mean AT episode length in beats
        bt_mean_duration: Mean bigeminy/trigeminy episode length in beats
        vpb_subtype_probabilities: Probabilities of the 3 isolated VPB subtypes
        vpbs_in_at: Allow isolated VPBs during atrial tachycardia
        vpbs_in_af: Allow isolated VPBs during atrial fibrillation
        af_mean_rr_sec: Mean RR during AF

    Returns:
        MarkovChainModel with a row-stochastic matrix (unreachable rows all zero)
    """
    if signal_length_sec <= 0:
        raise InvalidParameter(f"signal length must be positive, got {signal_length_sec}")
    if mean_sinus_rr_sec <= 0:
        raise InvalidParameter(f"mean sinus RR must be positive, got {mean_sinus_rr_sec}")
    if burdens.at > 0 and at_mean_duration <= 0:
        raise InvalidParameter("atrial tachycardia mean duration must be positive")

    T = signal_length_sec
    d_af = max(af_mean_duration, 1.0)
    d_bt = max(bt_mean_duration, 1.0)
    d_at = at_mean_duration
    rr_sr = rr_at = rr_bt = mean_sinus_rr_sec
    rr_af = af_mean_rr_sec
    d_vpb_sr = vpb_episode_duration_in_sinus(vpb_subtype_probabilities)
    d_vpb_at = d_vpb_af = 1.0

    b_sr = burdens.sinus
    scale_sum = burdens.at + burdens.af + b_sr
    vpb_scale = 1.0 / scale_sum if scale_sum > 0 else 0.0

    # VPB sub-burdens are capped so that at most half of the parent rhythm's episodes host a VPB
    b_vpb_at = 0.0
    if vpbs_in_at and burdens.at > 0:
        b_vpb_at = min(burdens.vpb * burdens.at * vpb_scale,
                       VPB_SUB_BURDEN_SHARE * burdens.at * d_vpb_at / d_at)
    b_vpb_af = 0.0
    if vpbs_in_af and burdens.af > 0:
        b_vpb_af = min(burdens.vpb * burdens.af * vpb_scale,
                       VPB_SUB_BURDEN_SHARE * burdens.af * d_vpb_af / d_af)
    b_vpb_sr = max(burdens.vpb - b_vpb_at - b_vpb_af, 0.0)

    n_at = (d_vpb_at * burdens.at * T - d_at * b_vpb_at * T) / (d_vpb_at * d_at * rr_at) if burdens.at > 0 else 0.0
    n_bt = burdens.bt * T / (d_bt * rr_bt)
    n_af = (d_vpb_af * burdens.af * T - d_af * b_vpb_af * T) / (d_vpb_af * d_af * rr_af)
    n_vpb = b_vpb_sr * T / (d_vpb_sr * rr_sr)
    n_sr = max(n_at + n_bt + n_af + n_vpb, 1.0)
    d_sr = max(T * b_sr / (n_sr * rr_sr), 1.0) if b_sr > 0 else 1.0

    M = np.zeros((NUM_STATES, NUM_STATES))
    SR, AF, AT, BT = (RhythmState.SINUS_RHYTHM, RhythmState.ATRIAL_FIBRILLATION,
                      RhythmState.ATRIAL_TACHYCARDIA, RhythmState.BIGEMINY_TRIGEMINY)
    VPB_SR, VPB_AT, VPB_AF = (RhythmState.VPB_IN_SINUS, RhythmState.VPB_IN_TACHYCARDIA,
                              RhythmState.VPB_IN_FIBRILLATION)

    def _set(origin: RhythmState, destination: RhythmState, p: float):
        M[origin.index, destination.index] = p

    if b_sr > 0 and b_vpb_sr > 0:
        _set(SR, VPB_SR, n_vpb / n_sr)
        _set(VPB_SR, SR, 1.0)
    if burdens.at > 0 and b_vpb_at > 0:
        _set(AT, VPB_AT, b_vpb_at * d_at / (burdens.at * d_vpb_at) if b_sr > 0 else 1.0)
        _set(VPB_AT, AT, 1.0)
    if burdens.af > 0 and b_vpb_af > 0:
        _set(AF, VPB_AF, b_vpb_af * d_af / (burdens.af * d_vpb_af) if b_sr > 0 else 1.0)
        _set(VPB_AF, AF, 1.0)

    if b_sr > 0:
        initial_state = SR
        _set(SR, AT, n_at / n_sr)
        _set(SR, AF, n_af / n_sr)
        _set(SR, BT, n_bt / n_sr)
        if burdens.at > 0:
            _set(AT, SR, 1.0 - M[AT.index, VPB_AT.index])
        if burdens.af > 0:
            _set(AF, SR, 1.0 - M[AF.index, VPB_AF.index])
        if burdens.bt > 0:
            _set(BT, SR, 1.0)
        # sinus episodes not followed by an arrhythmia are followed by more sinus rhythm
        residual = 1.0 - M[SR.index].sum()
        if residual > ROW_SUM_TOLERANCE:
            _set(SR, SR, residual)
    else:
        initial_state = dominant_rhythm(burdens)
        logger.warning(f"No sinus rhythm burden; record is generated in {initial_state.name} only")
        residual = 1.0 - M[initial_state.index].sum()
        if residual > ROW_SUM_TOLERANCE:
            _set(initial_state, initial_state, residual)

    # rows of states the chain can not reach carry no mass
    reachable = _reachable_states(M, initial_state)
    for state in RhythmState:
        if state not in reachable:
            M[state.index] = 0.0

    for state in RhythmState:
        row_sum = M[state.index].sum()
        if row_sum > 0 and abs(row_sum - 1.0) > ROW_SUM_TOLERANCE:
            raise InvalidParameter(
                f"transition probabilities out of {state.name} sum to {row_sum:.6f}; "
                f"burden/duration combination is outside the supported range"
            )
    if np.any(M < 0):
        raise InvalidParameter("negative transition probability; check burdens and mean durations")

    logger.debug(f"Transition matrix built: n_sr={n_sr:.2f}, d_sr={d_sr:.2f}, initial={initial_state.name}")
    return MarkovChainModel(
        matrix=M,
        initial_state=initial_state,
        burdens=burdens,
        vpb_sub_burdens={VPB_SR: b_vpb_sr, VPB_AT: b_vpb_at, VPB_AF: b_vpb_af},
        sinus_episode_count=n_sr,
        sinus_mean_duration=d_sr,
        episode_counts={"at": n_at, "bt": n_bt, "af": n_af, "vpb": n_vpb},
    )


def _reachable_states(matrix: np.ndarray, start: RhythmState):
    seen = {start}
    frontier = [start]
    while frontier:
        state = frontier.pop()
        for j in np.flatnonzero(matrix[state.index] > 0):
            nxt = RhythmState(int(j) + 1)
            if nxt not in seen:
                seen.add(nxt)
                frontier.append(nxt)
    return seen
