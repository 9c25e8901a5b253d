"""
Pytest configuration and shared fixtures for rhythm simulator tests.
"""
import pytest
import numpy as np
from typing import Sequence

from rhythm_simulator.api_models import ArrhythmiaParams
from rhythm_simulator.context import SimulationContext
from rhythm_simulator.rr_sources import RRIntervalPool


class ScriptedRR:
    """RR source replaying fixed values, then repeating the last one."""

    def __init__(self, values: Sequence[float], is_synthetic: bool = True, fixed_heart_rate_bpm=None):
        self.values = list(values)
        self.is_synthetic = is_synthetic
        self.fixed_heart_rate_bpm = fixed_heart_rate_bpm
        self._position = 0

    def generate(self, num_beats):
        out = []
        for _ in range(num_beats):
            idx = min(self._position, len(self.values) - 1)
            out.append(self.values[idx])
            self._position += 1
        return np.asarray(out)


class UpperEdgeRng:
    """Uniform generator stub that always returns the largest float below 1."""

    def random(self):
        return float(np.nextafter(1.0, 0.0))


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def upper_edge_rng():
    return UpperEdgeRng()


@pytest.fixture
def make_pool():
    """Factory for RR pools backed by scripted intervals."""
    def _make(values, is_synthetic=True, fixed_heart_rate_bpm=None, name="scripted"):
        source = ScriptedRR(values, is_synthetic=is_synthetic, fixed_heart_rate_bpm=fixed_heart_rate_bpm)
        return RRIntervalPool(source, len(values), name)
    return _make


@pytest.fixture
def make_context(rng, make_pool):
    """Factory for a simulation context over a constant 0.8 s sinus pool."""
    def _make(sinus_values=None, af_values=None, af_synthetic=True, signal_length_ms=600_000):
        sinus_pool = make_pool(sinus_values or [0.8] * 20, name="sinus")
        af_pool = make_pool(af_values, is_synthetic=af_synthetic, name="af") if af_values else None
        return SimulationContext(rng=rng, signal_length_ms=signal_length_ms,
                                 sinus_pool=sinus_pool, af_pool=af_pool)
    return _make


@pytest.fixture
def sinus_only_params():
    """Whole record in sinus rhythm."""
    return ArrhythmiaParams(duration_sec=60.0, heart_rate_bpm=60, seed=7)


@pytest.fixture
def af_only_params():
    """Whole record in atrial fibrillation."""
    return ArrhythmiaParams(duration_sec=120.0, af_burden=1.0, seed=11)


@pytest.fixture
def vpb_only_params():
    """Sinus rhythm with isolated ventricular premature beats."""
    return ArrhythmiaParams(duration_sec=300.0, vpb_burden=0.1, seed=3)


@pytest.fixture
def mixed_params():
    """Paroxysmal AF, atrial tachycardia, bigeminy/trigeminy and VPBs in one record."""
    return ArrhythmiaParams(
        duration_sec=300.0,
        heart_rate_bpm=70,
        af_burden=0.2,
        at_burden=0.1,
        bt_burden=0.1,
        vpb_burden=0.05,
        af_mean_duration_beats=40,
        bt_mean_duration_beats=12,
        vpbs_in_at=True,
        vpbs_in_af=True,
        seed=42,
    )


@pytest.fixture
def tolerance_config():
    """Standard tolerance values for numerical comparisons."""
    return {
        'row_sum_tolerance': 1e-9,
        'calibration_tolerance_beats': 0.01,
        'rr_tolerance_sec': 1e-9,
        'rate_tolerance_fraction': 0.05,
    }
