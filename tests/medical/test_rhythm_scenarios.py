"""
Tests for generated rhythms in single-arrhythmia records.
Validates sinus, AF, VPB, bigeminy and trigeminy records against their expected beat patterns.
"""
import pytest
import numpy as np

from rhythm_simulator.api_models import ArrhythmiaParams
from rhythm_simulator.beat_synthesis import BeatSynthesizer
from rhythm_simulator.constants import (
    AF_MAX_RR_SEC, DEFAULT_AT_EPISODE_LENGTHS, DEFAULT_AT_EPISODE_PROBABILITIES,
    BeatLabel, RhythmCode, RhythmState, TargetBeat, seconds_to_ms
)
from rhythm_simulator.episode_distributions import (
    EpisodeDurationDistribution,
    calibrate_episode_distribution
)
from rhythm_simulator.rhythm_logic import RhythmStateMachine, simulate_rhythm
from rhythm_simulator.transition_matrix import build_transition_matrix, normalize_burdens


def _rhythm_codes(result):
    return [e.rhythm for e in result.annotations if e.is_rhythm_change]


def _labels(result):
    return [beat.label for beat in result.beats]


class TestSinusRhythm:
    """Records without any arrhythmia."""

    @pytest.mark.medical
    def test_sinus_only_record(self, sinus_only_params):
        result = simulate_rhythm(sinus_only_params)

        assert np.all(result.state_history == RhythmState.SINUS_RHYTHM)
        assert np.all(result.target_beats == TargetBeat.NORMAL)
        assert _rhythm_codes(result) == [RhythmCode.SINUS]
        assert abs(len(result) - 60) <= 5
        assert result.beat_times_ms[-1] <= 60_000

    @pytest.mark.medical
    def test_beat_times_accumulate_rounded_intervals(self, sinus_only_params):
        result = simulate_rhythm(sinus_only_params)
        expected = np.cumsum([seconds_to_ms(rr) for rr in result.rr])
        assert np.array_equal(result.beat_times_ms, expected)

    @pytest.mark.medical
    def test_rhythm_onset_marked_mid_interval(self, sinus_only_params):
        result = simulate_rhythm(sinus_only_params)
        onset = result.annotations[0]
        assert onset.beat == BeatLabel.RHYTHM_ONSET_MARKER
        assert onset.time_ms == seconds_to_ms(result.rr[0] / 2.0)
        assert result.annotations[1].time_ms == result.beat_times_ms[0]

    @pytest.mark.medical
    def test_recorded_sinus_intervals_replayed(self):
        recording = [0.8, 0.85, 0.9, 0.95] * 10
        result = simulate_rhythm(duration_sec=60.0, use_real_rr=True,
                                 recorded_sinus_rr_sec=recording, seed=21)
        assert set(np.round(result.rr, 6)) <= {0.8, 0.85, 0.9, 0.95}
        assert 60.0 / 0.95 <= result.mean_heart_rate_bpm <= 60.0 / 0.8


class TestAtrialFibrillation:
    """Records entirely in atrial fibrillation."""

    @pytest.mark.medical
    def test_fibrillation_only_record(self, af_only_params):
        result = simulate_rhythm(af_only_params)

        assert np.all(result.state_history == RhythmState.ATRIAL_FIBRILLATION)
        assert np.all(result.target_beats == TargetBeat.FIBRILLATION)
        assert _rhythm_codes(result) == [RhythmCode.ATRIAL_FIBRILLATION]
        assert result.rr.max() <= AF_MAX_RR_SEC
        assert result.rhythm_burdens()[RhythmState.ATRIAL_FIBRILLATION] == pytest.approx(1.0)

    @pytest.mark.medical
    def test_ventricular_response_is_irregular(self, af_only_params):
        result = simulate_rhythm(af_only_params)
        rr = result.rr
        assert np.std(rr) / np.mean(rr) > 0.1
        # successive differences of an irregular response are large compared to sinus rhythm
        assert np.mean(np.abs(np.diff(rr))) > 0.05

    @pytest.mark.medical
    def test_recorded_fibrillation_intervals_used_unfiltered(self):
        result = simulate_rhythm(duration_sec=60.0, af_burden=1.0, use_real_rr=True,
                                 recorded_sinus_rr_sec=[1.0, 1.1],
                                 recorded_af_rr_sec=[0.5, 2.5, 0.6], seed=4)
        assert set(np.round(result.rr, 6)) <= {0.5, 2.5, 0.6}
        assert 2.5 in np.round(result.rr, 6)


class TestVentricularPrematureBeats:
    """Sinus rhythm interrupted by isolated VPBs."""

    @pytest.mark.medical
    def test_vpbs_never_consecutive(self, vpb_only_params):
        result = simulate_rhythm(vpb_only_params)
        states = result.state_history
        vpb = states == RhythmState.VPB_IN_SINUS

        assert vpb.any()
        assert not np.any(vpb[1:] & vpb[:-1])
        assert np.all(result.target_beats[vpb] == TargetBeat.VENTRICULAR_ECTOPIC)
        assert all(result.beats[i].label == BeatLabel.VENTRICULAR_ECTOPIC for i in np.flatnonzero(vpb))
        assert 0.05 < vpb.mean() < 0.2

    @pytest.mark.medical
    def test_isolated_vpbs_do_not_change_rhythm(self, vpb_only_params):
        result = simulate_rhythm(vpb_only_params)
        assert _rhythm_codes(result) == [RhythmCode.SINUS]

    @pytest.mark.medical
    def test_vpbs_are_premature(self):
        result = simulate_rhythm(duration_sec=300.0, vpb_burden=0.1, heart_rate_std_bpm=0.0, seed=8)
        vpb = result.state_history == RhythmState.VPB_IN_SINUS
        # constant 1 s sinus cycle: every VPB arrives early
        assert np.all(result.rr[vpb] < 0.91)
        assert np.all(result.rr[vpb] >= 0.45 - 1e-9)


class TestBigeminyTrigeminy:
    """Forced bigeminy and trigeminy records."""

    @staticmethod
    def _forced(bigeminy_probability):
        return ArrhythmiaParams(duration_sec=60.0, bt_burden=1.0, bt_mean_duration_beats=2,
                                bigeminy_probability=bigeminy_probability,
                                heart_rate_std_bpm=0.0, seed=17)

    @pytest.mark.medical
    def test_bigeminy_pattern(self):
        result = simulate_rhythm(self._forced(1.0))
        labels = _labels(result)

        assert labels[:8] == [BeatLabel.NORMAL, BeatLabel.VENTRICULAR_ECTOPIC] * 4
        assert all(labels[i] != labels[i + 1] for i in range(len(labels) - 1))
        assert _rhythm_codes(result) == [RhythmCode.BIGEMINY]
        assert np.all(result.state_history == RhythmState.BIGEMINY_TRIGEMINY)

    @pytest.mark.medical
    def test_bigeminy_compensatory_pause(self):
        result = simulate_rhythm(self._forced(1.0))
        rr = result.rr
        ectopic = [i for i, beat in enumerate(result.beats) if beat.label == BeatLabel.VENTRICULAR_ECTOPIC]
        for i in ectopic:
            assert 0.55 - 1e-9 <= rr[i] <= 0.80 + 1e-9
            if i + 1 < len(rr):
                assert rr[i] + rr[i + 1] == pytest.approx(2.0)

    @pytest.mark.medical
    def test_trigeminy_pattern(self):
        result = simulate_rhythm(self._forced(0.0))
        labels = _labels(result)
        pattern = [BeatLabel.NORMAL, BeatLabel.NORMAL, BeatLabel.VENTRICULAR_ECTOPIC]

        assert labels[:9] == pattern * 3
        assert all(labels[i:i + 3] == pattern[:len(labels[i:i + 3])] for i in range(0, len(labels), 3))
        assert _rhythm_codes(result) == [RhythmCode.TRIGEMINY]

    @pytest.mark.medical
    def test_short_bigeminy_episode_padded(self, make_context):
        """A requested mean below the minimum gives exactly four-beat episodes."""
        model = build_transition_matrix(
            normalize_burdens(0.0, 0.0, 1.0, 0.0), 60.0, 1.0,
            af_mean_duration=60.0, at_mean_duration=2.0, bt_mean_duration=2.0,
            vpb_subtype_probabilities=[0.6, 0.3, 0.1])
        machine = RhythmStateMachine(
            model,
            BeatSynthesizer([0.25] * 4, [0.6, 0.3, 0.1]),
            sinus_durations=calibrate_episode_distribution(1.0, 1, 300),
            at_durations=EpisodeDurationDistribution.from_weights(DEFAULT_AT_EPISODE_LENGTHS,
                                                                  DEFAULT_AT_EPISODE_PROBABILITIES),
            bt_durations=calibrate_episode_distribution(2.0, 4, 80),
            bigeminy_probability=1.0,
        )
        ctx = make_context()

        state = machine.step(ctx)

        assert state == RhythmState.BIGEMINY_TRIGEMINY
        assert ctx.num_beats == 4
        assert [beat.label for beat in ctx.beats] == [BeatLabel.NORMAL, BeatLabel.VENTRICULAR_ECTOPIC] * 2


def _episode_machine(burdens, at_durations=None, bt_durations=None, bigeminy_probability=0.5):
    model = build_transition_matrix(
        burdens, 60.0, 1.0,
        af_mean_duration=60.0, at_mean_duration=2.0, bt_mean_duration=2.0,
        vpb_subtype_probabilities=[0.6, 0.3, 0.1])
    return RhythmStateMachine(
        model,
        BeatSynthesizer([0.25] * 4, [0.6, 0.3, 0.1]),
        sinus_durations=calibrate_episode_distribution(1.0, 1, 300),
        at_durations=at_durations or EpisodeDurationDistribution.from_weights(
            DEFAULT_AT_EPISODE_LENGTHS, DEFAULT_AT_EPISODE_PROBABILITIES),
        bt_durations=bt_durations or calibrate_episode_distribution(2.0, 4, 80),
        bigeminy_probability=bigeminy_probability,
    )


class TestEpisodeLengthParity:
    """Odd bigeminy/trigeminy episode lengths are corrected to whole coupling cycles."""

    BT_ONLY = normalize_burdens(0.0, 0.0, 1.0, 0.0)

    @pytest.mark.medical
    @pytest.mark.parametrize("requested, allowed", [(5, {4, 6}), (7, {6, 8})])
    def test_bigeminy_rounds_to_neighbouring_even_length(self, make_context, requested, allowed):
        machine = _episode_machine(
            self.BT_ONLY, bt_durations=EpisodeDurationDistribution.from_weights([requested], [1.0]),
            bigeminy_probability=1.0)
        lengths = []
        for _ in range(40):
            ctx = make_context()
            machine.step(ctx)
            lengths.append(ctx.num_beats)

        assert set(lengths) == allowed
        assert all(n % 2 == 0 for n in lengths)

    @pytest.mark.medical
    @pytest.mark.parametrize("requested, expected", [(5, 6), (7, 6), (8, 9), (10, 9)])
    def test_trigeminy_rounds_to_multiple_of_three(self, make_context, requested, expected):
        machine = _episode_machine(
            self.BT_ONLY, bt_durations=EpisodeDurationDistribution.from_weights([requested], [1.0]),
            bigeminy_probability=0.0)
        ctx = make_context()

        machine.step(ctx)

        assert ctx.num_beats == expected
        assert ctx.num_beats % 3 == 0

    @pytest.mark.medical
    def test_short_trigeminy_episode_padded(self, make_context):
        machine = _episode_machine(
            self.BT_ONLY, bt_durations=EpisodeDurationDistribution.from_weights([4], [1.0]),
            bigeminy_probability=0.0)
        ctx = make_context()

        machine.step(ctx)

        pattern = [BeatLabel.NORMAL, BeatLabel.NORMAL, BeatLabel.VENTRICULAR_ECTOPIC]
        assert ctx.num_beats == 6
        assert [beat.label for beat in ctx.beats] == pattern * 2


class TestBackToBackTachycardia:
    """Consecutive atrial tachycardia episodes skip the sinus slot delayed by the previous onset."""

    AT_ONLY = normalize_burdens(0.0, 1.0, 0.0, 0.0)
    SKIPPED_SLOT_RR = 1.9

    def _sinus_values(self):
        values = [0.8] * 20
        values[3] = self.SKIPPED_SLOT_RR
        return values

    @pytest.mark.medical
    def test_second_episode_skips_one_slot(self, make_context):
        machine = _episode_machine(
            self.AT_ONLY, at_durations=EpisodeDurationDistribution.from_weights([3], [1.0]))
        ctx = make_context(sinus_values=self._sinus_values())

        assert machine.step(ctx) == RhythmState.ATRIAL_TACHYCARDIA
        assert ctx.sinus_index == 3
        assert machine.step(ctx) == RhythmState.ATRIAL_TACHYCARDIA
        assert ctx.sinus_index == 3 + 1 + 3

    @pytest.mark.medical
    def test_skipped_slot_never_reaches_output(self, make_context):
        machine = _episode_machine(
            self.AT_ONLY, at_durations=EpisodeDurationDistribution.from_weights([3], [1.0]))
        ctx = make_context(sinus_values=self._sinus_values())

        machine.step(ctx)
        machine.step(ctx)

        rr = [beat.rr_sec for beat in ctx.beats]
        assert len(rr) == 6
        # an onset built on the 1.9 s slot would be at least 1.9 * 0.55 s long
        assert max(rr) < self.SKIPPED_SLOT_RR * 0.55
        assert all(beat.label == BeatLabel.ATRIAL_ECTOPIC for beat in ctx.beats)

    @pytest.mark.medical
    def test_first_episode_does_not_skip(self, make_context):
        machine = _episode_machine(
            self.AT_ONLY, at_durations=EpisodeDurationDistribution.from_weights([1], [1.0]))
        ctx = make_context()

        machine.step(ctx)

        assert ctx.sinus_index == 1


class TestTransitionDraws:

    @pytest.mark.medical
    def test_zero_probability_transition_never_taken(self, make_context, upper_edge_rng):
        machine = _episode_machine(normalize_burdens(0.0, 0.0, 0.0, 0.0))
        ctx = make_context()
        ctx.previous_state = RhythmState.SINUS_RHYTHM
        ctx.rng = upper_edge_rng

        assert machine.next_state(ctx) == RhythmState.SINUS_RHYTHM
