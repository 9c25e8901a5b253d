# rhythm_simulator/api_models.py
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from .constants import DEFAULT_AT_EPISODE_LENGTHS, DEFAULT_AT_EPISODE_PROBABILITIES


def _normalized(values: List[float], expected: int, name: str) -> List[float]:
    if len(values) != expected:
        raise ValueError(f"{name} needs exactly {expected} probabilities, got {len(values)}")
    if any(v < 0 for v in values):
        raise ValueError(f"{name} probabilities must be non-negative")
    total = sum(values)
    if total <= 0:
        raise ValueError(f"{name} probabilities must not all be zero")
    return [v / total for v in values]


class ArrhythmiaParams(BaseModel):
    duration_sec: float = Field(60.0, gt=0, description="Requested signal length in seconds.")
    seed: Optional[int] = Field(None, ge=0, description="Seed for a reproducible run.")

    # Sinus rhythm RR generator
    heart_rate_bpm: float = Field(60.0, ge=30, le=200, description="Mean sinus heart rate.")
    heart_rate_std_bpm: float = Field(1.0, ge=0, le=20, description="Standard deviation of the sinus heart rate.")
    lf_hf_ratio: float = Field(0.5, gt=0, le=10, description="Mayer wave to respiratory sinus arrhythmia power ratio.")

    # Rhythm burdens (fraction of the record); rescaled when their sum exceeds 1
    af_burden: float = Field(0.0, ge=0.0, le=1.0)
    at_burden: float = Field(0.0, ge=0.0, le=1.0)
    bt_burden: float = Field(0.0, ge=0.0, le=1.0, description="Bigeminy/trigeminy burden.")
    vpb_burden: float = Field(0.0, ge=0.0, le=1.0, description="Isolated VPB burden, capped at 0.9.")

    # Episode durations (beats), clamped to a minimum of 1
    af_mean_duration_beats: float = Field(60.0, gt=0)
    bt_mean_duration_beats: float = Field(10.0, gt=0)
    bigeminy_probability: float = Field(0.5, ge=0.0, le=1.0, description="Chance a BT episode is bigeminy rather than trigeminy.")
    at_episode_lengths: List[int] = Field(default_factory=lambda: list(DEFAULT_AT_EPISODE_LENGTHS))
    at_episode_probabilities: List[float] = Field(default_factory=lambda: list(DEFAULT_AT_EPISODE_PROBABILITIES))

    # Ectopic beat subtypes
    apb_subtype_probabilities: List[float] = Field(
        default_factory=lambda: [0.25, 0.25, 0.25, 0.25],
        description="Sinus reset, delayed reset, full compensatory pause, interpolated.")
    vpb_subtype_probabilities: List[float] = Field(
        default_factory=lambda: [0.6, 0.3, 0.1],
        description="Full compensatory pause, non-compensatory pause, interpolated.")
    vpbs_in_at: bool = Field(False, description="Allow isolated VPBs during atrial tachycardia.")
    vpbs_in_af: bool = Field(False, description="Allow isolated VPBs during atrial fibrillation.")

    # AF ventricular response
    fibrillation_frequency_hz: Optional[float] = Field(None, ge=3.0, le=12.0, description="Drawn from 4-9 Hz if unset.")

    # Recorded RR series in place of the synthetic sinus / AF generators
    use_real_rr: bool = Field(False)
    recorded_sinus_rr_sec: Optional[List[float]] = None
    recorded_af_rr_sec: Optional[List[float]] = None

    @field_validator("apb_subtype_probabilities")
    @classmethod
    def _normalize_apb(cls, v: List[float]) -> List[float]:
        return _normalized(v, 4, "atrial ectopic subtype")

    @field_validator("vpb_subtype_probabilities")
    @classmethod
    def _normalize_vpb(cls, v: List[float]) -> List[float]:
        return _normalized(v, 3, "ventricular ectopic subtype")

    @field_validator("recorded_sinus_rr_sec", "recorded_af_rr_sec")
    @classmethod
    def _check_recording(cls, v: Optional[List[float]]) -> Optional[List[float]]:
        if v is not None and (len(v) == 0 or any(rr <= 0 for rr in v)):
            raise ValueError("recorded RR intervals must be a non-empty list of positive values")
        return v

    @model_validator(mode="after")
    def _check_episode_lengths(self):
        if len(self.at_episode_lengths) != len(self.at_episode_probabilities):
            raise ValueError("at_episode_lengths and at_episode_probabilities must have equal length")
        if not self.at_episode_lengths:
            raise ValueError("at least one atrial tachycardia episode length is required")
        if any(length < 1 for length in self.at_episode_lengths):
            raise ValueError("atrial tachycardia episode lengths must be positive")
        if any(p < 0 for p in self.at_episode_probabilities) or sum(self.at_episode_probabilities) <= 0:
            raise ValueError("atrial tachycardia episode probabilities must be non-negative with a positive sum")
        if self.use_real_rr and self.recorded_sinus_rr_sec is None:
            raise ValueError("use_real_rr requires recorded_sinus_rr_sec")
        if self.use_real_rr and self.af_burden > 0 and self.recorded_af_rr_sec is None:
            raise ValueError("use_real_rr with AF burden requires recorded_af_rr_sec")
        return self

    @property
    def at_mean_duration_beats(self) -> float:
        total = sum(self.at_episode_probabilities)
        return sum(l * p for l, p in zip(self.at_episode_lengths, self.at_episode_probabilities)) / total

    def burdens(self) -> Tuple[float, float, float, float]:
        return self.af_burden, self.at_burden, self.bt_burden, self.vpb_burden


class AnnotationModel(BaseModel):
    time_ms: int
    beat_code: str
    rhythm_code: Optional[str] = None


class RhythmSimulationResponse(BaseModel):
    rr_intervals_sec: List[float]
    target_beats: List[int]
    state_history: List[int]
    beat_times_ms: List[int]
    annotations: List[AnnotationModel]
    mean_heart_rate_bpm: float
    transition_matrix: List[List[float]]
    rhythm_burdens: dict
