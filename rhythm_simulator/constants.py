# --- Rhythm Generation Constants ---
from enum import Enum, IntEnum
from typing import Dict, Tuple

FS = 1000  # annotation clock, samples per second
MS_PER_SEC = 1000
MIN_RR_INTERVAL_SEC = 0.200  # refractory floor for any generated or pause-adjusted RR

# --- Markov Chain States ---
class RhythmState(IntEnum):
    SINUS_RHYTHM = 1
    ATRIAL_FIBRILLATION = 2
    ATRIAL_TACHYCARDIA = 3
    BIGEMINY_TRIGEMINY = 4
    VPB_IN_SINUS = 5
    VPB_IN_TACHYCARDIA = 6
    VPB_IN_FIBRILLATION = 7

    @property
    def index(self) -> int:
        """Row/column of this state in the transition matrix."""
        return self.value - 1

    @property
    def is_isolated_vpb(self) -> bool:
        return self in (RhythmState.VPB_IN_SINUS, RhythmState.VPB_IN_TACHYCARDIA, RhythmState.VPB_IN_FIBRILLATION)


NUM_STATES = len(RhythmState)

# Parent rhythm of each isolated-VPB sub-state
VPB_PARENT_STATE: Dict[RhythmState, RhythmState] = {
    RhythmState.VPB_IN_SINUS: RhythmState.SINUS_RHYTHM,
    RhythmState.VPB_IN_TACHYCARDIA: RhythmState.ATRIAL_TACHYCARDIA,
    RhythmState.VPB_IN_FIBRILLATION: RhythmState.ATRIAL_FIBRILLATION,
}

# --- Beat Labels ---
class BeatLabel(Enum):
    NORMAL = "N"
    ATRIAL_ECTOPIC = "A"
    VENTRICULAR_ECTOPIC = "V"
    RHYTHM_ONSET_MARKER = "+"  # always the last beat code

    @property
    def code(self) -> str:
        return self.value


class TargetBeat(IntEnum):
    """Beat classes handed to the waveform synthesizers."""
    NORMAL = 1
    FIBRILLATION = 2
    ATRIAL_ECTOPIC = 3
    VENTRICULAR_ECTOPIC = 4


class RhythmCode(Enum):
    SINUS = "(N"
    ATRIAL_FIBRILLATION = "(AFIB"
    SUPRAVENTRICULAR_TACHYARRHYTHMIA = "(SVTA"
    BIGEMINY = "(B"
    TRIGEMINY = "(T"


# --- Ectopic Beat Subtypes ---
class ApbSubtype(IntEnum):
    SINUS_RESET = 1
    DELAYED_RESET = 2
    FULL_COMPENSATORY = 3
    INTERPOLATED = 4


class VpbSubtype(IntEnum):
    FULL_COMPENSATORY = 1
    NON_COMPENSATORY = 2
    INTERPOLATED = 3


# Prematurity factor ranges, applied to the current sinus RR
APB_PREMATURITY_RANGES: Dict[ApbSubtype, Tuple[float, float]] = {
    ApbSubtype.SINUS_RESET: (0.55, 0.95),
    ApbSubtype.DELAYED_RESET: (0.55, 0.95),
    ApbSubtype.FULL_COMPENSATORY: (0.55, 0.95),
    ApbSubtype.INTERPOLATED: (0.45, 0.55),
}
APB_DELAYED_RESET_FACTOR_RANGE = (1.10, 1.35)

VPB_PREMATURITY_RANGES: Dict[VpbSubtype, Tuple[float, float]] = {
    VpbSubtype.FULL_COMPENSATORY: (0.55, 0.90),
    VpbSubtype.NON_COMPENSATORY: (0.55, 0.90),
    VpbSubtype.INTERPOLATED: (0.45, 0.55),
}
# Relative length of an isolated VPB "episode" within sinus rhythm, per subtype
VPB_SUBTYPE_EPISODE_WEIGHTS: Dict[VpbSubtype, float] = {
    VpbSubtype.FULL_COMPENSATORY: 1.0,
    VpbSubtype.NON_COMPENSATORY: 0.725,
    VpbSubtype.INTERPOLATED: 0.6,
}

# --- Atrial Tachycardia ---
AT_RATE_MULTIPLIER_RANGE = (1.1, 2.0)
AT_RATE_LIMITS_BPM = (100.0, 200.0)
AT_MAX_RATE_DRAWS = 10
AT_ONSET_PREMATURITY_RANGE = (0.55, 0.95)
AT_ONSET_DELAY_FACTOR_RANGE = (0.7, 1.5)
AT_RR_VARIABILITY = 0.05  # relative beat-to-beat spread during a sustained episode

# --- Bigeminy / Trigeminy ---
BT_BASE_PREMATURITY_RANGE = (0.60, 0.75)
BT_PREMATURITY_JITTER = 0.05
BIGEMINY_MIN_BEATS = 4
TRIGEMINY_MIN_BEATS = 6

# --- Atrial Fibrillation ---
AF_MEAN_RR_SEC = 0.765
AF_MAX_RR_SEC = 1.8
FIBRILLATION_FREQUENCY_RANGE_HZ = (4.0, 9.0)

# --- Burden & Episode Length Policy ---
VPB_BURDEN_CAP = 0.9
VPB_SUB_BURDEN_SHARE = 0.5  # max share of the parent rhythm's episodes that may host a VPB
CALIBRATION_TOLERANCE_BEATS = 0.01
CALIBRATION_MAX_ITERATIONS = 10000
AF_EPISODE_SUPPORT = (5, 800)
BT_EPISODE_SUPPORT = (4, 80)
SINUS_POOL_BEATS_PER_SEC = 5  # also the upper bound of the SR episode support
AF_POOL_BEATS_PER_SEC = 2.5
POOL_EXTENSION_ATTEMPTS = 3  # consecutive empty chunks tolerated before a source is rejected

# --- Default Atrial Tachycardia Episode Lengths (beats) ---
DEFAULT_AT_EPISODE_LENGTHS = (1, 3, 5, 8, 12, 20, 40)
DEFAULT_AT_EPISODE_PROBABILITIES = (0.55, 0.15, 0.10, 0.08, 0.06, 0.04, 0.02)

# --- Sinus RR Process (ECGSYN bimodal spectrum) ---
SINUS_RR_PARAMS = {
    "lf_center_hz": 0.1, "hf_center_hz": 0.25,   # Mayer waves, respiratory sinus arrhythmia
    "lf_std_hz": 0.01, "hf_std_hz": 0.01,
    "sampling_rate_hz": 1.0,
}

# --- AV Node Model (AF ventricular response) ---
AV_NODE_PARAMS = {
    "refractory_min_sec": 0.25,
    "refractory_range_sec": 0.30,
    "recovery_time_constant_sec": 0.45,
    "concealed_prolongation_sec": 0.04,
    "concealed_conduction_probability": 0.5,
    "refractory_jitter_sec": 0.03,
}


def mean_rr_from_heart_rate(heart_rate_bpm: float) -> float:
    """
    Mean RR interval for a heart rate.

    Args:
        heart_rate_bpm: Heart rate in beats per minute

    Returns:
        RR interval in seconds
    """
    if heart_rate_bpm <= 0:
        raise ValueError(f"heart rate must be positive, got {heart_rate_bpm}")
    return 60.0 / heart_rate_bpm


def seconds_to_ms(interval_sec: float) -> int:
    """Round an interval to whole milliseconds, halves away from zero."""
    value = interval_sec * MS_PER_SEC
    if value >= 0:
        return int(value + 0.5)
    return -int(-value + 0.5)
