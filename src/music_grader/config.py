from dataclasses import dataclass, field
from typing import Optional

from .mg_types import MatchingTier

# Tolerance presets: pitch in cents, timing in ms
TOLERANCE_PRESETS = {
    "EASY":   {"pitch": 100, "timing": 200},
    "NORMAL": {"pitch": 50,  "timing": 100},
    "HARD":   {"pitch": 25,  "timing": 50},
    "CUSTOM": {"pitch": None, "timing": None},
}
DEFAULT_PRESET = "NORMAL"
CUSTOM_DEFAULTS = {"pitch": 50, "timing": 100}

# Share of a beat accepted as timing tolerance when the tempo is known
TEMPO_TOLERANCE_FACTORS = {
    "EASY": 0.35,
    "NORMAL": 0.25,
    "HARD": 0.15,
}

# Sequential matcher
DEFAULT_TEMPO_BPM = 120
WINDOW_BEAT_FRACTION = 0.75
WINDOW_MIN_MS = 150
WINDOW_MAX_MS = 500
WINDOW_LATE_FRACTION = 0.7  # candidates after the expected time get a shorter window
# (first note index, window scale) for drift accumulated over long pieces
WINDOW_SCALING = (
    (0, 1.0),
    (12, 1.25),
    (20, 1.5),
    (30, 1.75),
)
ONSET_PAIRING_WINDOW_MS = 100
ONSET_PREFERENCE_MS = 50
PITCH_PENALTY_PER_SEMITONE = 0.15
PITCH_WEIGHT = 0.7
TIMING_WEIGHT = 0.3
SEQUENCE_BONUS_CAP = 0.1
SEQUENCE_INTERVAL_TOLERANCE_MS = 200

MATCHING_TIERS = (
    MatchingTier("strict",   window_multiplier=1.0, pitch_tolerance=1.0, timing_tolerance=1.0, min_score=0.6),
    MatchingTier("relaxed",  window_multiplier=1.5, pitch_tolerance=1.5, timing_tolerance=1.5, min_score=0.4),
    MatchingTier("fallback", window_multiplier=2.0, pitch_tolerance=3.0, timing_tolerance=2.0, min_score=0.2),
)

# DTW distance weights
DTW_WEIGHTS = {
    "pitch": 0.6,
    "timing": 0.4,
}

# Assignment matcher: onset_w, pitch_w, null cost
ASSIGNMENT_WEIGHTS = {
    "onset": 0.01,
    "pitch": 3.0,
    "null_cost": 15.0,
}

# Scoring zones
PITCH_ZONES_CENTS = (
    (5, 1.0),
    (15, 0.8),
    (25, 0.6),
    (50, 0.4),
)
TIMING_PERFECT_MS = 50
TIMING_GOOD_MS = 150
TIMING_OK_MS = 250
TIMING_GOOD_SCORE = 0.7
TIMING_FLOOR_SCORE = 0.4

CLASSIFICATION_THRESHOLDS = (
    (0.95, "PERFECT"),
    (0.8, "GREAT"),
    (0.6, "GOOD"),
    (0.4, "OK"),
)

GRADE_THRESHOLDS = (
    (95, "S"),
    (90, "A+"),
    (85, "A"),
    (80, "A-"),
    (75, "B+"),
    (70, "B"),
    (65, "B-"),
    (60, "C+"),
    (55, "C"),
    (50, "C-"),
    (45, "D"),
)
FAILING_GRADE = "F"
CONSISTENCY_MAX_STD_MS = 200

# Preprocessing
DEFAULT_SMOOTHING_FACTOR = 0.5
SMOOTHING_BASE_WINDOW_MS = 50
SMOOTHING_WINDOW_RANGE_MS = 150
SMOOTHING_CONFIDENCE_BOOST = 1.1
LOW_CONFIDENCE_THRESHOLD = 0.3
LOW_CONFIDENCE_RATIO = 0.5

# Calibration hints
CALIBRATION_GAP_MS = 250
CALIBRATION_LARGE_GAP_MS = 500
CALIBRATION_MODERATE_STEP_MS = 100
ADAPTIVE_CALIBRATION_NOTES = 10
ADAPTIVE_CALIBRATION_MIN_NOTES = 5
ADAPTIVE_CALIBRATION_HIGH_CONFIDENCE_NOTES = 8
ADAPTIVE_CALIBRATION_BIAS_MS = 50

# History and budget
ANALYSIS_BUDGET_MS = 100
DEFAULT_MAX_HISTORY = 100
HISTORY_KEY = "perfHistory"
SETTINGS_KEY = "settings"
SMOOTHING_SETTING = "analyzerSmoothing"


@dataclass
class AnalyzerConfig:
    """Per-instance overrides of the module-level tables above."""
    enable_history: bool = True
    max_history_size: int = DEFAULT_MAX_HISTORY
    preset: str = DEFAULT_PRESET
    pitch_tolerance: Optional[float] = None
    timing_tolerance: Optional[float] = None
    strategy: str = "sequential"
    smoothing_factor: Optional[float] = None
    dtw_weights: dict[str, float] = field(default_factory=lambda: dict(DTW_WEIGHTS))
    tiers: tuple[MatchingTier, ...] = MATCHING_TIERS
    sequence_bonus_cap: float = SEQUENCE_BONUS_CAP
    sequence_interval_tolerance_ms: float = SEQUENCE_INTERVAL_TOLERANCE_MS
    budget_ms: float = ANALYSIS_BUDGET_MS
    low_confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD
