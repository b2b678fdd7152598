"""Common type definitions for the music grader."""

import math
from dataclasses import dataclass, field
from typing import Optional, Literal, Any

event_kind = Literal["continuous", "onset"]
classification_type = Literal["PERFECT", "GREAT", "GOOD", "OK", "POOR", "MISSED"]
pitch_source = Literal["continuous", "onset"]
tier_name = Literal["strict", "relaxed", "fallback", "dtw", "assignment"]

CONTINUOUS: event_kind = "continuous"
ONSET: event_kind = "onset"
EVENT_KINDS: tuple[event_kind, ...] = (CONTINUOUS, ONSET)

CLASSIFICATIONS: tuple[classification_type, ...] = ("PERFECT", "GREAT", "GOOD", "OK", "POOR", "MISSED")


def frequency_to_midi(frequency_hz: float) -> float:
    """Convert a frequency in Hz to a (fractional) MIDI pitch, A4 = 440 Hz = 69."""
    return 69.0 + 12.0 * math.log2(frequency_hz / 440.0)


def midi_to_frequency(midi: float) -> float:
    """Convert a (fractional) MIDI pitch to its frequency in Hz."""
    return 440.0 * 2.0 ** ((midi - 69.0) / 12.0)


@dataclass(frozen=True)
class ReferenceNote:
    """A single expected note of the exercise timeline."""
    id: str
    midi: int
    timestamp_ms: float
    duration_ms: float
    tempo_bpm: Optional[float] = None

    @property
    def end_ms(self) -> float:
        return self.timestamp_ms + self.duration_ms


@dataclass(frozen=True)
class DetectedEvent:
    """
    A timestamped, confidence-scored pitch event produced by the upstream detector.

    `timestamp_ms` is always the raw detector timestamp. Latency compensation
    never overwrites it; it fills `compensated_ms` on a new instance instead.
    An event carries a MIDI pitch, a frequency or both, and a confidence in [0, 1].
    """
    kind: event_kind
    timestamp_ms: float
    midi: Optional[float] = None
    frequency_hz: Optional[float] = None
    confidence: float = 1.0
    compensated_ms: Optional[float] = None
    smoothed: bool = False

    @property
    def time_ms(self) -> float:
        """Timestamp used for matching: compensated when available, raw otherwise."""
        return self.timestamp_ms if self.compensated_ms is None else self.compensated_ms

    @property
    def pitch(self) -> float:
        """MIDI pitch of the event, derived from the frequency when no MIDI value was detected."""
        if self.midi is not None:
            return self.midi
        if self.frequency_hz is not None and self.frequency_hz > 0:
            return frequency_to_midi(self.frequency_hz)
        return 0.0

    @property
    def frequency(self) -> float:
        if self.frequency_hz is not None:
            return self.frequency_hz
        return midi_to_frequency(self.pitch)

    @property
    def is_onset(self) -> bool:
        return self.kind == ONSET


@dataclass(frozen=True)
class ToleranceConfig:
    """Concrete pitch/timing tolerance used for one analysis call."""
    pitch_cents: float
    timing_ms: float
    preset: str = "NORMAL"

    def to_dict(self) -> dict[str, Any]:
        return {"pitch": self.pitch_cents, "timing": self.timing_ms, "preset": self.preset}


@dataclass(frozen=True)
class MatchingTier:
    """One of the progressively more lenient configurations of the sequential matcher."""
    name: tier_name
    window_multiplier: float
    pitch_tolerance: float
    timing_tolerance: float
    min_score: float


@dataclass
class MatchCandidate:
    """A detection selected for a reference note, with the scores that got it selected."""
    detection_index: int
    selected_pitch: float
    selected_timestamp_ms: float
    raw_timestamp_ms: float
    confidence: float
    source: pitch_source = "continuous"
    onset_index: Optional[int] = None
    onset_timestamp_ms: Optional[float] = None
    onset_confidence: float = 0.0
    pitch_score: float = 0.0
    timing_score: float = 0.0
    sequence_bonus: float = 1.0
    total_score: float = 0.0
    tier: tier_name = "strict"


@dataclass(frozen=True)
class ExtraNote:
    """
    A detection that was not consumed by any reference note.

    `detection_index` is the event's position in the time-sorted stream of its `kind`.
    """
    kind: event_kind
    detection_index: int
    midi: float
    timestamp_ms: float
    raw_timestamp_ms: float
    confidence: float
    classification: str = "EXTRA"


@dataclass
class AlignmentResult:
    """Output of an alignment strategy: one optional match per reference note plus leftovers."""
    matches: list[Optional[MatchCandidate]]
    extras: list[ExtraNote] = field(default_factory=list)
    strategy: str = "sequential"

    @property
    def tiers_used(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for m in self.matches:
            if m is not None:
                counts[m.tier] = counts.get(m.tier, 0) + 1
        return counts


@dataclass
class NoteResult:
    """Evaluation results for a single reference note."""
    note_id: str
    classification: classification_type
    expected_midi: int
    expected_timestamp_ms: float
    detected_midi: Optional[float] = None
    detected_timestamp_ms: Optional[float] = None
    detected_timestamp_raw_ms: Optional[float] = None
    latency_compensation_ms: Optional[float] = None
    detected_confidence: Optional[float] = None
    onset_timestamp_ms: Optional[float] = None
    onset_confidence: float = 0.0
    source: Optional[pitch_source] = None
    tier: Optional[tier_name] = None
    pitch_deviation: float = 0.0
    timing_deviation_ms: float = 0.0
    pitch_correct: bool = False
    timing_correct: bool = False
    pitch_score: float = 0.0
    timing_score: float = 0.0
    combined_score: float = 0.0
    score: float = 0.0

    @property
    def matched(self) -> bool:
        return self.classification != "MISSED"


@dataclass
class AggregateResult:
    """Roll-up of all per-note results of one analysis."""
    score: int = 0
    percentage: float = 0.0
    grade: str = "F"
    counts: dict[str, int] = field(default_factory=lambda: {c.lower(): 0 for c in CLASSIFICATIONS})
    timing_consistency_score: float = 100.0
    average_timing_deviation_ms: float = 0.0
    excellent_percentage: int = 0
    acceptable_percentage: int = 0
    failed_percentage: int = 0
    notes_correct: int = 0
    notes_missed: int = 0
    extra_notes: int = 0
    total_notes: int = 0


@dataclass
class AnalysisResult:
    """Complete result of one `Analyzer.analyze` call."""
    aggregate: AggregateResult
    per_note: list[NoteResult]
    extras: list[ExtraNote]
    exercise_id: str
    timestamp: float
    tolerances: ToleranceConfig
    tempo_bpm: Optional[float]
    strategy: str
    duration_ms: float = 0.0
    analysis_time_ms: float = 0.0
    warnings: list[str] = field(default_factory=list)


@dataclass
class HistoryEntry:
    """A persisted summary of one past analysis."""
    exercise_id: str
    timestamp: float
    percentage: float
    average_timing_deviation_ms: float = 0.0
    timing_consistency_score: float = 100.0
    tolerances: dict[str, Any] = field(default_factory=dict)
    notes_correct: int = 0
    total_notes: int = 0

    @classmethod
    def from_result(cls, result: AnalysisResult) -> "HistoryEntry":
        tolerances = result.tolerances.to_dict()
        tolerances["tempoBpm"] = result.tempo_bpm
        return cls(
            exercise_id=result.exercise_id,
            timestamp=result.timestamp,
            percentage=result.aggregate.percentage,
            average_timing_deviation_ms=result.aggregate.average_timing_deviation_ms,
            timing_consistency_score=result.aggregate.timing_consistency_score,
            tolerances=tolerances,
            notes_correct=result.aggregate.notes_correct,
            total_notes=result.aggregate.total_notes,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "exerciseId": self.exercise_id,
            "timestamp": self.timestamp,
            "percentage": self.percentage,
            "averageTimingDeviation": self.average_timing_deviation_ms,
            "timingConsistencyScore": self.timing_consistency_score,
            "tolerances": dict(self.tolerances),
            "notesCorrect": self.notes_correct,
            "totalNotes": self.total_notes,
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "HistoryEntry":
        return cls(
            exercise_id=d["exerciseId"],
            timestamp=d["timestamp"],
            percentage=d["percentage"],
            average_timing_deviation_ms=d.get("averageTimingDeviation", 0.0),
            timing_consistency_score=d.get("timingConsistencyScore", 100.0),
            tolerances=dict(d.get("tolerances") or {}),
            notes_correct=d.get("notesCorrect", 0),
            total_notes=d.get("totalNotes", 0),
        )
