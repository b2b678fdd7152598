"""
Continuous scoring of a single note.

Pitch and timing deviations map onto 0-1 multipliers; their product is the note's
combined score, and the combined score decides the classification.
"""

from typing import Optional

from .config import (
    PITCH_ZONES_CENTS, TIMING_PERFECT_MS, TIMING_GOOD_MS, TIMING_OK_MS,
    TIMING_GOOD_SCORE, TIMING_FLOOR_SCORE, CLASSIFICATION_THRESHOLDS,
)
from .mg_types import (
    ReferenceNote, MatchCandidate, NoteResult, ToleranceConfig, classification_type,
)


def pitch_score_multiplier(pitch_deviation: float) -> float:
    """
    Score multiplier for a pitch deviation, in discontinuous perceptual zones.

    Parameters:
        pitch_deviation (float): Deviation in semitones (sign ignored).

    Returns:
        float: 1.0 within 5 cents, 0.8 within 15, 0.6 within 25, 0.4 within 50, 0.0 beyond.
    """
    cents = abs(pitch_deviation * 100)
    for limit, multiplier in PITCH_ZONES_CENTS:
        if cents <= limit:
            return multiplier
    return 0.0


def timing_score_multiplier(timing_deviation_ms: float) -> float:
    """
    Score multiplier for a timing deviation.

    Parameters:
        timing_deviation_ms (float): Deviation in milliseconds (sign ignored).

    Returns:
        float: 1.0 up to 50 ms, linear down to 0.7 at 150 ms, linear down to 0.4 at 250 ms,
        and 0.4 beyond. A detected note never scores zero on timing alone.
    """
    dev = abs(timing_deviation_ms)
    if dev <= TIMING_PERFECT_MS:
        return 1.0
    if dev <= TIMING_GOOD_MS:
        ratio = (dev - TIMING_PERFECT_MS) / (TIMING_GOOD_MS - TIMING_PERFECT_MS)
        return 1.0 - ratio * (1.0 - TIMING_GOOD_SCORE)
    if dev <= TIMING_OK_MS:
        ratio = (dev - TIMING_GOOD_MS) / (TIMING_OK_MS - TIMING_GOOD_MS)
        return TIMING_GOOD_SCORE - ratio * (TIMING_GOOD_SCORE - TIMING_FLOOR_SCORE)
    return TIMING_FLOOR_SCORE


def combined_score(pitch_score: float, timing_score: float) -> float:
    return pitch_score * timing_score


def classify(score: float) -> classification_type:
    """Classification of a matched note by its combined score. MISSED is never returned here."""
    for threshold, name in CLASSIFICATION_THRESHOLDS:
        if score >= threshold:
            return name
    return "POOR"


def score_note(ref: ReferenceNote, match: MatchCandidate, tolerance: Optional[ToleranceConfig] = None) -> NoteResult:
    """
    Build the result of a reference note that an alignment strategy matched.

    Parameters:
        ref (ReferenceNote): The expected note.
        match (MatchCandidate): The detection selected for it.
        tolerance (Optional[ToleranceConfig]): Tolerance of the call; used for the
            `pitch_correct`/`timing_correct` flags only.

    Returns:
        NoteResult: Deviations, multipliers, combined score and classification.
    """
    pitch_dev = match.selected_pitch - ref.midi
    timing_dev = match.selected_timestamp_ms - ref.timestamp_ms

    p_score = pitch_score_multiplier(pitch_dev)
    t_score = timing_score_multiplier(timing_dev)
    total = combined_score(p_score, t_score)

    return NoteResult(
        note_id=ref.id,
        classification=classify(total),
        expected_midi=ref.midi,
        expected_timestamp_ms=ref.timestamp_ms,
        detected_midi=match.selected_pitch,
        detected_timestamp_ms=match.selected_timestamp_ms,
        detected_timestamp_raw_ms=match.raw_timestamp_ms,
        latency_compensation_ms=match.raw_timestamp_ms - match.selected_timestamp_ms,
        detected_confidence=match.confidence,
        onset_timestamp_ms=match.onset_timestamp_ms,
        onset_confidence=match.onset_confidence,
        source=match.source,
        tier=match.tier,
        pitch_deviation=pitch_dev,
        timing_deviation_ms=timing_dev,
        pitch_correct=tolerance is not None and abs(pitch_dev * 100) <= tolerance.pitch_cents,
        timing_correct=tolerance is not None and abs(timing_dev) <= tolerance.timing_ms,
        pitch_score=p_score,
        timing_score=t_score,
        combined_score=total,
        score=total * 100,
    )


def missed_note(ref: ReferenceNote) -> NoteResult:
    return NoteResult(
        note_id=ref.id,
        classification="MISSED",
        expected_midi=ref.midi,
        expected_timestamp_ms=ref.timestamp_ms,
    )
