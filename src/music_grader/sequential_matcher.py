"""
Sequential best-fit matching with multi-tier fallback.

Reference notes are visited in chronological order. Each note searches an
asymmetric window around its expected time for the best unused detection,
first with strict settings and then with progressively more lenient tiers.
This is the primary path: it adapts to the tempo, widens its windows as
timing drift accumulates over long pieces, and keeps runs of repeated
pitches in order through a sequence bonus.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .config import (
    WINDOW_BEAT_FRACTION, WINDOW_MIN_MS, WINDOW_MAX_MS, WINDOW_SCALING, WINDOW_LATE_FRACTION,
    PITCH_PENALTY_PER_SEMITONE, PITCH_WEIGHT, TIMING_WEIGHT, DEFAULT_TEMPO_BPM,
)
from .matching import (
    Aligner, AlignmentContext, build_candidate, find_corresponding_onset, prefers_onset, stream_times, window_bounds,
)
from .mg_types import ReferenceNote, DetectedEvent, MatchCandidate, MatchingTier

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _PreviousMatch:
    midi: int
    reference_ms: float
    matched_ms: float


@dataclass(frozen=True)
class _StreamTimes:
    """Sorted matching times of the candidate and onset streams, computed once per alignment."""
    primary: list[float]
    secondary: list[float]


def matching_window_ms(tempo_bpm: float, note_index: int = 0) -> float:
    """
    Base search window for a note.

    Three quarters of a beat clamped to 150-500 ms, then widened for later notes:
    x1.25 from note 12, x1.5 from note 20 and x1.75 from note 30.
    """
    if not tempo_bpm or tempo_bpm <= 0:
        tempo_bpm = DEFAULT_TEMPO_BPM
    beat_ms = 60000 / tempo_bpm
    window = min(WINDOW_MAX_MS, max(WINDOW_MIN_MS, beat_ms * WINDOW_BEAT_FRACTION))

    scale = 1.0
    for threshold, factor in WINDOW_SCALING:
        if note_index >= threshold:
            scale = factor
        else:
            break
    return window * scale


def sequence_bonus(selected_ms: float, ref: ReferenceNote, previous: Optional[_PreviousMatch],
                   cap: float, interval_tolerance_ms: float) -> float:
    """
    Bonus factor (1.0 to 1.0 + cap) for repeated-pitch runs.

    Applies only when the previously matched note has the same pitch; the closer the
    candidate lands to the interval implied by the two reference notes, the bigger the bonus.
    """
    if previous is None or previous.midi != ref.midi:
        return 1.0
    expected_ms = previous.matched_ms + (ref.timestamp_ms - previous.reference_ms)
    deviation = abs(selected_ms - expected_ms)
    return 1.0 + max(0.0, 1.0 - deviation / interval_tolerance_ms) * cap


class SequentialAligner(Aligner):
    name = "sequential"

    def _match(self, reference, primary, secondary, used_primary, used_secondary, context):
        matches: list[Optional[MatchCandidate]] = []
        previous: Optional[_PreviousMatch] = None
        times = _StreamTimes(stream_times(primary), stream_times(secondary))

        for idx, ref in enumerate(reference):
            match = self.find_best_match(ref, idx, primary, secondary, used_primary, used_secondary,
                                         previous, context, times)
            if match is None:
                logger.debug("Note %s (midi %d @ %.0f ms) missed", ref.id, ref.midi, ref.timestamp_ms)
                matches.append(None)
                continue

            used_primary.add(match.detection_index)
            if match.onset_index is not None:
                used_secondary.add(match.onset_index)
            previous = _PreviousMatch(midi=ref.midi, reference_ms=ref.timestamp_ms,
                                      matched_ms=match.selected_timestamp_ms)
            logger.debug("Note %s matched detection %d (%s tier, score %.3f, source %s)",
                         ref.id, match.detection_index, match.tier, match.total_score, match.source)
            matches.append(match)

        return matches

    def find_best_match(self, ref: ReferenceNote, note_index: int, primary: Sequence[DetectedEvent],
                        secondary: Sequence[DetectedEvent], used_primary: set[int], used_secondary: set[int],
                        previous: Optional[_PreviousMatch], context: AlignmentContext,
                        times: Optional[_StreamTimes] = None) -> Optional[MatchCandidate]:
        """Try every tier in order and return the first accepted candidate, or None when all tiers reject."""
        if times is None:
            times = _StreamTimes(stream_times(primary), stream_times(secondary))
        for tier in context.config.tiers:
            match = self.match_in_tier(ref, note_index, primary, secondary, used_primary, used_secondary,
                                       previous, tier, context, times)
            if match is not None:
                return match
        return None

    def match_in_tier(self, ref: ReferenceNote, note_index: int, primary: Sequence[DetectedEvent],
                      secondary: Sequence[DetectedEvent], used_primary: set[int], used_secondary: set[int],
                      previous: Optional[_PreviousMatch], tier: MatchingTier,
                      context: AlignmentContext, times: Optional[_StreamTimes] = None) -> Optional[MatchCandidate]:
        """
        Best candidate for `ref` under one tier's settings.

        Parameters:
            ref (ReferenceNote): Note being matched.
            note_index (int): Position of the note, used to widen the window for later notes.
            primary (Sequence[DetectedEvent]): Candidate stream, sorted by time.
            secondary (Sequence[DetectedEvent]): Onset stream used to refine candidates, sorted by time.
            used_primary (set[int]): Consumed candidate indices.
            used_secondary (set[int]): Consumed onset indices.
            previous (Optional[_PreviousMatch]): Last matched note, for the sequence bonus.
            tier (MatchingTier): Window/tolerance multipliers and the minimum accepted score.
            context (AlignmentContext): Tempo and tunables of the call.
            times (Optional[_StreamTimes]): Precomputed stream times; derived from the streams when omitted.

        Returns:
            Optional[MatchCandidate]: The highest scoring candidate if it reaches `tier.min_score`.
        """
        if times is None:
            times = _StreamTimes(stream_times(primary), stream_times(secondary))
        config = context.config
        window = matching_window_ms(context.tempo_bpm, note_index) * tier.window_multiplier
        lo, hi = window_bounds(times.primary, ref.timestamp_ms - window,
                               ref.timestamp_ms + window * WINDOW_LATE_FRACTION)
        timing_span = window * 2 / tier.timing_tolerance

        best_index, best_score, best_parts = None, None, None
        for i in range(lo, hi):
            if i in used_primary:
                continue
            event = primary[i]
            pitch, selected_ms = event.pitch, times.primary[i]
            onset_idx = find_corresponding_onset(event, secondary, used_secondary, onset_times=times.secondary)
            if onset_idx is not None and prefers_onset(event, secondary[onset_idx]):
                pitch, selected_ms = secondary[onset_idx].pitch, times.secondary[onset_idx]

            pitch_diff = abs(pitch - ref.midi)
            if pitch_diff == 0:
                pitch_score = 1.0
            else:
                pitch_score = max(0.0, 1.0 - pitch_diff * PITCH_PENALTY_PER_SEMITONE / tier.pitch_tolerance)
            timing_score = max(0.0, 1.0 - abs(selected_ms - ref.timestamp_ms) / timing_span)
            bonus = sequence_bonus(selected_ms, ref, previous,
                                   config.sequence_bonus_cap, config.sequence_interval_tolerance_ms)
            total = (pitch_score * PITCH_WEIGHT + timing_score * TIMING_WEIGHT) * bonus

            if best_score is None or total > best_score:
                best_index, best_score, best_parts = i, total, (pitch_score, timing_score, bonus)

        if best_index is None or best_score < tier.min_score:
            return None

        candidate = build_candidate(best_index, primary[best_index], secondary, used_secondary, tier.name,
                                    onset_times=times.secondary)
        candidate.pitch_score, candidate.timing_score, candidate.sequence_bonus = best_parts
        candidate.total_score = best_score
        return candidate
