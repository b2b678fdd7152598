"""
Alignment interface shared by all matching strategies.

A strategy receives the reference timeline and the two preprocessed detection
streams and decides, for every reference note, which detection (if any) was
meant to play it. Detection indices are scoped per stream: the continuous and
the onset stream each have their own consumed-index set.

Both streams are sorted by matching time before a strategy runs, so a
`detection_index` (on candidates and extras alike) is a position in the
time-sorted stream of its kind, not in the caller's original event list.
Windows over a stream are located by bisection on its sorted times.
"""

import logging
from abc import ABC, abstractmethod
from bisect import bisect_left, bisect_right
from dataclasses import dataclass, field
from typing import Optional, Sequence

from .config import AnalyzerConfig, DEFAULT_TEMPO_BPM, ONSET_PAIRING_WINDOW_MS, ONSET_PREFERENCE_MS
from .errors import ValidationError
from .mg_types import (
    ReferenceNote, DetectedEvent, MatchCandidate, ExtraNote, AlignmentResult,
    ToleranceConfig, tier_name,
)

logger = logging.getLogger(__name__)


@dataclass
class AlignmentContext:
    """Per-call parameters handed to a strategy."""
    tempo_bpm: float = DEFAULT_TEMPO_BPM
    tolerance: Optional[ToleranceConfig] = None
    config: AnalyzerConfig = field(default_factory=AnalyzerConfig)


def stream_times(stream: Sequence[DetectedEvent]) -> list[float]:
    return [e.time_ms for e in stream]


def window_bounds(times: Sequence[float], start_ms: float, end_ms: float) -> tuple[int, int]:
    """Slice `[lo, hi)` of the sorted `times` that lies within `[start_ms, end_ms]`."""
    return bisect_left(times, start_ms), bisect_right(times, end_ms)


def find_corresponding_onset(event: DetectedEvent, onsets: Sequence[DetectedEvent], used: set[int],
                             window_ms: float = ONSET_PAIRING_WINDOW_MS,
                             onset_times: Optional[Sequence[float]] = None) -> Optional[int]:
    """
    Index of the nearest unused onset within `window_ms` of `event`, or None.

    `onsets` must be sorted by time; pass their precomputed `onset_times` when pairing many events.
    """
    if onset_times is None:
        onset_times = stream_times(onsets)
    t = event.time_ms
    lo, hi = window_bounds(onset_times, t - window_ms, t + window_ms)
    best_idx, best_dt = None, None
    for i in range(lo, hi):
        if i in used:
            continue
        dt = abs(onset_times[i] - t)
        if best_dt is None or dt < best_dt:
            best_idx, best_dt = i, dt
    return best_idx


def prefers_onset(event: DetectedEvent, onset: DetectedEvent) -> bool:
    """
    The onset's pitch and time win when the onset is more confident than the continuous
    detection, or when the two are within 50 ms of each other: onset data is fresher and
    does not lag behind across note transitions.
    """
    return onset.confidence > event.confidence or abs(onset.time_ms - event.time_ms) < ONSET_PREFERENCE_MS


def build_candidate(index: int, event: DetectedEvent, onsets: Sequence[DetectedEvent], used_onsets: set[int],
                    tier: tier_name, onset_times: Optional[Sequence[float]] = None) -> MatchCandidate:
    """Pair a candidate detection with its onset and pick the pitch/time source (see `prefers_onset`)."""
    candidate = MatchCandidate(
        detection_index=index,
        selected_pitch=event.pitch,
        selected_timestamp_ms=event.time_ms,
        raw_timestamp_ms=event.timestamp_ms,
        confidence=event.confidence,
        source=event.kind,
        tier=tier,
    )
    onset_idx = find_corresponding_onset(event, onsets, used_onsets, onset_times=onset_times)
    if onset_idx is None:
        return candidate

    onset = onsets[onset_idx]
    candidate.onset_index = onset_idx
    candidate.onset_timestamp_ms = onset.time_ms
    candidate.onset_confidence = onset.confidence
    if prefers_onset(event, onset):
        candidate.selected_pitch = onset.pitch
        candidate.selected_timestamp_ms = onset.time_ms
        candidate.raw_timestamp_ms = onset.timestamp_ms
        candidate.confidence = onset.confidence
        candidate.source = "onset"
    return candidate


def collect_extras(stream: Sequence[DetectedEvent], used: set[int]) -> list[ExtraNote]:
    return [
        ExtraNote(
            kind=e.kind,
            detection_index=i,
            midi=e.pitch,
            timestamp_ms=e.time_ms,
            raw_timestamp_ms=e.timestamp_ms,
            confidence=e.confidence,
        )
        for i, e in enumerate(stream) if i not in used
    ]


class Aligner(ABC):
    """Base class of the interchangeable alignment strategies."""
    name = "base"

    def align(self, reference: Sequence[ReferenceNote], continuous: Sequence[DetectedEvent],
              onsets: Sequence[DetectedEvent], context: Optional[AlignmentContext] = None) -> AlignmentResult:
        """
        Align the reference timeline with the detection streams.

        The continuous stream provides the candidates; onsets refine them. When a detector
        only delivered onsets, the onset stream becomes the candidate stream.

        Returns:
            AlignmentResult: `matches[i]` is the candidate chosen for `reference[i]` (None when
            missed), and every detection left unused in either stream is listed as an extra.
        """
        context = context or AlignmentContext()
        by_time = lambda e: e.time_ms
        if continuous:
            primary, secondary = sorted(continuous, key=by_time), sorted(onsets, key=by_time)
        else:
            primary, secondary = sorted(onsets, key=by_time), []
            if primary:
                logger.debug("No continuous events, matching against %d onsets", len(primary))

        used_primary: set[int] = set()
        used_secondary: set[int] = set()
        matches = self._match(reference, primary, secondary, used_primary, used_secondary, context)

        extras = collect_extras(primary, used_primary) + collect_extras(secondary, used_secondary)
        extras.sort(key=lambda x: x.timestamp_ms)
        return AlignmentResult(matches=matches, extras=extras, strategy=self.name)

    @abstractmethod
    def _match(self, reference: Sequence[ReferenceNote], primary: list[DetectedEvent],
               secondary: list[DetectedEvent], used_primary: set[int], used_secondary: set[int],
               context: AlignmentContext) -> list[Optional[MatchCandidate]]:
        """Return one optional candidate per reference note, recording consumed indices in the two sets."""


def get_aligner(name: str) -> Aligner:
    """Instantiate the strategy registered under `name` (sequential, dtw or assignment)."""
    from .sequential_matcher import SequentialAligner
    from .dtw_matcher import DTWAligner
    from .assignment_matcher import AssignmentAligner

    strategies = {cls.name: cls for cls in (SequentialAligner, DTWAligner, AssignmentAligner)}
    try:
        return strategies[name]()
    except KeyError:
        raise ValidationError(f"Unknown alignment strategy: {name}. Must be one of: {', '.join(strategies)}") from None
