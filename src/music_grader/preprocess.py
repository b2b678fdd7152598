"""
Preprocessing of the raw detection stream: latency compensation and temporal smoothing.

Both passes are stateless and return new `DetectedEvent` instances; the caller's
events are never modified.
"""

import logging
from dataclasses import replace
from typing import Iterable, Sequence

import numpy as np

from .config import (
    SMOOTHING_BASE_WINDOW_MS, SMOOTHING_WINDOW_RANGE_MS, SMOOTHING_CONFIDENCE_BOOST,
    LOW_CONFIDENCE_THRESHOLD,
)
from .errors import ValidationError
from .mg_types import DetectedEvent

logger = logging.getLogger(__name__)


def compensate_latency(events: Iterable[DetectedEvent], offset_ms: float) -> list[DetectedEvent]:
    """
    Shift every event back by the speaker-to-microphone latency.

    Parameters:
        events (Iterable[DetectedEvent]): Raw events of either stream.
        offset_ms (float): Estimated latency in milliseconds. Detections arrive late by this
            amount, so it is subtracted.

    Returns:
        list[DetectedEvent]: New events whose `compensated_ms` is `timestamp_ms - offset_ms`.
        The raw `timestamp_ms` is kept for diagnostics.
    """
    return [replace(e, compensated_ms=e.timestamp_ms - offset_ms) for e in events]


def smoothing_window_ms(smoothing_factor: float) -> float:
    """Map a 0-1 smoothing factor onto a 50-200 ms neighbourhood."""
    if isinstance(smoothing_factor, bool) or not isinstance(smoothing_factor, (int, float)):
        raise ValidationError(f"Smoothing factor must be a number, not {type(smoothing_factor).__name__}")
    if not 0.0 <= smoothing_factor <= 1.0:
        raise ValidationError(f"Smoothing factor must be within [0, 1], got {smoothing_factor}")
    return SMOOTHING_BASE_WINDOW_MS + smoothing_factor * SMOOTHING_WINDOW_RANGE_MS


def smooth(events: Sequence[DetectedEvent], smoothing_factor: float) -> list[DetectedEvent]:
    """
    Mode filter over the detection stream that suppresses single-frame detector glitches.

    For every event, the neighbours within the smoothing window (measured on compensated time)
    vote for their rounded MIDI pitch, weighted by confidence. The event takes the mean pitch and
    frequency of the winning neighbours, and their mean confidence boosted by 10% (capped at 1.0).
    No event is dropped and the order is preserved.

    Parameters:
        events (Sequence[DetectedEvent]): Events of a single stream.
        smoothing_factor (float): 0-1 factor; the window is 50 + 150 * factor milliseconds.

    Returns:
        list[DetectedEvent]: Smoothed copies of `events`, flagged with `smoothed=True`.
    """
    window = smoothing_window_ms(smoothing_factor)
    if not events:
        return []

    n = len(events)
    times = np.array([e.time_ms for e in events], dtype=float)
    pitches = np.array([e.pitch for e in events], dtype=float)
    frequencies = np.array([e.frequency for e in events], dtype=float)
    confidences = np.array([e.confidence for e in events], dtype=float)

    # neighbourhood of event i is the slice [lo[i], hi[i]) of the time-sorted stream
    order = np.argsort(times, kind="stable")
    sorted_times = times[order]
    lo = np.searchsorted(sorted_times, times - window, side="right")
    hi = np.searchsorted(sorted_times, times + window, side="left")

    # one row per distinct rounded pitch, ascending
    labels, own = np.unique(np.rint(pitches).astype(int), return_inverse=True)
    own = own.ravel()
    members = np.zeros((len(labels), n))
    members[own[order], np.arange(n)] = 1.0

    def window_sums(values: np.ndarray) -> np.ndarray:
        cumulative = np.zeros((len(labels), n + 1))
        np.cumsum(members * values[order], axis=1, out=cumulative[:, 1:])
        return cumulative[:, hi] - cumulative[:, lo]

    counts = window_sums(np.ones(n))
    confidence_sums = window_sums(confidences)
    votes = np.where(counts > 0, confidence_sums, -np.inf)
    tied = np.isclose(votes, votes.max(axis=0), rtol=1e-9, atol=1e-12) & (counts > 0)

    # equal votes keep the event's own pitch, then the lowest pitch
    columns = np.arange(n)
    dominant = np.where(tied[own, columns], own, np.argmax(tied, axis=0))
    size = counts[dominant, columns]
    avg_pitch = window_sums(pitches)[dominant, columns] / size
    avg_frequency = window_sums(frequencies)[dominant, columns] / size
    avg_confidence = np.minimum(1.0, confidence_sums[dominant, columns] / size * SMOOTHING_CONFIDENCE_BOOST)

    smoothed = [
        replace(e, midi=p, frequency_hz=f, confidence=c, smoothed=True)
        for e, p, f, c in zip(events, avg_pitch.tolist(), avg_frequency.tolist(), avg_confidence.tolist())
    ]

    changed = int(np.count_nonzero(dominant != own))
    if changed:
        logger.debug("Smoothing (%.0f ms window) corrected %d of %d events", window, changed, n)
    return smoothed


def split_streams(events: Iterable[DetectedEvent]) -> tuple[list[DetectedEvent], list[DetectedEvent]]:
    """
    Partition events into the continuous and the onset stream.

    Returns:
        tuple[list[DetectedEvent], list[DetectedEvent]]: `(continuous, onsets)`, each stably
        sorted by matching time.
    """
    continuous, onsets = [], []
    for e in events:
        (onsets if e.is_onset else continuous).append(e)
    continuous.sort(key=lambda e: e.time_ms)
    onsets.sort(key=lambda e: e.time_ms)
    return continuous, onsets


def low_confidence_ratio(events: Sequence[DetectedEvent], threshold: float = LOW_CONFIDENCE_THRESHOLD) -> float:
    if not events:
        return 0.0
    return sum(1 for e in events if e.confidence < threshold) / len(events)
