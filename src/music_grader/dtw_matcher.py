"""
Dynamic Time Warping alignment.

Globally optimal O(n*m) alignment of the reference timeline against the
detection stream. Slower and less adaptive than the sequential matcher, but
useful when alignment correctness matters more than tempo adaptivity.
"""

import logging
from typing import Optional

import numpy as np

from .matching import Aligner, build_candidate, stream_times
from .mg_types import MatchCandidate

logger = logging.getLogger(__name__)


def distance_matrix(ref_pitch: np.ndarray, ref_time: np.ndarray, det_pitch: np.ndarray, det_time: np.ndarray,
                    pitch_weight: float = 0.6, timing_weight: float = 0.4) -> np.ndarray:
    """
    Pairwise distance between reference notes (rows) and detections (columns).

    Pitch difference is normalized by an octave and timing difference by one second.
    """
    pitch = np.abs(ref_pitch[:, None] - det_pitch[None, :]) / 12.0
    timing = np.abs(ref_time[:, None] - det_time[None, :]) / 1000.0
    return pitch_weight * pitch + timing_weight * timing


def accumulated_cost(dist: np.ndarray) -> np.ndarray:
    n, m = dist.shape
    cost = np.full((n + 1, m + 1), np.inf)
    cost[0, 0] = 0.0
    for i in range(1, n + 1):
        for j in range(1, m + 1):
            cost[i, j] = dist[i - 1, j - 1] + min(cost[i - 1, j], cost[i, j - 1], cost[i - 1, j - 1])
    return cost


def backtrack(cost: np.ndarray) -> list[tuple[int, int]]:
    """
    Walk the accumulated cost matrix back from its far corner.

    Diagonal steps are matches, up steps leave a reference note unmatched and left steps
    leave a detection unmatched. Ties prefer diagonal, then up, then left.

    Returns:
        list[tuple[int, int]]: `(ref_index, det_index)` pairs in ascending order.
    """
    i, j = cost.shape[0] - 1, cost.shape[1] - 1
    path = []
    while i > 0 and j > 0:
        diagonal, up, left = cost[i - 1, j - 1], cost[i - 1, j], cost[i, j - 1]
        best = min(diagonal, up, left)
        if best == diagonal:
            path.append((i - 1, j - 1))
            i -= 1
            j -= 1
        elif best == up:
            i -= 1
        else:
            j -= 1
    path.reverse()
    return path


class DTWAligner(Aligner):
    name = "dtw"

    def _match(self, reference, primary, secondary, used_primary, used_secondary, context):
        matches: list[Optional[MatchCandidate]] = [None] * len(reference)
        if not reference or not primary:
            return matches

        weights = context.config.dtw_weights
        dist = distance_matrix(
            np.array([r.midi for r in reference], dtype=float),
            np.array([r.timestamp_ms for r in reference], dtype=float),
            np.array([e.pitch for e in primary], dtype=float),
            np.array([e.time_ms for e in primary], dtype=float),
            pitch_weight=weights.get("pitch", 0.6),
            timing_weight=weights.get("timing", 0.4),
        )
        path = backtrack(accumulated_cost(dist))
        logger.debug("DTW path has %d matches for %d notes and %d detections",
                     len(path), len(reference), len(primary))

        onset_times = stream_times(secondary)
        for ref_idx, det_idx in path:
            candidate = build_candidate(det_idx, primary[det_idx], secondary, used_secondary, "dtw",
                                        onset_times=onset_times)
            # local distance folded into 0-1, higher is better
            candidate.total_score = max(0.0, 1.0 - float(dist[ref_idx, det_idx]))
            used_primary.add(det_idx)
            if candidate.onset_index is not None:
                used_secondary.add(candidate.onset_index)
            matches[ref_idx] = candidate
        return matches
