import logging
from typing import Optional

import numpy as np
from scipy.optimize import linear_sum_assignment

from .config import ASSIGNMENT_WEIGHTS
from .matching import Aligner, build_candidate, stream_times
from .mg_types import MatchCandidate

logger = logging.getLogger(__name__)


def normalize_onsets(ref_times: np.ndarray, det_times: np.ndarray) -> tuple[np.ndarray, float]:
    """
    Stretch the detected onsets onto the reference span to cancel a global tempo drift.

    Returns:
        tuple[np.ndarray, float]: Normalized detection times and the scale factor (reference span
        divided by detection span; 1.0 when the detection span is empty).
    """
    ref_min, ref_max = float(np.min(ref_times)), float(np.max(ref_times))
    det_min, det_max = float(np.min(det_times)), float(np.max(det_times))
    ref_span, det_span = ref_max - ref_min, det_max - det_min
    scale = (ref_span / det_span) if det_span > 0 else 1.0
    return ref_min + (det_times - det_min) * scale, scale


class AssignmentAligner(Aligner):
    """
    Optimal one-to-one assignment between reference notes and detections.

    Solves a rectangular assignment problem padded to a square matrix with a null cost,
    so a pair is only kept when matching it is cheaper than leaving both sides unmatched.
    """
    name = "assignment"

    def _match(self, reference, primary, secondary, used_primary, used_secondary, context):
        matches: list[Optional[MatchCandidate]] = [None] * len(reference)
        if not reference or not primary:
            return matches

        onset_w, pitch_w, k = ASSIGNMENT_WEIGHTS["onset"], ASSIGNMENT_WEIGHTS["pitch"], ASSIGNMENT_WEIGHTS["null_cost"]
        ref_pitch = np.array([r.midi for r in reference], dtype=float)
        ref_time = np.array([r.timestamp_ms for r in reference], dtype=float)
        det_pitch = np.array([e.pitch for e in primary], dtype=float)
        det_time, scale = normalize_onsets(ref_time, np.array([e.time_ms for e in primary], dtype=float))

        m, n = len(reference), len(primary)
        size = max(m, n)
        cost_matrix = np.full((size, size), k, dtype=float)
        cost_matrix[:m, :n] = (
            pitch_w * np.abs(ref_pitch[:, None] - det_pitch[None, :])
            + onset_w * np.abs(ref_time[:, None] - det_time[None, :])
        )
        row_ind, col_ind = linear_sum_assignment(cost_matrix)
        logger.debug("Assignment solved for %d notes and %d detections (scale %.4f)", m, n, scale)

        pairs = sorted(
            (r, c) for r, c in zip(row_ind, col_ind)
            if r < m and c < n and cost_matrix[r, c] < k
        )
        onset_times = stream_times(secondary)
        for r, c in pairs:
            candidate = build_candidate(int(c), primary[c], secondary, used_secondary, "assignment",
                                        onset_times=onset_times)
            candidate.total_score = max(0.0, 1.0 - float(cost_matrix[r, c]) / k)
            used_primary.add(int(c))
            if candidate.onset_index is not None:
                used_secondary.add(candidate.onset_index)
            matches[int(r)] = candidate
        return matches
