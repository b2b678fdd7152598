from typing import Sequence

import numpy as np

from .config import GRADE_THRESHOLDS, FAILING_GRADE, CONSISTENCY_MAX_STD_MS
from .mg_types import NoteResult, AggregateResult, CLASSIFICATIONS


def calculate_grade(percentage: float) -> str:
    """Letter grade (S, A+ ... D, F) for a 0-100 percentage."""
    for threshold, grade in GRADE_THRESHOLDS:
        if percentage >= threshold:
            return grade
    return FAILING_GRADE


def timing_consistency_score(deviations: Sequence[float]) -> float:
    """
    Timing consistency on a 0-100 scale from the spread of absolute timing deviations.

    A standard deviation of 0 scores 100 and one of 200 ms or more scores 0. Fewer than
    two matched notes count as perfectly consistent.
    """
    if len(deviations) < 2:
        return 100.0
    std = float(np.std(np.abs(np.asarray(deviations, dtype=float))))
    return 100.0 - min(100.0, std / CONSISTENCY_MAX_STD_MS * 100.0)


def calculate_aggregate(per_note: Sequence[NoteResult], extra_notes: int = 0) -> AggregateResult:
    """
    Roll per-note results up into the aggregate metrics of one take.

    Parameters:
        per_note (Sequence[NoteResult]): One result per reference note; MISSED notes score 0.
        extra_notes (int): Number of detections the matcher left unused.

    Returns:
        AggregateResult: Total score, percentage (1 decimal), grade, classification counts,
        timing metrics and the extra-note count.
    """
    total = len(per_note)
    if total == 0:
        return AggregateResult(extra_notes=extra_notes)

    counts = {c.lower(): 0 for c in CLASSIFICATIONS}
    for r in per_note:
        counts[r.classification.lower()] += 1

    total_score = sum(r.score for r in per_note)
    percentage = total_score / (total * 100) * 100
    deviations = [abs(r.timing_deviation_ms) for r in per_note if r.matched]

    excellent = counts["perfect"] + counts["great"]
    acceptable = counts["good"] + counts["ok"]
    failed = counts["poor"] + counts["missed"]

    return AggregateResult(
        score=round(total_score),
        percentage=round(percentage, 1),
        grade=calculate_grade(percentage),
        counts=counts,
        timing_consistency_score=timing_consistency_score(deviations),
        average_timing_deviation_ms=float(np.mean(deviations)) if deviations else 0.0,
        excellent_percentage=round(excellent / total * 100),
        acceptable_percentage=round(acceptable / total * 100),
        failed_percentage=round(failed / total * 100),
        notes_correct=excellent + acceptable,
        notes_missed=counts["missed"],
        extra_notes=extra_notes,
        total_notes=total,
    )
