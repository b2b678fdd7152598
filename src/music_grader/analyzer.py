"""
The `Analyzer` facade: grades one take of an exercise against its reference timeline.

One `analyze` call runs the whole pipeline: latency compensation, smoothing, alignment,
per-note scoring and aggregation, then records a summary in the history ledger.
"""

import logging
import math
import time
from typing import Any, Callable, Optional, Sequence

import numpy as np

from .aggregate import calculate_aggregate
from .config import (
    AnalyzerConfig, DEFAULT_TEMPO_BPM, DEFAULT_SMOOTHING_FACTOR, SETTINGS_KEY, SMOOTHING_SETTING,
    LOW_CONFIDENCE_RATIO, CALIBRATION_GAP_MS, CALIBRATION_LARGE_GAP_MS, CALIBRATION_MODERATE_STEP_MS,
    ADAPTIVE_CALIBRATION_NOTES, ADAPTIVE_CALIBRATION_MIN_NOTES, ADAPTIVE_CALIBRATION_HIGH_CONFIDENCE_NOTES,
    ADAPTIVE_CALIBRATION_BIAS_MS, TOLERANCE_PRESETS, CUSTOM_DEFAULTS,
)
from .errors import ValidationError
from .events import (
    EventBus, Listener, AnalysisStarted, CalibrationRecommendation, AdaptiveCalibration,
    AnalysisComplete, AnalysisFailed, TolerancesChanged,
)
from .history import HistoryLedger
from .matching import AlignmentContext, get_aligner
from .mg_types import (
    ReferenceNote, DetectedEvent, ToleranceConfig, NoteResult, AnalysisResult, HistoryEntry, EVENT_KINDS,
)
from .preprocess import compensate_latency, smooth, smoothing_window_ms, split_streams, low_confidence_ratio
from .scoring import score_note, missed_note
from .storage import KeyValueStore, MemoryStore
from .tolerance import preset_tolerance, resolve_tolerance, validate_tolerances

logger = logging.getLogger(__name__)


def _validate_reference(reference: Any) -> None:
    if not isinstance(reference, (list, tuple)) or not reference:
        raise ValidationError("Reference must be a non-empty list of ReferenceNote")
    seen: set[str] = set()
    previous_ms = -math.inf
    for note in reference:
        if not isinstance(note, ReferenceNote):
            raise ValidationError(f"Reference entries must be ReferenceNote, not {type(note).__name__}")
        if isinstance(note.midi, bool) or not isinstance(note.midi, int) or not 0 <= note.midi <= 127:
            raise ValidationError(f"Note {note.id!r} has an invalid MIDI pitch: {note.midi!r}")
        if note.id in seen:
            raise ValidationError(f"Duplicate reference note id: {note.id!r}")
        if note.timestamp_ms < previous_ms:
            raise ValidationError(f"Reference notes must be in ascending time order (at {note.id!r})")
        seen.add(note.id)
        previous_ms = note.timestamp_ms


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _validate_detected(detected: Any) -> None:
    if not isinstance(detected, (list, tuple)):
        raise ValidationError("Detected events must be a list of DetectedEvent")
    for i, event in enumerate(detected):
        if not isinstance(event, DetectedEvent):
            raise ValidationError(f"Detected entries must be DetectedEvent, not {type(event).__name__}")
        if event.kind not in EVENT_KINDS:
            raise ValidationError(f"Detected event {i} has an unknown kind {event.kind!r}; "
                                  f"expected one of {', '.join(EVENT_KINDS)}")
        if not _is_number(event.timestamp_ms):
            raise ValidationError(f"Detected event {i} has an invalid timestamp: {event.timestamp_ms!r}")
        if event.midi is None and event.frequency_hz is None:
            raise ValidationError(f"Detected event {i} carries neither a MIDI pitch nor a frequency")
        if event.midi is not None and not _is_number(event.midi):
            raise ValidationError(f"Detected event {i} has an invalid MIDI pitch: {event.midi!r}")
        if event.midi is None and not (_is_number(event.frequency_hz) and event.frequency_hz > 0):
            raise ValidationError(f"Detected event {i} has an invalid frequency: {event.frequency_hz!r}")
        if not _is_number(event.confidence) or not 0.0 <= event.confidence <= 1.0:
            raise ValidationError(f"Detected event {i} has a confidence outside [0, 1]: {event.confidence!r}")


class Analyzer:
    """
    Performance grading engine.

    Parameters:
        config (Optional[AnalyzerConfig]): Per-instance overrides of the default tables.
        store (Optional[KeyValueStore]): Persistence for history and settings; in-memory by default.
        clock (Callable[[], float]): Wall clock stamped on results and events.
    """

    def __init__(self, config: Optional[AnalyzerConfig] = None, store: Optional[KeyValueStore] = None,
                 clock: Callable[[], float] = time.time):
        self.config = config or AnalyzerConfig()
        self.store = store if store is not None else MemoryStore()
        self.clock = clock
        self.events = EventBus()
        self.ledger = HistoryLedger(self.store, max_size=self.config.max_history_size)
        self.tolerances = self._initial_tolerances()
        # Fail fast on a misconfigured strategy
        get_aligner(self.config.strategy)
        logger.info("Analyzer initialized (preset %s, strategy %s)", self.tolerances.preset, self.config.strategy)

    def _initial_tolerances(self) -> ToleranceConfig:
        preset = self.config.preset
        if preset not in TOLERANCE_PRESETS:
            raise ValidationError(f"Invalid preset: {preset}. Must be one of: {', '.join(TOLERANCE_PRESETS)}")
        if preset == "CUSTOM":
            return validate_tolerances({
                "pitch": self.config.pitch_tolerance if self.config.pitch_tolerance is not None else CUSTOM_DEFAULTS["pitch"],
                "timing": self.config.timing_tolerance if self.config.timing_tolerance is not None else CUSTOM_DEFAULTS["timing"],
                "preset": "CUSTOM",
            })
        return preset_tolerance(preset)

    # Listeners

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self.events.subscribe(listener)

    # Tolerances

    def set_tolerances(self, config) -> ToleranceConfig:
        """
        Replace the configured tolerance.

        Accepts a `ToleranceConfig` or a mapping with `pitch` (cents), `timing` (ms) and an optional
        `preset`. Emits `TolerancesChanged` once the new values are in place.

        Raises:
            ValidationError: if the configuration is malformed; the previous tolerance is kept.
        """
        self.tolerances = validate_tolerances(config)
        logger.info("Tolerances updated: %s", self.tolerances.to_dict())
        self.events.emit(TolerancesChanged(self.tolerances, self.clock()))
        return self.tolerances

    def get_tolerances(self) -> ToleranceConfig:
        return self.tolerances

    # History

    def get_history(self, exercise_id: Optional[str] = None) -> list[dict]:
        return self.ledger.entries(exercise_id)

    def clear_history(self, exercise_id: Optional[str] = None) -> bool:
        return self.ledger.clear(exercise_id)

    def export_history(self) -> str:
        return self.ledger.export_json()

    def import_history(self, json_data: str) -> int:
        return self.ledger.import_json(json_data)

    # Analysis

    def _smoothing_factor(self) -> float:
        if self.config.smoothing_factor is not None:
            smoothing_window_ms(self.config.smoothing_factor)
            return self.config.smoothing_factor
        try:
            settings = self.store.get(SETTINGS_KEY, {}) or {}
        except Exception as e:
            logger.warning("Failed to read settings, using default smoothing: %s", e)
            return DEFAULT_SMOOTHING_FACTOR
        factor = settings.get(SMOOTHING_SETTING) if isinstance(settings, dict) else None
        if factor is None:
            return DEFAULT_SMOOTHING_FACTOR
        try:
            smoothing_window_ms(factor)
        except ValidationError as e:
            logger.warning("Ignoring stored smoothing factor: %s", e)
            return DEFAULT_SMOOTHING_FACTOR
        return factor

    def _check_calibration(self, reference: Sequence[ReferenceNote], compensated: Sequence[DetectedEvent],
                           latency_offset_ms: float) -> None:
        earliest = min(e.time_ms for e in compensated)
        gap = earliest - reference[0].timestamp_ms
        if abs(gap) <= CALIBRATION_GAP_MS:
            return
        if abs(gap) > CALIBRATION_LARGE_GAP_MS:
            severity = "large"
            additional = gap - math.copysign(CALIBRATION_GAP_MS, gap)
        else:
            severity = "moderate"
            additional = math.copysign(CALIBRATION_MODERATE_STEP_MS, gap)
        recommended = latency_offset_ms + additional
        logger.warning("First detection is %.0f ms away from the first note; consider a latency offset of %.0f ms",
                       gap, recommended)
        self.events.emit(CalibrationRecommendation(
            current_offset_ms=latency_offset_ms,
            recommended_offset_ms=recommended,
            time_difference_ms=gap,
            additional_offset_ms=additional,
            severity=severity,
        ))

    def _check_adaptive_calibration(self, per_note: Sequence[NoteResult], latency_offset_ms: float) -> None:
        early = [r.timing_deviation_ms for r in per_note[:ADAPTIVE_CALIBRATION_NOTES] if r.matched]
        if len(early) < ADAPTIVE_CALIBRATION_MIN_NOTES:
            return
        median = float(np.median(early))
        if abs(median) <= ADAPTIVE_CALIBRATION_BIAS_MS:
            return
        adjustment = round(median)
        logger.info("Systematic timing bias of %.0f ms over the first %d matched notes", median, len(early))
        self.events.emit(AdaptiveCalibration(
            current_latency_ms=latency_offset_ms,
            median_deviation_ms=median,
            recommended_latency_ms=latency_offset_ms + adjustment,
            adjustment_ms=adjustment,
            confidence="high" if len(early) >= ADAPTIVE_CALIBRATION_HIGH_CONFIDENCE_NOTES else "medium",
        ))

    def analyze(self, reference: Sequence[ReferenceNote], detected: Sequence[DetectedEvent],
                latency_offset_ms: float = 0, tempo_bpm: Optional[float] = None, difficulty: Optional[str] = None,
                exercise_id: Optional[str] = None, strategy: Optional[str] = None) -> AnalysisResult:
        """
        Grade a take against its reference timeline.

        Parameters:
            reference (Sequence[ReferenceNote]): Expected notes, unique ids, ascending timestamps.
            detected (Sequence[DetectedEvent]): Continuous and onset detections in any order.
            latency_offset_ms (float): Speaker-to-microphone latency subtracted from every detection.
            tempo_bpm (Optional[float]): Tempo of the take; defaults to the first note's tempo.
            difficulty (Optional[str]): Preset for this call only. The configured tolerance is untouched.
            exercise_id (Optional[str]): Key of the history entry; "unknown" when omitted.
            strategy (Optional[str]): Alignment strategy for this call (sequential, dtw or assignment).

        Returns:
            AnalysisResult: Per-note results in reference order, extras and the aggregate.

        Raises:
            ValidationError: on a malformed reference, detection list or strategy name.
                `AnalysisFailed` is emitted before the error propagates.
        """
        started = time.perf_counter()
        self.events.emit(AnalysisStarted(
            reference_notes=len(reference) if isinstance(reference, (list, tuple)) else 0,
            detected_events=len(detected) if isinstance(detected, (list, tuple)) else 0,
            latency_offset_ms=latency_offset_ms,
        ))

        try:
            result = self._analyze(reference, detected, latency_offset_ms, tempo_bpm, difficulty,
                                   exercise_id, strategy, started)
        except Exception as e:
            logger.error("Analysis failed: %s", e)
            self.events.emit(AnalysisFailed(str(e)))
            raise

        if self.config.enable_history:
            self.ledger.append(HistoryEntry.from_result(result))
        self.events.emit(AnalysisComplete(result))
        return result

    async def analyze_async(self, *args, **kwargs) -> AnalysisResult:
        return self.analyze(*args, **kwargs)

    def _analyze(self, reference, detected, latency_offset_ms, tempo_bpm, difficulty, exercise_id, strategy,
                 started) -> AnalysisResult:
        _validate_reference(reference)
        _validate_detected(detected)
        aligner = get_aligner(strategy or self.config.strategy)
        smoothing_factor = self._smoothing_factor()

        tempo = tempo_bpm if tempo_bpm is not None else reference[0].tempo_bpm
        preset = difficulty or self.tolerances.preset
        tolerance = resolve_tolerance(preset, tempo, custom=self.tolerances if preset == "CUSTOM" else None)
        warnings: list[str] = []

        if not detected:
            logger.warning("No detected events, every note is missed")
            warnings.append("No detected events")
            matches = [None] * len(reference)
            extras = []
        else:
            compensated = compensate_latency(detected, latency_offset_ms)
            continuous, onsets = split_streams(compensated)

            if low_confidence_ratio(compensated, self.config.low_confidence_threshold) > LOW_CONFIDENCE_RATIO:
                logger.warning("More than half of the detections are below %.2f confidence",
                               self.config.low_confidence_threshold)
                warnings.append("Low detection confidence")

            self._check_calibration(reference, compensated, latency_offset_ms)

            context = AlignmentContext(
                tempo_bpm=tempo or DEFAULT_TEMPO_BPM,
                tolerance=tolerance,
                config=self.config,
            )
            alignment = aligner.align(reference, smooth(continuous, smoothing_factor),
                                      smooth(onsets, smoothing_factor), context)
            matches, extras = alignment.matches, alignment.extras

            fallback = alignment.tiers_used.get("fallback", 0)
            if fallback:
                logger.warning("%d notes were only matched by the fallback tier", fallback)
                warnings.append(f"{fallback} notes matched with fallback tolerances")

        per_note = [
            score_note(ref, match, tolerance) if match is not None else missed_note(ref)
            for ref, match in zip(reference, matches)
        ]
        for r in per_note:
            logger.debug("%s: %s (pitch %+.2f st, timing %+.0f ms)", r.note_id, r.classification,
                         r.pitch_deviation, r.timing_deviation_ms)
        self._check_adaptive_calibration(per_note, latency_offset_ms)

        aggregate = calculate_aggregate(per_note, extra_notes=len(extras))
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        result = AnalysisResult(
            aggregate=aggregate,
            per_note=per_note,
            extras=extras,
            exercise_id=exercise_id or "unknown",
            timestamp=self.clock(),
            tolerances=tolerance,
            tempo_bpm=tempo,
            strategy=aligner.name,
            duration_ms=max(ref.end_ms for ref in reference),
            analysis_time_ms=elapsed_ms,
            warnings=warnings,
        )

        if elapsed_ms > self.config.budget_ms:
            logger.warning("Analysis took %.1f ms, over the %.0f ms budget", elapsed_ms, self.config.budget_ms)
        else:
            logger.info("Analysis complete: %s %.1f%% (%s) in %.1f ms", result.exercise_id,
                        aggregate.percentage, aggregate.grade, elapsed_ms)
        return result
