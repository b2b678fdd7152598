import asyncio
import json
import logging

import pytest

from music_grader.analyzer import Analyzer
from music_grader.config import AnalyzerConfig
from music_grader.errors import ValidationError
from music_grader.events import (
    AnalysisStarted, AnalysisComplete, AnalysisFailed, CalibrationRecommendation,
    AdaptiveCalibration, TolerancesChanged,
)
from music_grader.mg_types import ReferenceNote, DetectedEvent, ToleranceConfig
from music_grader.storage import MemoryStore
from conftest import continuous, onset, FIXED_TIME


def shifted(events, ms):
    return [continuous(e.timestamp_ms + ms, e.midi, e.confidence) for e in events]


def test_perfect_take(analyzer, reference, perfect_take):
    result = analyzer.analyze(reference, perfect_take, exercise_id="scale")

    assert [r.classification for r in result.per_note] == ["PERFECT"] * 3
    assert result.aggregate.percentage == 100
    assert result.aggregate.grade == "S"
    assert result.aggregate.extra_notes == 0
    assert result.aggregate.timing_consistency_score == 100
    assert result.exercise_id == "scale"
    assert result.timestamp == FIXED_TIME
    assert result.duration_ms == 1500
    assert result.strategy == "sequential"
    assert result.warnings == []


def test_semitone_off_is_poor(analyzer, reference):
    take = [continuous(0, 60), continuous(500, 63), continuous(1000, 64)]
    result = analyzer.analyze(reference, take)

    assert [r.classification for r in result.per_note] == ["PERFECT", "POOR", "PERFECT"]
    assert result.per_note[1].tier == "strict"
    assert result.aggregate.percentage == 66.7
    assert result.aggregate.grade == "B-"


def test_missing_note(analyzer, reference):
    result = analyzer.analyze(reference, [continuous(0, 60), continuous(1000, 64)])

    assert [r.classification for r in result.per_note] == ["PERFECT", "MISSED", "PERFECT"]
    assert result.aggregate.notes_missed == 1


def test_extra_note(analyzer, reference, perfect_take):
    take = perfect_take[:1] + [continuous(250, 70)] + perfect_take[1:]
    result = analyzer.analyze(reference, take)

    assert [r.classification for r in result.per_note] == ["PERFECT"] * 3
    assert result.aggregate.extra_notes == 1
    assert result.extras[0].midi == pytest.approx(70)
    assert result.extras[0].raw_timestamp_ms == 250


def test_empty_take_misses_everything(analyzer, reference):
    result = analyzer.analyze(reference, [])

    assert all(r.classification == "MISSED" for r in result.per_note)
    assert result.aggregate.percentage == 0
    assert result.aggregate.grade == "F"
    assert result.warnings


def test_latency_offset_cancels_constant_delay(analyzer, reference, perfect_take):
    baseline = analyzer.analyze(reference, perfect_take)
    delayed = analyzer.analyze(reference, shifted(perfect_take, 80), latency_offset_ms=80)

    assert delayed.aggregate == baseline.aggregate
    assert [r.timing_deviation_ms for r in delayed.per_note] == [0, 0, 0]
    assert [r.detected_timestamp_raw_ms for r in delayed.per_note] == [80, 580, 1080]
    assert all(r.latency_compensation_ms == 80 for r in delayed.per_note)


@pytest.mark.parametrize("delay", [12.5, 37.25, 80.75, 143.3])
def test_fractional_latency_offset_is_invariant(analyzer, reference, delay):
    take = [continuous(0, 60), continuous(500, 62.1), continuous(1040, 64)]
    baseline = analyzer.analyze(reference, take)
    delayed = analyzer.analyze(reference, shifted(take, delay), latency_offset_ms=delay)

    assert [r.classification for r in delayed.per_note] == [r.classification for r in baseline.per_note]
    assert [r.score for r in delayed.per_note] == pytest.approx([r.score for r in baseline.per_note])
    assert [r.timing_deviation_ms for r in delayed.per_note] == pytest.approx([0, 0, 40])
    assert delayed.aggregate.percentage == baseline.aggregate.percentage
    assert delayed.aggregate.grade == baseline.aggregate.grade
    assert delayed.aggregate.timing_consistency_score == pytest.approx(baseline.aggregate.timing_consistency_score)


def test_repeated_analysis_is_identical(analyzer, reference):
    take = [continuous(10, 60.1), onset(15, 60), continuous(530, 62), continuous(1060, 64.2)]
    first = analyzer.analyze(reference, take, exercise_id="scale")
    second = analyzer.analyze(reference, take, exercise_id="scale")

    assert first.per_note == second.per_note
    assert first.aggregate == second.aggregate
    assert first.extras == second.extras


def test_onset_only_detector(analyzer, reference):
    take = [onset(0, 60), onset(500, 62), onset(1000, 64)]
    result = analyzer.analyze(reference, take)

    assert result.aggregate.percentage == 100
    assert all(r.source == "onset" for r in result.per_note)


@pytest.mark.parametrize("strategy", ["sequential", "dtw", "assignment"])
def test_strategies_agree_on_perfect_take(analyzer, reference, perfect_take, strategy):
    result = analyzer.analyze(reference, perfect_take, strategy=strategy)

    assert result.strategy == strategy
    assert result.aggregate.percentage == 100


def test_lifecycle_events(analyzer, recorded, reference, perfect_take):
    result = analyzer.analyze(reference, perfect_take)

    assert [type(e) for e in recorded] == [AnalysisStarted, AnalysisComplete]
    assert recorded[0] == AnalysisStarted(reference_notes=3, detected_events=3, latency_offset_ms=0)
    assert recorded[1].result is result


@pytest.mark.parametrize("delay, severity, recommended", [
    (300, "moderate", 100),
    (-300, "moderate", -100),
    (600, "large", 350),
])
def test_calibration_recommendation(analyzer, recorded, reference, perfect_take, delay, severity, recommended):
    analyzer.analyze(reference, shifted(perfect_take, delay))

    hints = [e for e in recorded if isinstance(e, CalibrationRecommendation)]
    assert len(hints) == 1
    assert hints[0].severity == severity
    assert hints[0].time_difference_ms == delay
    assert hints[0].recommended_offset_ms == recommended
    assert type(recorded[1]) is CalibrationRecommendation


def test_no_calibration_hint_for_small_gap(analyzer, recorded, reference, perfect_take):
    analyzer.analyze(reference, shifted(perfect_take, 200))
    assert not any(isinstance(e, CalibrationRecommendation) for e in recorded)


def _six_notes():
    return [
        ReferenceNote(id=f"n{i}", midi=midi, timestamp_ms=i * 500, duration_ms=500)
        for i, midi in enumerate((60, 62, 64, 65, 67, 69))
    ]


def test_adaptive_calibration(analyzer, recorded):
    reference = _six_notes()
    take = [continuous(r.timestamp_ms + 100, r.midi) for r in reference]
    analyzer.analyze(reference, take, latency_offset_ms=20)

    hints = [e for e in recorded if isinstance(e, AdaptiveCalibration)]
    assert hints == [AdaptiveCalibration(
        current_latency_ms=20,
        median_deviation_ms=80,
        recommended_latency_ms=100,
        adjustment_ms=80,
        confidence="medium",
    )]


def test_no_adaptive_calibration_with_few_notes(analyzer, recorded, reference, perfect_take):
    analyzer.analyze(reference, shifted(perfect_take, 100))
    assert not any(isinstance(e, AdaptiveCalibration) for e in recorded)


def test_listener_errors_do_not_fail_analysis(analyzer, reference, perfect_take):
    def broken(event):
        raise RuntimeError("listener bug")

    analyzer.subscribe(broken)
    assert analyzer.analyze(reference, perfect_take).aggregate.percentage == 100


def test_unsubscribe(analyzer, reference, perfect_take):
    seen = []
    unsubscribe = analyzer.subscribe(seen.append)
    unsubscribe()
    analyzer.analyze(reference, perfect_take)
    assert seen == []


@pytest.mark.parametrize("bad_reference", [
    [],
    None,
    "C4 D4 E4",
    [ReferenceNote(id="a", midi=60, timestamp_ms=0, duration_ms=500),
     ReferenceNote(id="a", midi=62, timestamp_ms=500, duration_ms=500)],
    [ReferenceNote(id="a", midi=60, timestamp_ms=500, duration_ms=500),
     ReferenceNote(id="b", midi=62, timestamp_ms=0, duration_ms=500)],
    [ReferenceNote(id="a", midi=128, timestamp_ms=0, duration_ms=500)],
    [{"id": "a", "midi": 60, "timestamp_ms": 0, "duration_ms": 500}],
])
def test_malformed_reference(analyzer, recorded, perfect_take, bad_reference):
    with pytest.raises(ValidationError):
        analyzer.analyze(bad_reference, perfect_take)

    assert type(recorded[-1]) is AnalysisFailed
    assert analyzer.get_history() == []


def test_malformed_detections(analyzer, reference):
    with pytest.raises(ValidationError):
        analyzer.analyze(reference, [(0, 60)])


@pytest.mark.parametrize("event", [
    DetectedEvent(kind="continuous", timestamp_ms=0),
    DetectedEvent(kind="Onset", timestamp_ms=0, midi=60),
    DetectedEvent(kind="continuous", timestamp_ms=0, midi=60, confidence=7.0),
    DetectedEvent(kind="continuous", timestamp_ms=0, midi=60, confidence=-0.1),
    DetectedEvent(kind="continuous", timestamp_ms=0, frequency_hz=-440.0),
    DetectedEvent(kind="continuous", timestamp_ms=0, frequency_hz=0.0),
    DetectedEvent(kind="continuous", timestamp_ms=float("nan"), midi=60),
    DetectedEvent(kind="continuous", timestamp_ms=0, midi="C4"),
])
def test_invalid_detected_event(analyzer, recorded, reference, event):
    with pytest.raises(ValidationError):
        analyzer.analyze(reference, [event])

    assert type(recorded[-1]) is AnalysisFailed
    assert analyzer.get_history() == []


def test_frequency_only_event_is_accepted(analyzer):
    reference = [ReferenceNote(id="a4", midi=69, timestamp_ms=0, duration_ms=500)]
    result = analyzer.analyze(reference, [DetectedEvent(kind="continuous", timestamp_ms=0, frequency_hz=440.0)])
    assert result.per_note[0].classification == "PERFECT"


def _frame_rate_take(reference, frame_ms=10):
    """A detector reporting every `frame_ms` ms plus one onset per note."""
    frames = [continuous(ref.timestamp_ms + k * frame_ms, ref.midi)
              for ref in reference for k in range(int(ref.duration_ms // frame_ms))]
    return frames + [onset(ref.timestamp_ms, ref.midi) for ref in reference]


def test_frame_rate_take_stays_within_budget(analyzer, caplog):
    pitches = (60, 62, 64, 65, 67, 69, 71, 72)
    reference = [ReferenceNote(id=f"n{i}", midi=pitches[i % len(pitches)], timestamp_ms=i * 500, duration_ms=500)
                 for i in range(100)]
    take = _frame_rate_take(reference)
    assert len(take) == 5100

    with caplog.at_level(logging.WARNING, logger="music_grader.analyzer"):
        result = analyzer.analyze(reference, take, tempo_bpm=120)

    assert result.aggregate.notes_missed == 0
    assert not [r for r in caplog.records if "budget" in r.getMessage()]


def test_unknown_strategy(analyzer, reference, perfect_take):
    with pytest.raises(ValidationError):
        analyzer.analyze(reference, perfect_take, strategy="greedy")
    with pytest.raises(ValidationError):
        Analyzer(AnalyzerConfig(strategy="greedy"))


def test_invalid_configured_smoothing(reference, perfect_take):
    analyzer = Analyzer(AnalyzerConfig(smoothing_factor=1.5))
    with pytest.raises(ValidationError):
        analyzer.analyze(reference, perfect_take)


def test_invalid_stored_smoothing_uses_default(reference, perfect_take):
    analyzer = Analyzer(store=MemoryStore({"settings": {"analyzerSmoothing": 7}}))
    assert analyzer.analyze(reference, perfect_take).aggregate.percentage == 100


def test_low_confidence_warning(analyzer, reference):
    take = [continuous(0, 60, 0.1), continuous(500, 62, 0.2), continuous(1000, 64, 0.9)]
    result = analyzer.analyze(reference, take)

    assert any("confidence" in w for w in result.warnings)


def test_fallback_warning(analyzer):
    reference = [ReferenceNote(id="a", midi=60, timestamp_ms=0, duration_ms=500)]
    result = analyzer.analyze(reference, [continuous(0, 69)])

    assert result.per_note[0].tier == "fallback"
    assert any("fallback" in w for w in result.warnings)


# Tolerances

def test_default_tolerances(analyzer):
    assert analyzer.get_tolerances() == ToleranceConfig(50, 100, "NORMAL")


def test_set_tolerances(analyzer, recorded):
    analyzer.set_tolerances({"pitch": 30, "timing": 80})

    assert analyzer.get_tolerances() == ToleranceConfig(30, 80, "CUSTOM")
    assert recorded == [TolerancesChanged(ToleranceConfig(30, 80, "CUSTOM"), FIXED_TIME)]


def test_invalid_tolerances_keep_previous(analyzer, recorded):
    with pytest.raises(ValidationError):
        analyzer.set_tolerances({"pitch": -1, "timing": 80})
    assert analyzer.get_tolerances().preset == "NORMAL"
    assert recorded == []


def test_difficulty_applies_to_one_call_only(analyzer, reference, perfect_take):
    result = analyzer.analyze(reference, perfect_take, difficulty="HARD")

    assert result.tolerances == ToleranceConfig(25, 50, "HARD")
    assert analyzer.get_tolerances().preset == "NORMAL"


def test_tempo_scales_timing_tolerance(analyzer, reference, perfect_take):
    assert analyzer.analyze(reference, perfect_take, tempo_bpm=120).tolerances.timing_ms == 125
    assert analyzer.analyze(reference, perfect_take).tolerances.timing_ms == 100


def test_tempo_from_reference(analyzer, perfect_take):
    reference = [ReferenceNote(id=f"n{i}", midi=60 + 2 * i, timestamp_ms=i * 500, duration_ms=500, tempo_bpm=60)
                 for i in range(3)]
    result = analyzer.analyze(reference, perfect_take, difficulty="EASY")

    assert result.tempo_bpm == 60
    assert result.tolerances.timing_ms == 350


def test_custom_preset_uses_configured_values(reference, perfect_take):
    analyzer = Analyzer(AnalyzerConfig(preset="CUSTOM", pitch_tolerance=20, timing_tolerance=40))
    result = analyzer.analyze(reference, perfect_take)

    assert result.tolerances == ToleranceConfig(20, 40, "CUSTOM")


def test_unknown_configured_preset():
    with pytest.raises(ValidationError):
        Analyzer(AnalyzerConfig(preset="INSANE"))


# History

def test_history_is_recorded(analyzer, reference, perfect_take):
    analyzer.analyze(reference, perfect_take, exercise_id="scale", tempo_bpm=120)

    history = analyzer.get_history("scale")
    assert len(history) == 1
    assert history[0]["percentage"] == 100
    assert history[0]["timestamp"] == FIXED_TIME
    assert history[0]["tolerances"] == {"pitch": 50, "timing": 125, "preset": "NORMAL", "tempoBpm": 120}


def test_history_is_bounded(reference, perfect_take):
    analyzer = Analyzer(AnalyzerConfig(max_history_size=5))
    for i in range(7):
        analyzer.analyze(reference, perfect_take, exercise_id=f"take{i}")

    assert [h["exerciseId"] for h in analyzer.get_history()] == [f"take{i}" for i in range(2, 7)]


def test_history_disabled(reference, perfect_take):
    analyzer = Analyzer(AnalyzerConfig(enable_history=False))
    analyzer.analyze(reference, perfect_take)
    assert analyzer.get_history() == []


def test_history_export_import(analyzer, reference, perfect_take):
    analyzer.analyze(reference, perfect_take, exercise_id="scale")
    exported = analyzer.export_history()
    assert json.loads(exported)[0]["exerciseId"] == "scale"

    other = Analyzer()
    assert other.import_history(exported) == 1
    assert other.get_history() == analyzer.get_history()

    assert analyzer.clear_history("scale")
    assert analyzer.get_history() == []


def test_failed_import_keeps_history(analyzer, reference, perfect_take):
    analyzer.analyze(reference, perfect_take, exercise_id="scale")
    with pytest.raises(ValidationError):
        analyzer.import_history('[{"exerciseId": "x"}]')
    assert len(analyzer.get_history()) == 1


def test_analyze_async(analyzer, reference, perfect_take):
    result = asyncio.run(analyzer.analyze_async(reference, perfect_take, exercise_id="scale"))
    assert result.aggregate.grade == "S"
