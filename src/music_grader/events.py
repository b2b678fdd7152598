"""Lifecycle events emitted by the analyzer and the listener registry that delivers them."""

import logging
from dataclasses import dataclass
from typing import Callable, Literal, Union

from .mg_types import AnalysisResult, ToleranceConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnalysisStarted:
    reference_notes: int
    detected_events: int
    latency_offset_ms: float


@dataclass(frozen=True)
class CalibrationRecommendation:
    """The first detection lands far from the first reference note: the latency offset looks wrong."""
    current_offset_ms: float
    recommended_offset_ms: float
    time_difference_ms: float
    additional_offset_ms: float
    severity: Literal["moderate", "large"]


@dataclass(frozen=True)
class AdaptiveCalibration:
    """The early matched notes share a systematic timing bias."""
    current_latency_ms: float
    median_deviation_ms: float
    recommended_latency_ms: float
    adjustment_ms: float
    confidence: Literal["medium", "high"]


@dataclass(frozen=True)
class AnalysisComplete:
    result: AnalysisResult


@dataclass(frozen=True)
class AnalysisFailed:
    error: str


@dataclass(frozen=True)
class TolerancesChanged:
    tolerances: ToleranceConfig
    timestamp: float


AnalysisEvent = Union[
    AnalysisStarted, CalibrationRecommendation, AdaptiveCalibration,
    AnalysisComplete, AnalysisFailed, TolerancesChanged,
]
Listener = Callable[[AnalysisEvent], None]


class EventBus:
    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register `listener`; the returned callable unregisters it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def emit(self, event: AnalysisEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed on %s", listener, type(event).__name__)
