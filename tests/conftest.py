import pytest
from mido import MidiTrack, MetaMessage, Message

from music_grader.analyzer import Analyzer
from music_grader.mg_types import ReferenceNote, DetectedEvent
from music_grader.storage import MemoryStore

FIXED_TIME = 1_700_000_000.0


def continuous(t, midi, confidence=0.9):
    return DetectedEvent(kind="continuous", timestamp_ms=t, midi=midi, confidence=confidence)


def onset(t, midi, confidence=0.9):
    return DetectedEvent(kind="onset", timestamp_ms=t, midi=midi, confidence=confidence)


@pytest.fixture
def reference():
    """C4, D4, E4 on the beat at 120 BPM."""
    return [
        ReferenceNote(id="n1", midi=60, timestamp_ms=0, duration_ms=500),
        ReferenceNote(id="n2", midi=62, timestamp_ms=500, duration_ms=500),
        ReferenceNote(id="n3", midi=64, timestamp_ms=1000, duration_ms=500),
    ]


@pytest.fixture
def perfect_take():
    return [continuous(0, 60), continuous(500, 62), continuous(1000, 64)]


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def analyzer(store):
    return Analyzer(store=store, clock=lambda: FIXED_TIME)


@pytest.fixture
def recorded(analyzer):
    """Every event the analyzer emits, in order."""
    events = []
    analyzer.subscribe(events.append)
    return events


@pytest.fixture
def scale_track():
    """C4, D4, E4 quarter notes at 120 BPM, 480 ticks per beat."""
    track = MidiTrack()
    track.append(MetaMessage('set_tempo', tempo=500000, time=0))
    for note in (60, 62, 64):
        track.append(Message('note_on', note=note, velocity=80, time=0))
        track.append(Message('note_off', note=note, velocity=0, time=480))
    return track
