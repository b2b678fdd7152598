"""
Music Grader - grades a live musical performance against a reference note timeline.

This package aligns pitch detections with the expected notes of an exercise, scores
every note on pitch and timing, and keeps a history of past takes.
"""
from importlib.metadata import PackageNotFoundError as _PkgNotFound, version
try:
    __version__ = version("music-grader")
except _PkgNotFound:
    __version__ = "0.1.0"

from .analyzer import Analyzer
from .config import AnalyzerConfig
from .errors import ValidationError, PersistenceError
from .mg_types import ReferenceNote, DetectedEvent, ToleranceConfig, AnalysisResult, NoteResult
from .storage import MemoryStore, JsonFileStore
