import logging
from typing import Any, Optional, Mapping

from .config import TOLERANCE_PRESETS, TEMPO_TOLERANCE_FACTORS, DEFAULT_PRESET, CUSTOM_DEFAULTS
from .errors import ValidationError
from .mg_types import ToleranceConfig

logger = logging.getLogger(__name__)


def preset_tolerance(preset: str, custom: Optional[ToleranceConfig] = None) -> ToleranceConfig:
    """
    Static tolerance of a difficulty preset.

    CUSTOM takes its values from `custom` (or the CUSTOM defaults); unknown names fall back to NORMAL.
    """
    if preset == "CUSTOM":
        pitch = custom.pitch_cents if custom else CUSTOM_DEFAULTS["pitch"]
        timing = custom.timing_ms if custom else CUSTOM_DEFAULTS["timing"]
        return ToleranceConfig(pitch_cents=pitch, timing_ms=timing, preset="CUSTOM")
    base = TOLERANCE_PRESETS.get(preset)
    if base is None:
        logger.debug("Unknown preset %r, using %s", preset, DEFAULT_PRESET)
        base = TOLERANCE_PRESETS[DEFAULT_PRESET]
    return ToleranceConfig(pitch_cents=base["pitch"], timing_ms=base["timing"], preset=preset)


def timing_tolerance_for_tempo(tempo_bpm: float, preset: str) -> int:
    """Share of one beat accepted as timing tolerance, rounded to whole milliseconds."""
    beat_ms = 60000 / tempo_bpm
    factor = TEMPO_TOLERANCE_FACTORS.get(preset, TEMPO_TOLERANCE_FACTORS[DEFAULT_PRESET])
    return round(beat_ms * factor)


def resolve_tolerance(preset: str, tempo_bpm: Optional[float] = None,
                      custom: Optional[ToleranceConfig] = None) -> ToleranceConfig:
    """
    Concrete tolerance for one analysis call.

    Parameters:
        preset (str): Difficulty preset name (EASY, NORMAL, HARD, CUSTOM).
        tempo_bpm (Optional[float]): Tempo of the take. When positive, the timing tolerance is a
            preset-dependent share of the beat; otherwise the preset's static timing is used.
        custom (Optional[ToleranceConfig]): Values used by the CUSTOM preset.

    Returns:
        ToleranceConfig: The pitch tolerance is always the preset's static value.
    """
    base = preset_tolerance(preset, custom)
    if tempo_bpm is not None and tempo_bpm > 0:
        timing = timing_tolerance_for_tempo(tempo_bpm, preset)
    else:
        timing = base.timing_ms
    return ToleranceConfig(pitch_cents=base.pitch_cents, timing_ms=timing, preset=base.preset)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_tolerances(config: Any) -> ToleranceConfig:
    """
    Validate a user-supplied tolerance configuration.

    Accepts a `ToleranceConfig` or a mapping with `pitch`, `timing` and an optional `preset`.

    Raises:
        ValidationError: if pitch or timing is not a positive number, or the preset is unknown.
    """
    if isinstance(config, ToleranceConfig):
        pitch, timing, preset = config.pitch_cents, config.timing_ms, config.preset
    elif isinstance(config, Mapping):
        pitch, timing, preset = config.get("pitch"), config.get("timing"), config.get("preset") or "CUSTOM"
    else:
        raise ValidationError("Tolerances must be a ToleranceConfig or a mapping")

    if not _is_number(pitch) or pitch <= 0:
        raise ValidationError("Pitch tolerance must be a positive number")
    if not _is_number(timing) or timing <= 0:
        raise ValidationError("Timing tolerance must be a positive number")
    if preset not in TOLERANCE_PRESETS:
        raise ValidationError(f"Invalid preset: {preset}. Must be one of: {', '.join(TOLERANCE_PRESETS)}")
    return ToleranceConfig(pitch_cents=pitch, timing_ms=timing, preset=preset)
