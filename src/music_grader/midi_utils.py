from mido import MidiTrack, tick2second, tempo2bpm

from .mg_types import ReferenceNote

DEFAULT_TEMPO_US = 500_000  # 120 BPM


def reference_from_track(track: MidiTrack, ticks_per_beat: int = 480, tempo_us: int = DEFAULT_TEMPO_US,
                         id_prefix: str = "n") -> list[ReferenceNote]:
    """
    Build a reference timeline from a MIDI track.

    Parameters:
        track (MidiTrack): MIDI track to parse; message times are in ticks.
        ticks_per_beat (int): Resolution of the file the track belongs to.
        tempo_us (int): Initial tempo in microseconds per beat; `set_tempo` messages override it.
        id_prefix (str): Prefix of the generated note ids (`n0`, `n1`, ...).

    Returns:
        list[ReferenceNote]: Notes in ascending onset order, timed in milliseconds from the track
        start, each carrying the tempo in effect at its onset.

    Notes:
        - If the same pitch receives a new note-on while it is already active, the previously
          active note is closed at that time.
        - Notes still active at the end of the track are closed at the track's final time.
    """
    current_ms = 0.0
    tempo = tempo_us
    note_on: dict[int, tuple[float, int]] = {}
    collected: list[tuple[float, float, int, int]] = []

    for msg in track:
        current_ms += tick2second(msg.time, ticks_per_beat, tempo) * 1000.0
        if msg.type == "set_tempo":
            tempo = msg.tempo
        elif msg.type == "note_on" and msg.velocity > 0:
            if msg.note in note_on:
                start_ms, start_tempo = note_on.pop(msg.note)
                collected.append((start_ms, current_ms - start_ms, msg.note, start_tempo))
            note_on[msg.note] = (current_ms, tempo)
        elif msg.type in ("note_off", "note_on") and msg.note in note_on:
            start_ms, start_tempo = note_on.pop(msg.note)
            collected.append((start_ms, current_ms - start_ms, msg.note, start_tempo))

    for pitch, (start_ms, start_tempo) in note_on.items():
        collected.append((start_ms, current_ms - start_ms, pitch, start_tempo))

    collected.sort(key=lambda c: (c[0], c[2]))
    return [
        ReferenceNote(
            id=f"{id_prefix}{i}",
            midi=pitch,
            timestamp_ms=round(start_ms, 3),
            duration_ms=round(duration_ms, 3),
            tempo_bpm=round(tempo2bpm(note_tempo), 3),
        )
        for i, (start_ms, duration_ms, pitch, note_tempo) in enumerate(collected)
    ]
