"""
Turn selected notes into typed chart notes.

Per tier:

- Easy:   taps; strong downbeats become holds
- Normal: strong downbeats hold, ~15% slides
- Hard:   strong downbeats become criticals (40%) or holds, rapid pairs
          stay taps, ~25% slides
- Expert: strongest downbeats critical (30%) or hold, rapid pairs stay
          taps, ~20% slides, ~8% slide-holds, ~5% criticals

Randomness comes only from the generator passed in, so a fixed seed
reproduces the same chart.
"""

from typing import List, Sequence

import numpy as np

from autocharter.chart import SLIDE_DIRECTIONS, Difficulty, Note, NoteKind, SlideDirection
from autocharter.difficulty import ScoredNote

# Minimum strength for a whole-beat note to become a hold/critical
STRONG_STRENGTH = {
    Difficulty.EASY: 0.8,
    Difficulty.NORMAL: 0.8,
    Difficulty.HARD: 0.85,
    Difficulty.EXPERT: 0.9,
}


def _on_beat(beat: float) -> bool:
    frac = beat - np.floor(beat)
    return frac < 0.01 or frac > 0.99


def _gap_after(notes: Sequence[ScoredNote], idx: int):
    if idx + 1 >= len(notes):
        return None
    return notes[idx + 1].beat - notes[idx].beat


def hold_duration(notes: Sequence[ScoredNote], idx: int) -> float:
    """75% of the gap to the next note, between half a beat and two beats."""
    gap = _gap_after(notes, idx)
    if gap is None:
        return 1.0
    return float(min(max(gap * 0.75, 0.5), 2.0))


def is_rapid_pair(notes: Sequence[ScoredNote], idx: int) -> bool:
    gap = _gap_after(notes, idx)
    return gap is not None and gap <= 0.25 + 0.01


def pick_direction(rng: np.random.Generator) -> SlideDirection:
    return SLIDE_DIRECTIONS[int(rng.integers(0, len(SLIDE_DIRECTIONS)))]


def _pick_kind(notes: Sequence[ScoredNote], idx: int, tier: Difficulty, rng: np.random.Generator) -> Note:
    s = notes[idx]
    beat = s.beat
    strong = s.strength > STRONG_STRENGTH[tier] and _on_beat(beat)

    if tier == Difficulty.EASY:
        if strong:
            return Note(beat, NoteKind.HOLD, duration_beats=hold_duration(notes, idx))
        return Note(beat)

    roll = int(rng.integers(0, 100))

    if tier == Difficulty.NORMAL:
        if strong:
            return Note(beat, NoteKind.HOLD, duration_beats=hold_duration(notes, idx))
        if roll < 15:
            return Note(beat, NoteKind.SLIDE, direction=pick_direction(rng))
        return Note(beat)

    if tier == Difficulty.HARD:
        if strong:
            if roll < 40:
                return Note(beat, NoteKind.CRITICAL)
            return Note(beat, NoteKind.HOLD, duration_beats=hold_duration(notes, idx))
        if is_rapid_pair(notes, idx):
            return Note(beat)
        if roll < 25:
            return Note(beat, NoteKind.SLIDE, direction=pick_direction(rng))
        return Note(beat)

    # Expert
    if strong:
        if roll < 30:
            return Note(beat, NoteKind.CRITICAL)
        return Note(beat, NoteKind.HOLD, duration_beats=hold_duration(notes, idx))
    if is_rapid_pair(notes, idx):
        return Note(beat)
    if roll < 20:
        return Note(beat, NoteKind.SLIDE, direction=pick_direction(rng))
    if roll < 28:
        gap = _gap_after(notes, idx)
        if gap is not None and gap >= 1.0:
            return Note(
                beat,
                NoteKind.SLIDE_HOLD,
                direction=pick_direction(rng),
                duration_beats=hold_duration(notes, idx),
            )
        return Note(beat, NoteKind.SLIDE, direction=pick_direction(rng))
    if roll < 33:
        return Note(beat, NoteKind.CRITICAL)
    return Note(beat)


def assign_note_kinds(
    notes: Sequence[ScoredNote],
    tier: Difficulty,
    rng: np.random.Generator,
) -> List[Note]:
    """One chart Note per selected note, in the same order."""
    return [_pick_kind(notes, i, tier, rng) for i in range(len(notes))]
