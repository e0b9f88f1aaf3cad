"""
Difficulty scaling: rank quantized notes by importance and thin them per tier.

importance = normalized strength * beat weight * phrase weight

    beat weight    1.0 downbeat, 0.8 beat, 0.5 half-beat, 0.3 finer
    phrase weight  1.0 first/last note of a phrase, 0.7 otherwise

A phrase ends wherever the gap to the next note exceeds
`phrase_gap_beats`.

Tiers are selected easiest first and every tier starts from the tier
below it, so Easy is a subset of Normal, Normal of Hard, Hard of Expert.
Within a tier:

1. notes below the tier's importance percentile are not candidates
2. phrase-boundary notes are always kept
3. the remaining candidates are accepted strongest-first unless they fall
   within the tier's minimum spacing of an accepted note
4. every measure that had notes but ended up empty gets its most
   important note back
"""

import math
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from autocharter.beat import BeatGrid
from autocharter.chart import ALL_DIFFICULTIES, Difficulty
from autocharter.config import DifficultyConfig
from autocharter.quantize import QuantizedNote


@dataclass(frozen=True)
class ScoredNote:
    note: QuantizedNote
    importance: float
    beat_weight: float
    phrase_weight: float
    time: float          # grid time of the snapped beat (seconds)

    @property
    def beat(self) -> float:
        return self.note.beat

    @property
    def slot(self) -> int:
        return self.note.slot

    @property
    def strength(self) -> float:
        return self.note.strength

    @property
    def boundary(self) -> bool:
        return self.phrase_weight == 1.0


def beat_weight(slot: int, resolution: int, beats_per_measure: int = 4) -> float:
    r = slot % resolution
    if r == 0:
        return 1.0 if (slot // resolution) % beats_per_measure == 0 else 0.8
    if 2 * r == resolution:
        return 0.5
    return 0.3


def phrase_boundaries(beats: Sequence[float], gap_beats: float = 2.0) -> np.ndarray:
    """True for the first and last note of each phrase (beats ascending)."""
    b = np.asarray(beats, dtype=np.float64)
    n = len(b)
    out = np.zeros(n, dtype=bool)
    if n == 0:
        return out
    breaks = np.flatnonzero(np.diff(b) > gap_beats)
    out[0] = True
    out[-1] = True
    out[breaks] = True          # last note before a gap
    out[breaks + 1] = True      # first note after it
    return out


def score_notes(
    notes: Sequence[QuantizedNote],
    grid: BeatGrid,
    config: DifficultyConfig = DifficultyConfig(),
) -> List[ScoredNote]:
    if not notes:
        return []

    strengths = np.array([n.strength for n in notes], dtype=np.float64)
    peak = strengths.max()
    norm = strengths / peak if peak > 0 else np.ones_like(strengths)

    beats = [n.beat for n in notes]
    bounds = phrase_boundaries(beats, config.phrase_gap_beats)
    times = np.atleast_1d(grid.beat_to_time(np.array(beats, dtype=np.float64)))

    scored = []
    for i, n in enumerate(notes):
        bw = beat_weight(n.slot, n.resolution, config.beats_per_measure)
        pw = 1.0 if bounds[i] else 0.7
        scored.append(
            ScoredNote(
                note=n,
                importance=float(norm[i] * bw * pw),
                beat_weight=bw,
                phrase_weight=pw,
                time=float(times[i]),
            )
        )
    return scored


def importance_threshold(importances: Sequence[float], percentile: float) -> float:
    values = sorted(importances)
    if not values or percentile <= 0.0:
        return -math.inf
    return values[min(int(len(values) * percentile), len(values) - 1)]


def select_notes(
    scored: Sequence[ScoredNote],
    tier: Difficulty,
    config: DifficultyConfig = DifficultyConfig(),
    seed: Iterable[int] = (),
) -> List[ScoredNote]:
    """
    Select one tier's notes from a scored set.

    `seed` holds the slots already chosen by the easier tier; they stay.

    Returns:
        selected notes ordered by slot
    """
    if not scored:
        return []

    by_slot = {s.slot: s for s in scored}
    threshold = importance_threshold([s.importance for s in scored], config.percentile[tier.value])
    min_gap = config.min_spacing_ms[tier.value] / 1000.0

    kept = {slot for slot in seed if slot in by_slot}
    kept.update(s.slot for s in scored if s.boundary)
    kept_times = sorted(by_slot[slot].time for slot in kept)

    candidates = [s for s in scored if s.slot not in kept and s.importance >= threshold]
    candidates.sort(key=lambda s: (-s.importance, s.slot))
    for s in candidates:
        if min_gap > 0 and kept_times:
            i = np.searchsorted(kept_times, s.time)
            near = kept_times[max(i - 1, 0) : i + 1]
            if any(abs(s.time - t) < min_gap - 1e-9 for t in near):
                continue
        kept.add(s.slot)
        kept_times.insert(int(np.searchsorted(kept_times, s.time)), s.time)

    # Refill measures that lost every note
    per_measure = config.beats_per_measure
    best_in_measure: Dict[int, ScoredNote] = {}
    filled = set()
    for s in scored:
        m = int(math.floor(s.beat / per_measure))
        if s.slot in kept:
            filled.add(m)
        best = best_in_measure.get(m)
        if best is None or s.importance > best.importance:
            best_in_measure[m] = s
    for m, s in best_in_measure.items():
        if m not in filled:
            kept.add(s.slot)

    return [by_slot[slot] for slot in sorted(kept)]


def select_tiers(
    scored: Sequence[ScoredNote],
    config: DifficultyConfig = DifficultyConfig(),
    up_to: Optional[Difficulty] = None,
) -> Dict[Difficulty, List[ScoredNote]]:
    """Select tiers easiest first, each seeded with the one before it."""
    out: Dict[Difficulty, List[ScoredNote]] = {}
    seed: List[int] = []
    for tier in ALL_DIFFICULTIES:
        chosen = select_notes(scored, tier, config, seed)
        out[tier] = chosen
        seed = [s.slot for s in chosen]
        if tier == up_to:
            break
    return out


def difficulty_rating(times: Sequence[float]) -> int:
    """
    1-10 rating from note density.

    ~0.5 notes/s -> 1, 1 -> 2, 2 -> 4, 4 -> 6, 8 -> 8, 12+ -> 10
    """
    if len(times) < 2:
        return 1
    span = float(max(times) - min(times))
    if span <= 0:
        return 1
    nps = len(times) / span
    rating = max(math.log2(nps * 1.5), 0.0) * 2.5 + 1.0
    return int(min(max(math.floor(rating + 0.5), 1), 10))
