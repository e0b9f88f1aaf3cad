"""
Snap onsets onto the beat grid.

A note's position is kept as an integer slot at a fixed resolution
(slots per beat), so its beat value is an exact multiple of 1/resolution:

    resolution 4:  slot 0 -> beat 0.0, slot 1 -> beat 0.25, slot 4 -> beat 1.0
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List

import numpy as np

from autocharter.beat import BeatGrid
from autocharter.config import GRID_RESOLUTIONS
from autocharter.errors import InvalidParameter
from autocharter.onset import OnsetEvent


@dataclass(frozen=True)
class QuantizedNote:
    slot: int
    resolution: int
    strength: float
    time: float         # onset time (seconds) the note was snapped from

    @property
    def beat(self) -> float:
        return self.slot / float(self.resolution)

    def slot_in_beat(self) -> int:
        return self.slot % self.resolution


def quantize(
    onsets: Iterable[OnsetEvent],
    grid: BeatGrid,
    resolution: int,
) -> List[QuantizedNote]:
    """
    Map onsets to the nearest 1/resolution beat slot.

    When two onsets land on one slot the stronger survives (the earlier one
    on equal strength). Onsets before beat 0 are dropped.

    Returns:
        notes sorted by slot, at most one per slot
    """
    if resolution not in GRID_RESOLUTIONS:
        raise InvalidParameter(
            f"grid resolution must be one of {GRID_RESOLUTIONS}, got {resolution}", "quantize"
        )

    events = list(onsets)
    if not events:
        return []

    beats = grid.time_to_beat(np.array([e.time for e in events], dtype=np.float64))
    beats = np.atleast_1d(beats)
    slots = np.rint(beats * resolution).astype(int)

    by_slot: Dict[int, QuantizedNote] = {}
    for e, beat, slot in zip(events, beats, slots):
        slot = int(slot)
        if beat < -1e-6:
            continue
        old = by_slot.get(slot)
        if old is not None:
            if e.strength < old.strength:
                continue
            if e.strength == old.strength and e.time >= old.time:
                continue
        by_slot[slot] = QuantizedNote(
            slot=slot, resolution=resolution, strength=float(e.strength), time=float(e.time)
        )

    return [by_slot[s] for s in sorted(by_slot)]


def attach_beats(onsets: Iterable[OnsetEvent], grid: BeatGrid) -> List[OnsetEvent]:
    """Fill in each onset's fractional beat position from the grid."""
    events = list(onsets)
    if not events:
        return []
    beats = np.atleast_1d(grid.time_to_beat(np.array([e.time for e in events])))
    return [e.with_beat(b) for e, b in zip(events, beats)]
