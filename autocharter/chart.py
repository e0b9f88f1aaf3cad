"""
Chart data model: difficulty tiers, timing points, notes, visual events
and the assembled Chart handed to the serializer.

Note and event kinds are closed enums; each kind declares the parameter
fields it carries, and a Note/Event must carry exactly those.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from autocharter.curves import PathSegment
from autocharter.errors import InvalidParameter

CHARTER_NAME = "autocharter"
DEFAULT_PREVIEW_DURATION_MS = 15000


class Difficulty(Enum):
    EASY = "easy"
    NORMAL = "normal"
    HARD = "hard"
    EXPERT = "expert"

    @classmethod
    def parse(cls, name: str) -> "Difficulty":
        try:
            return cls(str(name).strip().lower())
        except ValueError:
            raise InvalidParameter(
                f"unknown difficulty {name!r}; use easy, normal, hard or expert"
            ) from None

    @property
    def label(self) -> str:
        return self.value.upper()

    @property
    def travel_beats(self) -> float:
        return _TRAVEL_BEATS[self]

    def filename(self, ext: str = "yaml") -> str:
        return f"{self.value}.{ext}"


_TRAVEL_BEATS = {
    Difficulty.EASY: 4.0,
    Difficulty.NORMAL: 3.5,
    Difficulty.HARD: 3.0,
    Difficulty.EXPERT: 3.0,
}

ALL_DIFFICULTIES: Tuple[Difficulty, ...] = tuple(Difficulty)


class SlideDirection(Enum):
    N = "N"
    NE = "NE"
    E = "E"
    SE = "SE"
    S = "S"
    SW = "SW"
    W = "W"
    NW = "NW"


SLIDE_DIRECTIONS: Tuple[SlideDirection, ...] = tuple(SlideDirection)


class NoteKind(Enum):
    TAP = "tap"
    HOLD = "hold"
    SLIDE = "slide"
    SLIDE_HOLD = "slide_hold"
    SCRATCH = "scratch"
    BEAT = "beat"
    CRITICAL = "critical"
    CRITICAL_HOLD = "critical_hold"
    DUAL_SLIDE = "dual_slide"
    ADLIB = "adlib"


# Parameter fields each note kind carries
NOTE_PARAMS: Dict[NoteKind, Tuple[str, ...]] = {
    NoteKind.TAP: (),
    NoteKind.HOLD: ("duration_beats",),
    NoteKind.SLIDE: ("direction",),
    NoteKind.SLIDE_HOLD: ("direction", "duration_beats"),
    NoteKind.SCRATCH: (),
    NoteKind.BEAT: (),
    NoteKind.CRITICAL: (),
    NoteKind.CRITICAL_HOLD: ("duration_beats",),
    NoteKind.DUAL_SLIDE: ("left", "right"),
    NoteKind.ADLIB: (),
}

DIRECTION_PARAMS = ("direction", "left", "right")


@dataclass(frozen=True)
class Note:
    beat: float
    kind: NoteKind = NoteKind.TAP
    duration_beats: Optional[float] = None
    direction: Optional[SlideDirection] = None
    left: Optional[SlideDirection] = None
    right: Optional[SlideDirection] = None

    def __post_init__(self):
        wanted = NOTE_PARAMS[self.kind]
        for name in ("duration_beats",) + DIRECTION_PARAMS:
            value = getattr(self, name)
            if name in wanted and value is None:
                raise ValueError(f"{self.kind.value} note at beat {self.beat} needs {name}")
            if name not in wanted and value is not None:
                raise ValueError(f"{self.kind.value} note at beat {self.beat} takes no {name}")
        if self.duration_beats is not None and not self.duration_beats > 0:
            raise ValueError(f"hold duration must be > 0, got {self.duration_beats}")

    def params(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in NOTE_PARAMS[self.kind]}


class EventKind(Enum):
    CAMERA_ZOOM = "camera_zoom"
    CAMERA_PAN = "camera_pan"
    CAMERA_ROTATE = "camera_rotate"
    COLOR_SHIFT = "color_shift"
    PATH_GLOW = "path_glow"
    BACKGROUND_PULSE = "background_pulse"
    SPEED_CHANGE = "speed_change"


# Parameter fields each event kind carries; "offset" is an (x, y) pair
EVENT_PARAMS: Dict[EventKind, Tuple[str, ...]] = {
    EventKind.CAMERA_ZOOM: ("scale", "duration_beats"),
    EventKind.CAMERA_PAN: ("offset", "duration_beats"),
    EventKind.CAMERA_ROTATE: ("angle_degrees", "duration_beats"),
    EventKind.COLOR_SHIFT: ("hue", "duration_beats"),
    EventKind.PATH_GLOW: ("intensity",),
    EventKind.BACKGROUND_PULSE: (),
    EventKind.SPEED_CHANGE: ("multiplier", "duration_beats"),
}


@dataclass(frozen=True)
class Event:
    beat: float
    kind: EventKind
    params: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        wanted = EVENT_PARAMS[self.kind]
        if set(self.params) != set(wanted):
            raise ValueError(
                f"{self.kind.value} event at beat {self.beat} needs exactly "
                f"{list(wanted)}, got {sorted(self.params)}"
            )
        clean = {}
        for name in wanted:
            value = self.params[name]
            if name == "offset":
                clean[name] = (float(value[0]), float(value[1]))
            else:
                clean[name] = float(value)
        object.__setattr__(self, "params", clean)


@dataclass(frozen=True)
class TimingPoint:
    beat: float
    bpm: float
    time_signature: Tuple[int, int] = (4, 4)

    def __post_init__(self):
        if not self.bpm > 0:
            raise ValueError(f"timing point at beat {self.beat} has bpm {self.bpm}")


@dataclass(frozen=True)
class SongMetadata:
    title: str
    artist: str = "Unknown"
    charter: str = CHARTER_NAME
    audio_file: str = ""
    preview_start_ms: int = 0
    preview_duration_ms: int = DEFAULT_PREVIEW_DURATION_MS
    source: str = ""
    difficulties: Tuple[Difficulty, ...] = ()


@dataclass(frozen=True)
class Chart:
    difficulty: Difficulty
    difficulty_rating: int
    timing_points: Tuple[TimingPoint, ...]
    path_segments: Tuple[PathSegment, ...]
    notes: Tuple[Note, ...]
    events: Tuple[Event, ...] = ()
    song: Optional[SongMetadata] = None
    offset: float = 0.0                 # seconds of beat 0 into the audio
    travel_beats: float = 3.0
    look_ahead_beats: float = 3.0

    def __post_init__(self):
        if not self.timing_points:
            raise ValueError("chart needs at least one timing point")
        for name in ("timing_points", "path_segments", "notes", "events"):
            object.__setattr__(self, name, tuple(getattr(self, name)))

    @property
    def bpm(self) -> float:
        return self.timing_points[0].bpm

    def note_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for n in self.notes:
            counts[n.kind.value] = counts.get(n.kind.value, 0) + 1
        return counts

    def summary_lines(self) -> List[str]:
        lines = [
            f"Difficulty: {self.difficulty.label} (rating {self.difficulty_rating})",
            f"BPM: {self.bpm:.2f}, offset {self.offset:.3f}s, "
            f"{len(self.timing_points)} timing point(s)",
            f"Notes: {len(self.notes)}",
        ]
        for kind, count in sorted(self.note_counts().items(), key=lambda kv: -kv[1]):
            lines.append(f"  {kind}: {count}")
        lines.append(f"Path segments: {len(self.path_segments)}")
        lines.append(f"Events: {len(self.events)}")
        if self.song is not None:
            lines.insert(0, f"Song: {self.song.title} - {self.song.artist}")
        return lines
