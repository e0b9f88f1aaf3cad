"""
Chart persistence.

Two encodings of one schema:

- YAML  (.yaml / .yml): human-readable, comments allowed; a header
  comment is written.
- NPZ   (.npz): compressed numpy archive, one column array per field,
  loadable without pickle.

Both decode into the same plain dict layout and go through
`chart_from_dict`, which validates every field and bridges gaps between
path segments with a straight segment (printing a warning).
"""

import os
import zipfile
from typing import Any, Dict, List, Optional

import numpy as np
import yaml

from autocharter.chart import (
    EVENT_PARAMS,
    NOTE_PARAMS,
    SLIDE_DIRECTIONS,
    Chart,
    Difficulty,
    Event,
    EventKind,
    Note,
    NoteKind,
    SlideDirection,
    SongMetadata,
    TimingPoint,
)
from autocharter.curves import (
    SEGMENT_KINDS,
    ArcSegment,
    BezierSegment,
    CatmullRomSegment,
    LinearSegment,
    bridge,
    endpoint_gap,
)
from autocharter.errors import ChartFormatError, InputIOError

FORMAT_VERSION = 1
FORMATS = ("yaml", "npz")
GAP_TOLERANCE = 1e-3     # path units

CHART_EXTS = {".yaml": "yaml", ".yml": "yaml", ".npz": "npz"}


def format_for_path(path: str, fmt: Optional[str] = None) -> str:
    if fmt:
        fmt = fmt.lower()
        if fmt not in FORMATS:
            raise ChartFormatError(f"unknown chart format {fmt!r}; use one of {', '.join(FORMATS)}")
        return fmt
    ext = os.path.splitext(path)[1].lower()
    if ext not in CHART_EXTS:
        raise ChartFormatError(f"cannot tell chart format from extension {ext or '(none)'!r} of {path}")
    return CHART_EXTS[ext]


# ---------------------------------------------------------------------------
# Chart <-> plain dict
# ---------------------------------------------------------------------------

def _pt(p) -> List[float]:
    return [float(p[0]), float(p[1])]


def segment_to_dict(seg) -> Dict[str, Any]:
    d: Dict[str, Any] = {"kind": seg.kind}
    if isinstance(seg, LinearSegment):
        d["start"] = _pt(seg.start)
        d["end"] = _pt(seg.end)
    elif isinstance(seg, CatmullRomSegment):
        d["points"] = [_pt(p) for p in seg.points]
    elif isinstance(seg, BezierSegment):
        d["control_points"] = [_pt(p) for p in seg.control_points]
    elif isinstance(seg, ArcSegment):
        d["center"] = _pt(seg.center)
        d["radius"] = float(seg.radius)
        d["start_angle"] = float(seg.start_angle)
        d["end_angle"] = float(seg.end_angle)
    else:
        raise ChartFormatError(f"unknown path segment type {type(seg).__name__}")
    d["start_beat"] = float(seg.start_beat)
    d["end_beat"] = float(seg.end_beat)
    return d


def note_to_dict(note: Note) -> Dict[str, Any]:
    d: Dict[str, Any] = {"beat": float(note.beat), "kind": note.kind.value}
    for name, value in note.params().items():
        d[name] = value.value if isinstance(value, SlideDirection) else float(value)
    return d


def event_to_dict(event: Event) -> Dict[str, Any]:
    d: Dict[str, Any] = {"beat": float(event.beat), "kind": event.kind.value}
    for name, value in event.params.items():
        d[name] = _pt(value) if name == "offset" else float(value)
    return d


def song_to_dict(song: SongMetadata) -> Dict[str, Any]:
    return {
        "title": song.title,
        "artist": song.artist,
        "charter": song.charter,
        "audio_file": song.audio_file,
        "preview_start_ms": int(song.preview_start_ms),
        "preview_duration_ms": int(song.preview_duration_ms),
        "source": song.source,
        "difficulties": [d.value for d in song.difficulties],
    }


def chart_to_dict(chart: Chart) -> Dict[str, Any]:
    return {
        "version": FORMAT_VERSION,
        "difficulty": chart.difficulty.value,
        "difficulty_rating": int(chart.difficulty_rating),
        "offset": float(chart.offset),
        "travel_beats": float(chart.travel_beats),
        "look_ahead_beats": float(chart.look_ahead_beats),
        "song": song_to_dict(chart.song) if chart.song is not None else None,
        "timing_points": [
            {
                "beat": float(tp.beat),
                "bpm": float(tp.bpm),
                "time_signature": [int(tp.time_signature[0]), int(tp.time_signature[1])],
            }
            for tp in chart.timing_points
        ],
        "path_segments": [segment_to_dict(s) for s in chart.path_segments],
        "notes": [note_to_dict(n) for n in chart.notes],
        "events": [event_to_dict(e) for e in chart.events],
    }


def segment_from_dict(d: Dict[str, Any]):
    kind = d["kind"]
    if kind not in SEGMENT_KINDS:
        raise ChartFormatError(f"unknown path segment kind {kind!r}")
    beats = dict(start_beat=float(d["start_beat"]), end_beat=float(d["end_beat"]))
    if kind == "linear":
        return LinearSegment(start=d["start"], end=d["end"], **beats)
    if kind == "catmull_rom":
        return CatmullRomSegment(points=d["points"], **beats)
    if kind == "bezier":
        return BezierSegment(control_points=d["control_points"], **beats)
    return ArcSegment(
        center=d["center"],
        radius=float(d["radius"]),
        start_angle=float(d["start_angle"]),
        end_angle=float(d["end_angle"]),
        **beats,
    )


def note_from_dict(d: Dict[str, Any]) -> Note:
    try:
        kind = NoteKind(d["kind"])
    except ValueError:
        raise ChartFormatError(f"unknown note kind {d['kind']!r} at beat {d.get('beat')}") from None
    params: Dict[str, Any] = {}
    for name in NOTE_PARAMS[kind]:
        value = d[name]
        params[name] = float(value) if name == "duration_beats" else SlideDirection(value)
    return Note(beat=float(d["beat"]), kind=kind, **params)


def event_from_dict(d: Dict[str, Any]) -> Event:
    try:
        kind = EventKind(d["kind"])
    except ValueError:
        raise ChartFormatError(f"unknown event kind {d['kind']!r} at beat {d.get('beat')}") from None
    return Event(beat=float(d["beat"]), kind=kind, params={n: d[n] for n in EVENT_PARAMS[kind]})


def song_from_dict(d: Dict[str, Any]) -> SongMetadata:
    return SongMetadata(
        title=str(d["title"]),
        artist=str(d.get("artist", "Unknown")),
        charter=str(d.get("charter", "")),
        audio_file=str(d.get("audio_file", "")),
        preview_start_ms=int(d.get("preview_start_ms", 0)),
        preview_duration_ms=int(d.get("preview_duration_ms", 15000)),
        source=str(d.get("source", "")),
        difficulties=tuple(Difficulty(x) for x in d.get("difficulties", [])),
    )


def bridge_gaps(segments: List[Any], source: str = "chart") -> List[Any]:
    """Insert a straight segment wherever consecutive segments do not meet."""
    out: List[Any] = []
    for seg in segments:
        if out:
            gap = endpoint_gap(out[-1], seg)
            if gap > GAP_TOLERANCE:
                print(
                    f"  Warning: {source}: path gap of {gap:.3f} units at beat "
                    f"{out[-1].end_beat:g}; bridging with a straight segment."
                )
                out.append(bridge(out[-1], seg))
        out.append(seg)
    return out


def chart_from_dict(d: Dict[str, Any], source: str = "chart") -> Chart:
    """Build a Chart from its dict layout; raises ChartFormatError when malformed."""
    if not isinstance(d, dict):
        raise ChartFormatError(f"{source}: expected a mapping at the top level")
    try:
        segments = [segment_from_dict(s) for s in d["path_segments"]]
        song = d.get("song")
        return Chart(
            difficulty=Difficulty(d["difficulty"]),
            difficulty_rating=int(d.get("difficulty_rating", 0)),
            timing_points=tuple(
                TimingPoint(
                    beat=float(tp["beat"]),
                    bpm=float(tp["bpm"]),
                    time_signature=tuple(int(x) for x in tp.get("time_signature", (4, 4))),
                )
                for tp in d["timing_points"]
            ),
            path_segments=tuple(bridge_gaps(segments, source)),
            notes=tuple(note_from_dict(n) for n in d["notes"]),
            events=tuple(event_from_dict(e) for e in d.get("events") or []),
            song=song_from_dict(song) if song else None,
            offset=float(d.get("offset", 0.0)),
            travel_beats=float(d.get("travel_beats", 3.0)),
            look_ahead_beats=float(d.get("look_ahead_beats", 3.0)),
        )
    except ChartFormatError:
        raise
    except KeyError as e:
        raise ChartFormatError(f"{source}: missing field {e}") from e
    except (TypeError, ValueError, IndexError) as e:
        raise ChartFormatError(f"{source}: {e}") from e


# ---------------------------------------------------------------------------
# YAML
# ---------------------------------------------------------------------------

def chart_to_yaml(chart: Chart) -> str:
    header = (
        f"# autocharter chart: {chart.difficulty.value}, "
        f"{chart.bpm:.2f} BPM, {len(chart.notes)} notes\n"
    )
    return header + yaml.safe_dump(chart_to_dict(chart), sort_keys=False, default_flow_style=None)


def chart_from_yaml(text: str, source: str = "chart") -> Chart:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ChartFormatError(f"{source}: invalid YAML: {e}") from e
    return chart_from_dict(data, source)


# ---------------------------------------------------------------------------
# NPZ
# ---------------------------------------------------------------------------

_SONG_TEXT_FIELDS = ("title", "artist", "charter", "audio_file", "source")


def chart_to_arrays(chart: Chart) -> Dict[str, np.ndarray]:
    d = chart_to_dict(chart)
    arrays: Dict[str, np.ndarray] = {
        "version": np.array(FORMAT_VERSION),
        "difficulty": np.array(d["difficulty"]),
        "scalars": np.array(
            [d["difficulty_rating"], d["offset"], d["travel_beats"], d["look_ahead_beats"]],
            dtype=np.float64,
        ),
    }

    song = d["song"]
    arrays["has_song"] = np.array(song is not None)
    if song is not None:
        arrays["song_text"] = np.array([song[k] for k in _SONG_TEXT_FIELDS])
        arrays["song_preview"] = np.array(
            [song["preview_start_ms"], song["preview_duration_ms"]], dtype=np.int64
        )
        arrays["song_difficulties"] = np.array(song["difficulties"], dtype=str)

    tps = d["timing_points"]
    arrays["tp_beat"] = np.array([t["beat"] for t in tps], dtype=np.float64)
    arrays["tp_bpm"] = np.array([t["bpm"] for t in tps], dtype=np.float64)
    arrays["tp_signature"] = np.array([t["time_signature"] for t in tps], dtype=np.int64).reshape(-1, 2)

    notes = d["notes"]
    dir_index = {sd.value: i for i, sd in enumerate(SLIDE_DIRECTIONS)}
    arrays["note_beat"] = np.array([n["beat"] for n in notes], dtype=np.float64)
    arrays["note_kind"] = np.array([n["kind"] for n in notes], dtype=str)
    arrays["note_duration"] = np.array(
        [n.get("duration_beats", np.nan) for n in notes], dtype=np.float64
    )
    for name in ("direction", "left", "right"):
        arrays[f"note_{name}"] = np.array(
            [dir_index[n[name]] if name in n else -1 for n in notes], dtype=np.int64
        )

    segs = d["path_segments"]
    offsets = [0]
    points: List[List[float]] = []
    arc = []
    for s in segs:
        if s["kind"] == "linear":
            pts = [s["start"], s["end"]]
        elif s["kind"] == "catmull_rom":
            pts = s["points"]
        elif s["kind"] == "bezier":
            pts = s["control_points"]
        else:
            pts = [s["center"]]
        points.extend(pts)
        offsets.append(len(points))
        arc.append(
            [s["radius"], s["start_angle"], s["end_angle"]] if s["kind"] == "arc" else [np.nan] * 3
        )
    arrays["seg_kind"] = np.array([s["kind"] for s in segs], dtype=str)
    arrays["seg_beats"] = np.array(
        [[s["start_beat"], s["end_beat"]] for s in segs], dtype=np.float64
    ).reshape(-1, 2)
    arrays["seg_offsets"] = np.array(offsets, dtype=np.int64)
    arrays["seg_points"] = np.array(points, dtype=np.float64).reshape(-1, 2)
    arrays["seg_arc"] = np.array(arc, dtype=np.float64).reshape(-1, 3)

    events = d["events"]
    values = []
    for e in events:
        row: List[float] = []
        for name in EVENT_PARAMS[EventKind(e["kind"])]:
            row.extend(e[name] if name == "offset" else [e[name]])
        values.append(row + [np.nan] * (3 - len(row)))
    arrays["event_beat"] = np.array([e["beat"] for e in events], dtype=np.float64)
    arrays["event_kind"] = np.array([e["kind"] for e in events], dtype=str)
    arrays["event_values"] = np.array(values, dtype=np.float64).reshape(-1, 3)
    return arrays


def arrays_to_dict(data) -> Dict[str, Any]:
    """Rebuild the chart dict layout from an npz archive's arrays."""
    scalars = data["scalars"]
    d: Dict[str, Any] = {
        "version": int(data["version"]),
        "difficulty": str(data["difficulty"]),
        "difficulty_rating": int(scalars[0]),
        "offset": float(scalars[1]),
        "travel_beats": float(scalars[2]),
        "look_ahead_beats": float(scalars[3]),
        "song": None,
    }

    if bool(data["has_song"]):
        text = [str(x) for x in data["song_text"]]
        song = dict(zip(_SONG_TEXT_FIELDS, text))
        preview = data["song_preview"]
        song["preview_start_ms"] = int(preview[0])
        song["preview_duration_ms"] = int(preview[1])
        song["difficulties"] = [str(x) for x in data["song_difficulties"]]
        d["song"] = song

    d["timing_points"] = [
        {"beat": float(b), "bpm": float(bpm), "time_signature": [int(sig[0]), int(sig[1])]}
        for b, bpm, sig in zip(data["tp_beat"], data["tp_bpm"], data["tp_signature"])
    ]

    notes = []
    for i, kind in enumerate(data["note_kind"]):
        n: Dict[str, Any] = {"beat": float(data["note_beat"][i]), "kind": str(kind)}
        for name in NOTE_PARAMS[NoteKind(str(kind))]:
            if name == "duration_beats":
                n[name] = float(data["note_duration"][i])
            else:
                n[name] = SLIDE_DIRECTIONS[int(data[f"note_{name}"][i])].value
        notes.append(n)
    d["notes"] = notes

    offsets = data["seg_offsets"]
    points = data["seg_points"]
    segs = []
    for i, kind in enumerate(data["seg_kind"]):
        kind = str(kind)
        pts = [[float(x), float(y)] for x, y in points[offsets[i] : offsets[i + 1]]]
        s: Dict[str, Any] = {"kind": kind}
        if kind == "linear":
            s["start"], s["end"] = pts[0], pts[1]
        elif kind == "catmull_rom":
            s["points"] = pts
        elif kind == "bezier":
            s["control_points"] = pts
        else:
            radius, start, end = data["seg_arc"][i]
            s.update(center=pts[0], radius=float(radius), start_angle=float(start), end_angle=float(end))
        s["start_beat"] = float(data["seg_beats"][i][0])
        s["end_beat"] = float(data["seg_beats"][i][1])
        segs.append(s)
    d["path_segments"] = segs

    events = []
    for i, kind in enumerate(data["event_kind"]):
        e: Dict[str, Any] = {"beat": float(data["event_beat"][i]), "kind": str(kind)}
        values = list(data["event_values"][i])
        for name in EVENT_PARAMS[EventKind(str(kind))]:
            if name == "offset":
                e[name] = [float(values.pop(0)), float(values.pop(0))]
            else:
                e[name] = float(values.pop(0))
        events.append(e)
    d["events"] = events
    return d


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def save_chart(chart: Chart, path: str, fmt: Optional[str] = None) -> str:
    """Write `chart` to `path` in the given (or extension-implied) format."""
    fmt = format_for_path(path, fmt)
    parent = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(parent, exist_ok=True)
        if fmt == "yaml":
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(chart_to_yaml(chart))
        else:
            with open(path, "wb") as fh:
                np.savez_compressed(fh, **chart_to_arrays(chart))
    except OSError as e:
        raise ChartFormatError(f"cannot write chart {path}: {e}") from e
    return path


def load_chart(path: str, fmt: Optional[str] = None) -> Chart:
    fmt = format_for_path(path, fmt)
    if not os.path.isfile(path):
        raise InputIOError(f"chart file not found: {path}", "serialize")
    try:
        if fmt == "yaml":
            with open(path, "r", encoding="utf-8") as fh:
                return chart_from_yaml(fh.read(), source=path)
        with np.load(path, allow_pickle=False) as data:
            d = arrays_to_dict(data)
    except OSError as e:
        raise InputIOError(f"cannot read chart {path}: {e}", "serialize") from e
    except (zipfile.BadZipFile, KeyError, ValueError, IndexError) as e:
        raise ChartFormatError(f"{path}: malformed chart archive: {e}") from e
    return chart_from_dict(d, source=path)


def save_metadata(song: SongMetadata, path: str) -> str:
    text = "# autocharter song metadata\n" + yaml.safe_dump(song_to_dict(song), sort_keys=False)
    try:
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(text)
    except OSError as e:
        raise ChartFormatError(f"cannot write metadata {path}: {e}") from e
    return path


def load_metadata(path: str) -> SongMetadata:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except OSError as e:
        raise InputIOError(f"cannot read metadata {path}: {e}", "serialize") from e
    except yaml.YAMLError as e:
        raise ChartFormatError(f"{path}: invalid YAML: {e}") from e
    try:
        return song_from_dict(data)
    except (KeyError, TypeError, ValueError) as e:
        raise ChartFormatError(f"{path}: malformed metadata: {e}") from e
