"""
Path segment kinds and arc-length sampling.

Every segment covers a beat range and evaluates `position(t)` for t in
[0, 1]. The closed set of kinds:

    linear       straight line start -> end
    catmull_rom  uniform Catmull-Rom spline through every point
    bezier       chain of cubic Beziers, 3n+1 control points
    arc          circular arc, angles in radians
"""

import bisect
import math
from dataclasses import dataclass
from typing import ClassVar, Dict, List, Tuple, Union

import numpy as np

Point = Tuple[float, float]


def _as_point(p) -> Point:
    return (float(p[0]), float(p[1]))


def _as_points(points) -> Tuple[Point, ...]:
    return tuple(_as_point(p) for p in points)


def _check_beats(start_beat: float, end_beat: float):
    if end_beat < start_beat:
        raise ValueError(f"segment ends (beat {end_beat}) before it starts (beat {start_beat})")


@dataclass(frozen=True)
class LinearSegment:
    start: Point
    end: Point
    start_beat: float
    end_beat: float

    kind: ClassVar[str] = "linear"

    def __post_init__(self):
        object.__setattr__(self, "start", _as_point(self.start))
        object.__setattr__(self, "end", _as_point(self.end))
        _check_beats(self.start_beat, self.end_beat)

    @property
    def start_point(self) -> Point:
        return self.start

    @property
    def end_point(self) -> Point:
        return self.end

    def position(self, t: float) -> Point:
        t = min(max(t, 0.0), 1.0)
        return (
            self.start[0] + (self.end[0] - self.start[0]) * t,
            self.start[1] + (self.end[1] - self.start[1]) * t,
        )


@dataclass(frozen=True)
class CatmullRomSegment:
    points: Tuple[Point, ...]
    start_beat: float
    end_beat: float

    kind: ClassVar[str] = "catmull_rom"

    def __post_init__(self):
        object.__setattr__(self, "points", _as_points(self.points))
        if len(self.points) < 2:
            raise ValueError(f"catmull_rom segment needs >= 2 points, got {len(self.points)}")
        _check_beats(self.start_beat, self.end_beat)

    @property
    def start_point(self) -> Point:
        return self.points[0]

    @property
    def end_point(self) -> Point:
        return self.points[-1]

    def position(self, t: float) -> Point:
        pts = self.points
        spans = len(pts) - 1
        t = min(max(t, 0.0), 1.0) * spans
        i = min(int(t), spans - 1)
        u = t - i

        # Endpoints are duplicated so the curve passes through every point
        p0 = pts[max(i - 1, 0)]
        p1 = pts[i]
        p2 = pts[i + 1]
        p3 = pts[min(i + 2, spans)]

        u2 = u * u
        u3 = u2 * u
        out = []
        for k in range(2):
            out.append(
                0.5
                * (
                    2.0 * p1[k]
                    + (-p0[k] + p2[k]) * u
                    + (2.0 * p0[k] - 5.0 * p1[k] + 4.0 * p2[k] - p3[k]) * u2
                    + (-p0[k] + 3.0 * p1[k] - 3.0 * p2[k] + p3[k]) * u3
                )
            )
        return (out[0], out[1])


@dataclass(frozen=True)
class BezierSegment:
    control_points: Tuple[Point, ...]
    start_beat: float
    end_beat: float

    kind: ClassVar[str] = "bezier"

    def __post_init__(self):
        object.__setattr__(self, "control_points", _as_points(self.control_points))
        n = len(self.control_points)
        if n < 4 or (n - 1) % 3 != 0:
            raise ValueError(f"bezier segment needs 3n+1 control points (n >= 1), got {n}")
        _check_beats(self.start_beat, self.end_beat)

    @property
    def start_point(self) -> Point:
        return self.control_points[0]

    @property
    def end_point(self) -> Point:
        return self.control_points[-1]

    def position(self, t: float) -> Point:
        cps = self.control_points
        spans = (len(cps) - 1) // 3
        t = min(max(t, 0.0), 1.0) * spans
        i = min(int(t), spans - 1)
        u = t - i
        p0, p1, p2, p3 = cps[3 * i : 3 * i + 4]
        v = 1.0 - u
        a, b, c, d = v * v * v, 3.0 * v * v * u, 3.0 * v * u * u, u * u * u
        return (
            a * p0[0] + b * p1[0] + c * p2[0] + d * p3[0],
            a * p0[1] + b * p1[1] + c * p2[1] + d * p3[1],
        )


@dataclass(frozen=True)
class ArcSegment:
    center: Point
    radius: float
    start_angle: float    # radians
    end_angle: float      # radians
    start_beat: float
    end_beat: float

    kind: ClassVar[str] = "arc"

    def __post_init__(self):
        object.__setattr__(self, "center", _as_point(self.center))
        if not self.radius > 0:
            raise ValueError(f"arc radius must be > 0, got {self.radius}")
        _check_beats(self.start_beat, self.end_beat)

    @property
    def start_point(self) -> Point:
        return self.position(0.0)

    @property
    def end_point(self) -> Point:
        return self.position(1.0)

    def position(self, t: float) -> Point:
        t = min(max(t, 0.0), 1.0)
        a = self.start_angle + (self.end_angle - self.start_angle) * t
        return (
            self.center[0] + self.radius * math.cos(a),
            self.center[1] + self.radius * math.sin(a),
        )


PathSegment = Union[LinearSegment, CatmullRomSegment, BezierSegment, ArcSegment]

SEGMENT_KINDS: Dict[str, type] = {
    cls.kind: cls for cls in (LinearSegment, CatmullRomSegment, BezierSegment, ArcSegment)
}


def endpoint_gap(a: PathSegment, b: PathSegment) -> float:
    """Distance between the end of `a` and the start of `b`."""
    ax, ay = a.end_point
    bx, by = b.start_point
    return math.hypot(bx - ax, by - ay)


def bridge(a: PathSegment, b: PathSegment) -> LinearSegment:
    """Straight segment joining the end of `a` to the start of `b`."""
    return LinearSegment(
        start=a.end_point,
        end=b.start_point,
        start_beat=a.end_beat,
        end_beat=max(a.end_beat, b.start_beat),
    )


class ArcLengthTable:
    """
    Maps distance along a segment to its curve parameter.

    The segment is sampled at `samples` evenly spaced parameters and the
    chord lengths accumulated; lookups binary-search the accumulated
    distances and interpolate linearly between neighbours.
    """

    def __init__(self, segment: PathSegment, samples: int = 1000):
        if samples < 1:
            raise ValueError(f"samples must be >= 1, got {samples}")
        self.segment = segment
        self.params: List[float] = [i / float(samples) for i in range(samples + 1)]
        pts = np.array([segment.position(t) for t in self.params], dtype=np.float64)
        steps = np.hypot(*np.diff(pts, axis=0).T)
        self.distances: List[float] = [0.0] + np.cumsum(steps).tolist()

    @property
    def total_length(self) -> float:
        return self.distances[-1]

    def distance_to_parameter(self, distance: float) -> float:
        distance = min(max(distance, 0.0), self.total_length)
        idx = min(bisect.bisect_left(self.distances, distance), len(self.distances) - 1)
        if idx == 0:
            return self.params[0]

        d0, d1 = self.distances[idx - 1], self.distances[idx]
        t0, t1 = self.params[idx - 1], self.params[idx]
        if d1 - d0 <= 1e-12:
            return t0
        return t0 + (distance - d0) / (d1 - d0) * (t1 - t0)

    def position_at_progress(self, progress: float) -> Point:
        """Position at a fraction (0..1) of the total arc length."""
        progress = min(max(progress, 0.0), 1.0)
        return self.segment.position(self.distance_to_parameter(progress * self.total_length))
