"""
Audio-reactive path generation.

One control point per beat (per half-beat at fast tempos). x advances a
fixed number of units per beat; y integrates three audio-driven terms:

    bass sweep       smoothed 20-250 Hz energy, +/-200 units
    high oscillation 4-20 kHz energy * sin(2 * beat phase), +/-50 units
    noise            fractal Perlin noise scaled by overall loudness

then each step applies a 3% pull back toward 0, a tanh soft clamp to 40%
of the screen half height, and a cap on the turn between consecutive
segments.
"""

import math
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from autocharter.beat import BeatGrid
from autocharter.config import PathConfig
from autocharter.curves import CatmullRomSegment
from autocharter.spectral import Spectrogram

MIN_POINTS = 4


@dataclass(frozen=True)
class ControlPoint:
    x: float
    y: float
    beat: float


class PerlinNoise1D:
    """Gradient noise over a seeded 256-entry permutation table."""

    def __init__(self, seed: int = 42, size: int = 256):
        rng = np.random.default_rng(seed)
        self.size = size
        self.perm = np.tile(rng.permutation(size), 2)
        self.gradients = rng.uniform(-1.0, 1.0, size)

    @staticmethod
    def fade(t):
        return t * t * t * (t * (t * 6.0 - 15.0) + 10.0)

    def __call__(self, x):
        x = np.asarray(x, dtype=np.float64)
        cell = np.floor(x)
        f = x - cell
        i0 = cell.astype(np.int64) % self.size
        i1 = (i0 + 1) % self.size

        g0 = self.gradients[self.perm[i0]]
        g1 = self.gradients[self.perm[i1]]
        n0 = g0 * f
        n1 = g1 * (f - 1.0)
        # 1-D gradient noise peaks at +/-0.5 for unit gradients
        return 2.0 * (n0 + self.fade(f) * (n1 - n0))


def fbm(noise: PerlinNoise1D, x, octaves: int = 3, persistence: float = 0.5, lacunarity: float = 2.0):
    """Sum of noise octaves, normalized back to the single-octave range."""
    x = np.asarray(x, dtype=np.float64)
    value = np.zeros_like(x)
    amplitude, frequency, total = 1.0, 1.0, 0.0
    for _ in range(octaves):
        value += noise(x * frequency) * amplitude
        total += amplitude
        amplitude *= persistence
        frequency *= lacunarity
    return value / total


def ema(values: Sequence[float], alpha: float) -> np.ndarray:
    x = np.asarray(values, dtype=np.float64)
    out = np.empty_like(x)
    acc = x[0] if len(x) else 0.0
    for i, v in enumerate(x):
        acc = alpha * v + (1.0 - alpha) * acc
        out[i] = acc
    return out


def soft_clamp(value: float, limit: float) -> float:
    if limit <= 0:
        return 0.0
    return math.tanh(value / limit) * limit


def _normalize(values: np.ndarray) -> np.ndarray:
    peak = float(values.max()) if values.size else 0.0
    return values / peak if peak > 0 else np.zeros_like(values)


def turn_degrees(p0, p1, p2) -> float:
    """Angle between p0->p1 and p1->p2 (0 = straight on)."""
    a = math.atan2(p1[1] - p0[1], p1[0] - p0[0])
    b = math.atan2(p2[1] - p1[1], p2[0] - p1[0])
    d = abs(b - a)
    return math.degrees(min(d, 2.0 * math.pi - d))


def cap_turns(xs: Sequence[float], ys: Sequence[float], max_degrees: float) -> List[float]:
    """
    Attenuate the rise of any point whose turn exceeds `max_degrees`.

    The offending step is scaled toward flat by bisection; a flat step
    always satisfies the cap because every segment moves forward in x.
    """
    ys = list(ys)
    for i in range(2, len(ys)):
        p0 = (xs[i - 2], ys[i - 2])
        p1 = (xs[i - 1], ys[i - 1])
        if turn_degrees(p0, p1, (xs[i], ys[i])) <= max_degrees:
            continue
        rise = ys[i] - ys[i - 1]
        lo, hi = 0.0, 1.0
        for _ in range(40):
            mid = 0.5 * (lo + hi)
            if turn_degrees(p0, p1, (xs[i], ys[i - 1] + mid * rise)) <= max_degrees:
                lo = mid
            else:
                hi = mid
        ys[i] = ys[i - 1] + lo * rise
    return ys


def control_beats(grid: BeatGrid, config: PathConfig = PathConfig()) -> np.ndarray:
    step = 0.5 if grid.bpm >= config.fast_tempo_bpm else 1.0
    count = max(int(math.floor((grid.total_beats + config.tail_beats) / step)) + 1, MIN_POINTS)
    return step * np.arange(count, dtype=np.float64)


def _sample(values: np.ndarray, frames: np.ndarray, valid: np.ndarray) -> np.ndarray:
    out = np.zeros(len(frames), dtype=np.float64)
    out[valid] = values[frames[valid]]
    return out


def synthesize_path(
    spectrogram: Spectrogram,
    grid: BeatGrid,
    config: PathConfig = PathConfig(),
) -> List[ControlPoint]:
    beats = control_beats(grid, config)
    times = np.atleast_1d(grid.beat_to_time(beats))
    frames = spectrogram.seconds_to_frame(times)
    valid = (frames >= 0) & (frames < spectrogram.n_frames)

    bass = _normalize(_sample(spectrogram.band_energy(*config.bass_band), frames, valid))
    high = _normalize(_sample(spectrogram.band_energy(*config.high_band), frames, valid))
    loud = _normalize(_sample(spectrogram.frame_energy(), frames, valid))

    if bass.any():
        bass_sweep = ema(bass, config.ema_alpha) * 2.0 * config.bass_scale - config.bass_scale
    else:
        bass_sweep = np.zeros_like(bass)
    bass_sweep[~valid] = 0.0

    beat_phase = math.pi / 4.0 * (2.0 * np.mod(beats, 4.0) + 1.0)
    high_osc = high * config.high_scale * np.sin(2.0 * beat_phase)

    noise = PerlinNoise1D(config.seed)
    wobble = fbm(
        noise,
        beats * config.noise_frequency,
        config.noise_octaves,
        config.noise_persistence,
        config.noise_lacunarity,
    )
    noise_term = wobble * loud * config.noise_scale

    limit = config.screen_half_height * config.clamp_fraction
    y = 0.0
    ys = []
    for i in range(len(beats)):
        y += config.bass_gain * bass_sweep[i] + high_osc[i] + config.noise_gain * noise_term[i]
        y -= config.mean_reversion * y
        y = soft_clamp(y, limit)
        ys.append(y)

    xs = [float(b) * config.units_per_beat for b in beats]
    ys = cap_turns(xs, ys, config.max_turn_degrees)
    return [ControlPoint(x=x, y=float(yy), beat=float(b)) for x, yy, b in zip(xs, ys, beats)]


def path_segment(points: Sequence[ControlPoint]) -> CatmullRomSegment:
    return CatmullRomSegment(
        points=tuple((p.x, p.y) for p in points),
        start_beat=points[0].beat,
        end_beat=points[-1].beat,
    )
