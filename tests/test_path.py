import numpy as np
import pytest

from autocharter.beat import fallback_grid
from autocharter.config import AnalysisConfig, PathConfig
from autocharter.curves import CatmullRomSegment
from autocharter.path import (
    MIN_POINTS,
    PerlinNoise1D,
    cap_turns,
    control_beats,
    fbm,
    path_segment,
    soft_clamp,
    synthesize_path,
    turn_degrees,
)
from autocharter.spectral import compute_spectrogram

from conftest import SR, click_track, sine


@pytest.fixture(scope="module")
def spec():
    y = click_track(clicks=16)
    bass = sine(60.0, len(y) / SR, amp=0.4)[: len(y)]
    return compute_spectrogram(y + bass * np.linspace(0, 1, len(y)), SR, AnalysisConfig())


@pytest.fixture(scope="module")
def grid():
    return fallback_grid(8.0, 120.0, start_time=0.5)


def test_x_advances_per_beat(spec, grid):
    points = synthesize_path(spec, grid)
    xs = [p.x for p in points]
    assert len(points) == grid.total_beats + 8 + 1
    assert np.allclose(np.diff(xs), 120.0)
    assert points[0].beat == 0.0


def test_y_stays_inside_clamp(spec, grid):
    points = synthesize_path(spec, grid)
    assert all(abs(p.y) <= 144.0 for p in points)
    assert any(p.y != 0.0 for p in points)


def test_turns_are_capped(spec, grid):
    points = synthesize_path(spec, grid, PathConfig(max_turn_degrees=30.0))
    for a, b, c in zip(points, points[1:], points[2:]):
        assert turn_degrees((a.x, a.y), (b.x, b.y), (c.x, c.y)) <= 30.0 + 1e-6


def test_path_is_deterministic(spec, grid):
    assert synthesize_path(spec, grid) == synthesize_path(spec, grid)


def test_noise_seed_changes_path(spec, grid):
    a = synthesize_path(spec, grid, PathConfig(seed=1))
    b = synthesize_path(spec, grid, PathConfig(seed=2))
    assert [p.y for p in a] != [p.y for p in b]


def test_fast_tempo_uses_half_beats():
    beats = control_beats(fallback_grid(4.0, 200.0))
    assert np.allclose(np.diff(beats), 0.5)
    assert beats[-1] == pytest.approx(13.0 + 8.0)


def test_short_grid_gets_minimum_points():
    beats = control_beats(fallback_grid(0.5, 120.0), PathConfig(tail_beats=0.0))
    assert len(beats) == MIN_POINTS


def test_path_runs_past_the_last_beat():
    grid = fallback_grid(10.0, 120.0)
    assert control_beats(grid)[-1] == grid.total_beats + 8.0
    assert control_beats(grid, PathConfig(tail_beats=2.0))[-1] == grid.total_beats + 2.0
    assert control_beats(grid, PathConfig(tail_beats=0.0))[-1] == grid.total_beats


def test_silence_gives_flat_path(grid):
    silent = compute_spectrogram(np.zeros(10 * SR, dtype=np.float32), SR, AnalysisConfig())
    points = synthesize_path(silent, grid)
    assert all(p.y == 0.0 for p in points)


def test_path_segment(spec, grid):
    seg = path_segment(synthesize_path(spec, grid))
    assert isinstance(seg, CatmullRomSegment)
    assert seg.start_beat == 0.0
    assert seg.end_beat == grid.total_beats + 8
    assert seg.start_point[0] == 0.0


def test_cap_turns_flattens_sharp_corner():
    xs = [0.0, 1.0, 2.0]
    ys = cap_turns(xs, [0.0, 0.0, 100.0], 45.0)
    assert ys[:2] == [0.0, 0.0]
    assert 0.0 < ys[2] <= 1.0 + 1e-6
    assert turn_degrees((0, 0), (1, 0), (2, ys[2])) <= 45.0 + 1e-6


def test_turn_degrees():
    assert turn_degrees((0, 0), (1, 0), (2, 0)) == pytest.approx(0.0)
    assert turn_degrees((0, 0), (1, 0), (1, 1)) == pytest.approx(90.0)


def test_soft_clamp():
    assert soft_clamp(0.0, 144.0) == 0.0
    assert soft_clamp(1e6, 144.0) <= 144.0
    assert soft_clamp(-1e6, 144.0) >= -144.0
    assert soft_clamp(10.0, 144.0) == pytest.approx(10.0, rel=0.01)


def test_perlin_noise():
    noise = PerlinNoise1D(7)
    assert np.allclose(noise(np.arange(10.0)), 0.0)
    x = np.linspace(0, 50, 2001)
    assert np.all(np.abs(noise(x)) <= 1.0)
    assert np.all(np.abs(fbm(noise, x)) <= 1.0)
    np.testing.assert_array_equal(PerlinNoise1D(7)(x), noise(x))
