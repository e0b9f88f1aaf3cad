import numpy as np
import pytest

from autocharter.beat import (
    BeatGrid,
    TempoSegment,
    dp_beats,
    estimate_tempo,
    fallback_grid,
    find_tempo_splits,
    fit_grid,
    local_periods,
    track_beats,
)
from autocharter.config import AnalysisConfig, BeatConfig
from autocharter.errors import InsufficientSignal
from autocharter.spectral import compute_spectrogram

from conftest import SR, click_track, clicks_at

FRAME_RATE = SR / 512.0


def impulse_envelope(period_frames, count, start=20, length=None):
    length = length or int(start + period_frames * (count + 2))
    env = np.zeros(length)
    for k in range(count):
        env[int(round(start + k * period_frames))] = 1.0
    return np.convolve(env, np.hanning(7), mode="same")


@pytest.mark.parametrize("bpm", [120.0, 90.0])
def test_estimate_tempo_on_impulse_train(bpm):
    env = impulse_envelope(60.0 * FRAME_RATE / bpm, 40)
    assert estimate_tempo(env, FRAME_RATE) == pytest.approx(bpm, abs=2.0)


def test_estimate_tempo_needs_enough_frames():
    with pytest.raises(InsufficientSignal):
        estimate_tempo(np.ones(10), FRAME_RATE)


def test_estimate_tempo_rejects_silence():
    with pytest.raises(InsufficientSignal):
        estimate_tempo(np.zeros(1000), FRAME_RATE)


def test_dp_beats_bridges_a_missing_beat():
    env = np.zeros(720)
    for k in range(16):
        if k != 5:
            env[20 + 40 * k] = 1.0
    env = np.convolve(env, np.hanning(7), mode="same")

    frames, ks = dp_beats(env, 40.0)
    assert frames[0] == 20
    assert ks[5] == 6
    assert frames[5] == 260
    assert ks[-1] == 15


def test_dp_beats_needs_two_peaks():
    env = np.zeros(200)
    env[100] = 1.0
    with pytest.raises(InsufficientSignal):
        dp_beats(env, 40.0)


def test_fit_grid():
    ks = np.arange(10)
    times = 0.25 + 0.5 * ks
    t0, period = fit_grid(times, ks)
    assert t0 == pytest.approx(0.25)
    assert period == pytest.approx(0.5)

    t0, period = fit_grid(times + 0.01, ks, period=0.5)
    assert t0 == pytest.approx(0.26)
    assert period == 0.5


def test_find_tempo_splits_locates_tempo_change():
    centres = np.arange(1.0, 41.0)
    periods = np.where(centres < 20.25, 0.5, 0.4)
    splits = find_tempo_splits(centres, periods)
    assert len(splits) == 1
    assert 19.5 <= splits[0] <= 21.5


def test_find_tempo_splits_steady_tempo():
    centres = np.arange(1.0, 41.0)
    jitter = np.random.default_rng(0).normal(0.0, 0.002, 40)
    assert find_tempo_splits(centres, 0.5 + jitter) == []


def test_find_tempo_splits_needs_long_segments():
    centres = np.arange(1.0, 41.0)
    periods = np.where(centres < 2.5, 0.5, 0.4)
    assert find_tempo_splits(centres, periods, min_segment=8.0) == []
    assert len(find_tempo_splits(centres, periods, min_segment=1.0)) == 1


def test_find_tempo_splits_short_series():
    assert find_tempo_splits([1.0], [0.5]) == []
    assert find_tempo_splits([], []) == []


def test_find_tempo_splits_two_changes():
    centres = np.arange(1.0, 61.0)
    periods = np.select([centres < 20.25, centres < 40.25], [0.5, 0.4], 0.6)
    splits = find_tempo_splits(centres, periods)
    assert len(splits) == 2
    assert 19.5 <= splits[0] <= 21.5
    assert 39.5 <= splits[1] <= 41.5


def test_local_periods_follow_the_tempo():
    period = 60.0 * FRAME_RATE / 120.0
    env = impulse_envelope(period, 60)
    centres, periods = local_periods(env, FRAME_RATE)
    assert len(centres) > 0
    assert np.all(np.diff(centres) > 0)
    np.testing.assert_allclose(periods, 0.5, atol=0.015)


def test_local_periods_skip_quiet_windows():
    env = np.concatenate([impulse_envelope(60.0 * FRAME_RATE / 120.0, 24), np.zeros(4000)])
    centres, _ = local_periods(env, FRAME_RATE)
    assert len(centres) > 0
    window = 8.0 * FRAME_RATE
    assert np.all(centres - 0.5 * window < 24 * 43.1)


@pytest.fixture
def grid():
    return BeatGrid(
        beats=(0.5, 1.0, 1.5, 2.0),
        bpm=120.0,
        segments=(TempoSegment(start_beat=0, bpm=120.0, start_time=0.5),),
    )


def test_grid_conversions(grid):
    assert grid.total_beats == 3
    assert grid.time_to_beat(1.25) == pytest.approx(1.5)
    assert grid.beat_to_time(1.5) == pytest.approx(1.25)
    for b in (0.0, 0.75, 2.0, 3.0):
        assert grid.time_to_beat(grid.beat_to_time(b)) == pytest.approx(b)


def test_grid_extrapolates(grid):
    assert grid.time_to_beat(0.0) == pytest.approx(-1.0)
    assert grid.beat_to_time(5.0) == pytest.approx(3.0)
    np.testing.assert_allclose(grid.beat_to_time(np.array([-1.0, 4.0])), [0.0, 2.5])


@pytest.mark.parametrize(
    "beats,bpm",
    [((), 120.0), ((0.5, 0.5), 120.0), ((1.0, 0.5), 120.0), ((0.5, 1.0), 0.0)],
)
def test_grid_validation(beats, bpm):
    with pytest.raises(ValueError):
        BeatGrid(beats=beats, bpm=bpm, segments=())


def test_fallback_grid():
    g = fallback_grid(10.0, 120.0)
    assert g.fallback
    assert len(g.beats) == 21
    assert g.beats[-1] == pytest.approx(10.0)
    assert g.bpm == 120.0
    assert g.segments[0].bpm == 120.0


def test_fallback_grid_never_degenerate():
    g = fallback_grid(0.0, 120.0)
    assert len(g.beats) == 2


@pytest.fixture(scope="module")
def click_spec():
    return compute_spectrogram(click_track(clicks=24), SR, AnalysisConfig())


def test_track_beats_on_click_track(click_spec):
    g = track_beats(click_spec)
    assert not g.fallback
    assert g.bpm == pytest.approx(120.0, abs=1.0)
    assert len(g.segments) == 1
    assert np.allclose(np.diff(g.beats), 0.5, atol=0.005)
    # The grid lands on the clicks and spans the whole 13 s track
    assert np.min(np.abs(np.array(g.beats) - 0.5)) < 0.05
    assert 0.0 <= g.beats[0] < 0.5
    assert click_spec.duration - 0.5 < g.beats[-1] <= click_spec.duration
    assert len(g.beats) == pytest.approx(26, abs=1)


def test_track_beats_with_bpm_override(click_spec):
    g = track_beats(click_spec, BeatConfig(bpm_override=100.0))
    assert g.bpm == 100.0
    assert g.segments[0].bpm == 100.0
    assert np.allclose(np.diff(g.beats), 0.6)
    assert 0.0 <= g.beats[0] < 0.6
    assert click_spec.duration - 0.6 < g.beats[-1] <= click_spec.duration


def test_track_beats_covers_a_long_silent_tail():
    spec = compute_spectrogram(click_track(clicks=16, tail=20.0), SR, AnalysisConfig())
    g = track_beats(spec)
    assert len(g.segments) == 1
    assert spec.duration == pytest.approx(28.0, abs=0.01)
    assert g.beats[-1] > spec.duration - 0.5
    assert len(g.beats) == pytest.approx(56, abs=1)


def test_track_beats_explicit_duration(click_spec):
    g = track_beats(click_spec, duration=6.0)
    assert g.beats[-1] <= 6.0
    assert g.beats[-1] > 5.5


def times_from_timing_points(grid):
    """Beat times implied by the first beat and (start beat, bpm) pairs."""
    times, t = [], grid.beats[0]
    segments = list(grid.segments)
    for i, seg in enumerate(segments):
        end = segments[i + 1].start_beat if i + 1 < len(segments) else len(grid.beats)
        period = 60.0 / seg.bpm
        times.extend(t + period * np.arange(end - seg.start_beat))
        t += period * (end - seg.start_beat)
    return np.array(times)


@pytest.fixture(scope="module")
def two_tempo_spec():
    # 40 beats at 120 BPM ending on 20.0 s, then 50 beats at 150 BPM
    times = np.concatenate([0.5 + 0.5 * np.arange(40), 20.0 + 0.4 * np.arange(1, 51)])
    return compute_spectrogram(clicks_at(times, tail=1.0), SR, AnalysisConfig())


def test_track_beats_finds_tempo_change(two_tempo_spec):
    g = track_beats(two_tempo_spec)
    assert len(g.segments) == 2
    first, second = g.segments
    assert first.start_beat == 0
    assert first.bpm == pytest.approx(120.0, abs=1.0)
    assert second.bpm == pytest.approx(150.0, abs=1.0)
    assert second.start_time == pytest.approx(20.0, abs=0.05)
    assert g.beats[second.start_beat] == second.start_time


def test_tempo_change_keeps_grid_continuous(two_tempo_spec):
    g = track_beats(two_tempo_spec)
    np.testing.assert_allclose(times_from_timing_points(g), g.beats, atol=1e-6)
    diffs = np.diff(g.beats)
    assert np.all((np.abs(diffs - 0.5) < 0.01) | (np.abs(diffs - 0.4) < 0.01))
    assert g.beats[-1] > two_tempo_spec.duration - 0.4


def test_same_tempo_split_is_merged(click_spec):
    # A threshold this low would split on estimation noise alone
    g = track_beats(click_spec, BeatConfig(drift_threshold=1e-9, min_segment_beats=2))
    assert len(g.segments) == 1
    assert np.allclose(np.diff(g.beats), 0.5, atol=0.005)
