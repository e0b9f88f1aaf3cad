import os

import numpy as np
import pytest

from autocharter import pipeline
from autocharter.chart import ALL_DIFFICULTIES, Difficulty, NoteKind
from autocharter.errors import ChartGenError
from autocharter.path import path_segment, synthesize_path
from autocharter.pipeline import (
    analyze_samples,
    build_chart,
    chart_output_path,
    process_file,
    tier_seeds,
)
from autocharter.serialize import load_chart, load_metadata

from conftest import SR, click_track


@pytest.fixture(scope="module")
def clicks():
    # 16 s of clicks on every beat
    return analyze_samples(click_track(bpm=120.0, clicks=32, start=0.25, tail=0.25), SR)


def test_click_track_tempo_and_grid(clicks):
    grid = clicks.grid
    assert not grid.fallback
    assert grid.bpm == pytest.approx(120.0, abs=1.0)
    assert len(grid.beats) == pytest.approx(32, abs=1)
    assert 0.0 <= grid.beats[0] < 0.5
    assert grid.beats[-1] <= clicks.buffer.duration
    assert np.allclose(np.diff(grid.beats), 0.5, atol=0.005)


def test_click_track_onsets(clicks):
    assert len(clicks.onsets) == 32
    assert all(o.beat is not None for o in clicks.onsets)
    assert np.allclose([o.beat for o in clicks.onsets], np.round([o.beat for o in clicks.onsets]), atol=0.1)


def test_silence_falls_back(capsys):
    analysis = analyze_samples(np.zeros(10 * SR, dtype=np.float32), SR)
    assert analysis.onsets == ()
    assert analysis.grid.fallback
    assert analysis.grid.bpm == 120.0
    assert "Warning" in capsys.readouterr().out


def test_stereo_input_is_mixed_down():
    mono = click_track(clicks=8)
    analysis = analyze_samples(np.stack([mono, mono]), SR)
    assert analysis.buffer.source_channels == 2
    assert len(analysis.buffer.samples) == len(mono)


def test_build_chart(clicks):
    chart = build_chart(clicks, Difficulty.HARD)
    assert chart.difficulty is Difficulty.HARD
    assert 1 <= chart.difficulty_rating <= 10
    assert chart.offset == pytest.approx(clicks.grid.beats[0])
    assert chart.timing_points[0].bpm == pytest.approx(clicks.grid.bpm)
    assert chart.travel_beats == 3.0
    assert len(chart.notes) > 0
    beats = [n.beat for n in chart.notes]
    assert beats == sorted(beats)
    assert chart.path_segments[0].kind == "catmull_rom"
    assert chart.events == ()


def test_build_chart_is_deterministic(clicks):
    assert build_chart(clicks, Difficulty.EXPERT) == build_chart(clicks, Difficulty.EXPERT)


def test_easy_has_fewest_notes(clicks):
    counts = [len(build_chart(clicks, t).notes) for t in ALL_DIFFICULTIES]
    assert counts[0] <= min(counts[1:])
    easy = build_chart(clicks, Difficulty.EASY)
    assert {n.kind for n in easy.notes} <= {NoteKind.TAP, NoteKind.HOLD}


def test_tier_seeds_are_stable():
    a = tier_seeds(999)
    assert a == tier_seeds(999)
    assert len(set(a.values())) == len(ALL_DIFFICULTIES)
    assert a != tier_seeds(1)


def test_chart_output_path():
    assert chart_output_path("out/song.npz", Difficulty.HARD, "npz", True) == "out/song.npz"
    assert chart_output_path("out", Difficulty.HARD, "yaml", True) == os.path.join("out", "hard.yaml")
    assert chart_output_path("out/song.npz", Difficulty.EASY, "npz", False) == os.path.join(
        "out/song.npz", "easy.npz"
    )


def test_process_file_writes_all_tiers(click_wav, tmp_path):
    out = str(tmp_path / "charts")
    written = process_file(click_wav, out, ALL_DIFFICULTIES, write_metadata=True, title="Clicks")
    assert [os.path.basename(p) for p in written] == [
        "easy.yaml",
        "normal.yaml",
        "hard.yaml",
        "expert.yaml",
    ]
    for p in written:
        chart = load_chart(p)
        assert chart.song.title == "Clicks"
        assert chart.song.audio_file == "clicks.wav"

    meta = load_metadata(os.path.join(out, "metadata.yaml"))
    assert meta.title == "Clicks"
    assert meta.difficulties == tuple(ALL_DIFFICULTIES)


def test_process_file_single_npz(click_wav, tmp_path):
    out = str(tmp_path / "song.npz")
    written = process_file(click_wav, out, [Difficulty.NORMAL], fmt="npz")
    assert written == [out]
    assert load_chart(out).difficulty is Difficulty.NORMAL


def test_process_file_on_silence_still_writes(silence_wav, tmp_path):
    written = process_file(silence_wav, str(tmp_path), [Difficulty.EASY])
    chart = load_chart(written[0])
    assert chart.notes == ()
    assert chart.bpm == 120.0


def test_clip_shorter_than_the_peak_window():
    noise = np.random.default_rng(0).uniform(-0.5, 0.5, int(0.3 * SR)).astype(np.float32)
    analysis = analyze_samples(noise, SR)
    assert analysis.grid.beats
    assert all(0.0 <= o.time <= 0.3 for o in analysis.onsets)
    build_chart(analysis, Difficulty.EXPERT)


def test_path_covers_the_whole_track():
    analysis = analyze_samples(click_track(clicks=16, tail=20.0), SR)
    grid = analysis.grid
    segment = path_segment(synthesize_path(analysis.spectrogram, grid))
    assert grid.beats[-1] > analysis.buffer.duration - 0.5
    assert segment.end_beat >= grid.time_to_beat(analysis.buffer.duration)
    assert segment.end_beat == grid.total_beats + 8


def test_invalid_tier_does_not_stop_the_others(click_wav, tmp_path, monkeypatch):
    assign = pipeline.assign_note_kinds

    def failing_on_hard(notes, tier, rng):
        if tier is Difficulty.HARD:
            raise ValueError("hold ends before it starts")
        return assign(notes, tier, rng)

    monkeypatch.setattr(pipeline, "assign_note_kinds", failing_on_hard)
    out = tmp_path / "charts"
    with pytest.raises(ChartGenError) as exc:
        process_file(click_wav, str(out), ALL_DIFFICULTIES)
    assert exc.value.stage == "chart"
    assert exc.value.exit_code == 1
    assert "hold ends before it starts" in str(exc.value)
    assert sorted(os.listdir(out)) == ["easy.yaml", "expert.yaml", "normal.yaml"]
