from dataclasses import replace

import pytest

from autocharter.config import (
    DEFAULT_CONFIG,
    AnalysisConfig,
    BeatConfig,
    ChartGenConfig,
    DifficultyConfig,
    PathConfig,
)
from autocharter.errors import InvalidParameter


def test_defaults_validate():
    assert DEFAULT_CONFIG.validate() is DEFAULT_CONFIG


def test_overrides_do_not_mutate():
    cfg = DEFAULT_CONFIG.with_overrides(bpm=140, sensitivity=2, onset_mode="MaxFilter", min_interval=30)
    assert cfg.beat.bpm_override == 140.0
    assert cfg.analysis.sensitivity == 2.0
    assert cfg.analysis.onset_mode == "maxfilter"
    assert cfg.analysis.min_interval_ms == 30.0
    assert DEFAULT_CONFIG.beat.bpm_override is None
    assert DEFAULT_CONFIG.analysis.sensitivity == 1.5
    cfg.validate()


def test_none_overrides_keep_defaults():
    assert DEFAULT_CONFIG.with_overrides() == DEFAULT_CONFIG


@pytest.mark.parametrize(
    "config",
    [
        ChartGenConfig(analysis=AnalysisConfig(window_size=1000)),
        ChartGenConfig(analysis=AnalysisConfig(hop_size=4096)),
        ChartGenConfig(analysis=AnalysisConfig(sensitivity=0)),
        ChartGenConfig(analysis=AnalysisConfig(onset_mode="energy")),
        ChartGenConfig(analysis=AnalysisConfig(min_interval_ms=-1)),
        ChartGenConfig(analysis=AnalysisConfig(silence_db=3)),
        ChartGenConfig(beat=BeatConfig(min_bpm=200, max_bpm=100)),
        ChartGenConfig(beat=BeatConfig(bpm_override=-120)),
        ChartGenConfig(beat=BeatConfig(drift_threshold=0)),
        ChartGenConfig(beat=BeatConfig(drift_window_seconds=0)),
        ChartGenConfig(beat=BeatConfig(drift_hop_seconds=-2)),
        ChartGenConfig(difficulty=DifficultyConfig(grid_resolution={"easy": 3})),
        ChartGenConfig(difficulty=DifficultyConfig(beats_per_measure=0)),
        ChartGenConfig(path=PathConfig(max_turn_degrees=180)),
        ChartGenConfig(path=PathConfig(clamp_fraction=1.5)),
        ChartGenConfig(path=PathConfig(tail_beats=-1)),
    ],
)
def test_invalid_values(config):
    with pytest.raises(InvalidParameter) as info:
        config.validate()
    assert info.value.exit_code == 2
    assert info.value.stage == "config"


def test_bad_percentile_named_in_message():
    pct = dict(DifficultyConfig().percentile, hard=1.0)
    cfg = replace(DEFAULT_CONFIG, difficulty=DifficultyConfig(percentile=pct))
    with pytest.raises(InvalidParameter, match="hard"):
        cfg.validate()
