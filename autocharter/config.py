"""
Explicit parameter structs for every pipeline stage.

Nothing in the pipeline reads ambient state: a ChartGenConfig is built
once (defaults + CLI overrides), validated eagerly, and handed down.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from autocharter.errors import InvalidParameter

TARGET_SAMPLE_RATE = 44100

ONSET_MODES = ("flux", "maxfilter")
GRID_RESOLUTIONS = (1, 2, 4, 8, 16)
TIER_NAMES = ("easy", "normal", "hard", "expert")


@dataclass(frozen=True)
class AnalysisConfig:
    sample_rate: int = TARGET_SAMPLE_RATE
    window_size: int = 2048
    hop_size: int = 512
    n_mels: int = 40
    onset_mode: str = "flux"
    max_filter_width: int = 3          # +/- bins for the max-filtered flux
    sensitivity: float = 1.5
    peak_window_seconds: float = 0.5
    min_interval_ms: float = 50.0
    silence_db: float = -74.0


@dataclass(frozen=True)
class BeatConfig:
    min_bpm: float = 40.0
    max_bpm: float = 240.0
    prior_bpm: float = 120.0
    prior_octaves: float = 1.0         # std-dev of the tempo prior in log2-lag units
    smooth_seconds: float = 0.05
    peak_floor: float = 0.02           # candidate peaks below this fraction of the max are ignored
    tightness: float = 100.0
    skip_penalty: float = 1.0
    max_skip_beats: int = 16
    drift_window_seconds: float = 8.0  # local tempo window
    drift_hop_seconds: float = 2.0
    drift_threshold: float = 0.0016    # variance of local period / median explained by a step
    min_segment_beats: int = 16
    bpm_override: Optional[float] = None
    fallback_bpm: float = 120.0


def _default_resolutions() -> Dict[str, int]:
    return {"easy": 1, "normal": 2, "hard": 4, "expert": 8}


def _default_percentiles() -> Dict[str, float]:
    return {"easy": 0.80, "normal": 0.50, "hard": 0.20, "expert": 0.0}


def _default_spacing() -> Dict[str, float]:
    return {"easy": 500.0, "normal": 250.0, "hard": 125.0, "expert": 0.0}


@dataclass(frozen=True)
class DifficultyConfig:
    grid_resolution: Dict[str, int] = field(default_factory=_default_resolutions)
    percentile: Dict[str, float] = field(default_factory=_default_percentiles)
    min_spacing_ms: Dict[str, float] = field(default_factory=_default_spacing)
    phrase_gap_beats: float = 2.0
    beats_per_measure: int = 4
    seed: int = 999


@dataclass(frozen=True)
class PathConfig:
    screen_half_height: float = 360.0
    clamp_fraction: float = 0.4
    units_per_beat: float = 120.0
    bass_band: tuple = (20.0, 250.0)
    high_band: tuple = (4000.0, 20000.0)
    bass_scale: float = 200.0
    high_scale: float = 50.0
    noise_scale: float = 150.0
    bass_gain: float = 0.3
    noise_gain: float = 0.5
    ema_alpha: float = 0.3
    mean_reversion: float = 0.03
    max_turn_degrees: float = 120.0
    noise_octaves: int = 3
    noise_persistence: float = 0.5
    noise_lacunarity: float = 2.0
    noise_frequency: float = 0.3
    fast_tempo_bpm: float = 180.0
    tail_beats: float = 8.0            # path runs on past the last grid beat
    seed: int = 42


@dataclass(frozen=True)
class ChartGenConfig:
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    beat: BeatConfig = field(default_factory=BeatConfig)
    difficulty: DifficultyConfig = field(default_factory=DifficultyConfig)
    path: PathConfig = field(default_factory=PathConfig)

    def with_overrides(
        self,
        bpm: Optional[float] = None,
        sensitivity: Optional[float] = None,
        onset_mode: Optional[str] = None,
        min_interval: Optional[float] = None,
    ) -> "ChartGenConfig":
        """Return a copy with CLI overrides applied (None = keep)."""
        analysis = self.analysis
        beat = self.beat
        if sensitivity is not None:
            analysis = replace(analysis, sensitivity=float(sensitivity))
        if onset_mode is not None:
            analysis = replace(analysis, onset_mode=str(onset_mode).lower())
        if min_interval is not None:
            analysis = replace(analysis, min_interval_ms=float(min_interval))
        if bpm is not None:
            beat = replace(beat, bpm_override=float(bpm))
        return replace(self, analysis=analysis, beat=beat)

    def validate(self) -> "ChartGenConfig":
        """Raise InvalidParameter on the first bad value; return self otherwise."""
        a = self.analysis
        w = a.window_size
        if w <= 0 or (w & (w - 1)) != 0:
            raise InvalidParameter(f"window_size must be a power of two, got {w}")
        if a.hop_size <= 0 or a.hop_size >= w:
            raise InvalidParameter(
                f"hop_size must be in (0, window_size={w}), got {a.hop_size}"
            )
        if a.sample_rate <= 0:
            raise InvalidParameter(f"sample_rate must be positive, got {a.sample_rate}")
        if a.n_mels <= 0:
            raise InvalidParameter(f"n_mels must be positive, got {a.n_mels}")
        if a.onset_mode not in ONSET_MODES:
            raise InvalidParameter(
                f"onset_mode must be one of {ONSET_MODES}, got {a.onset_mode!r}"
            )
        if a.max_filter_width < 0:
            raise InvalidParameter(
                f"max_filter_width must be >= 0, got {a.max_filter_width}"
            )
        if not a.sensitivity > 0:
            raise InvalidParameter(f"sensitivity must be > 0, got {a.sensitivity}")
        if not a.peak_window_seconds > 0:
            raise InvalidParameter(
                f"peak_window_seconds must be > 0, got {a.peak_window_seconds}"
            )
        if a.min_interval_ms < 0:
            raise InvalidParameter(f"min_interval must be >= 0 ms, got {a.min_interval_ms}")
        if a.silence_db >= 0:
            raise InvalidParameter(f"silence_db must be negative, got {a.silence_db}")

        b = self.beat
        if not 0 < b.min_bpm < b.max_bpm:
            raise InvalidParameter(
                f"tempo search range must satisfy 0 < min_bpm < max_bpm, "
                f"got {b.min_bpm}-{b.max_bpm}"
            )
        if b.bpm_override is not None and not b.bpm_override > 0:
            raise InvalidParameter(f"bpm override must be > 0, got {b.bpm_override}")
        if not b.fallback_bpm > 0:
            raise InvalidParameter(f"fallback_bpm must be > 0, got {b.fallback_bpm}")
        if not b.drift_window_seconds > 0 or not b.drift_hop_seconds > 0:
            raise InvalidParameter(
                f"drift window and hop must be > 0, got {b.drift_window_seconds}s / {b.drift_hop_seconds}s"
            )
        if b.drift_threshold <= 0:
            raise InvalidParameter(
                f"drift_threshold must be > 0, got {b.drift_threshold}"
            )
        if b.max_skip_beats < 1:
            raise InvalidParameter(f"max_skip_beats must be >= 1, got {b.max_skip_beats}")

        d = self.difficulty
        for tier in TIER_NAMES:
            res = d.grid_resolution.get(tier)
            if res not in GRID_RESOLUTIONS:
                raise InvalidParameter(
                    f"grid resolution for {tier} must be one of {GRID_RESOLUTIONS}, got {res}"
                )
            pct = d.percentile.get(tier)
            if pct is None or not 0.0 <= pct < 1.0:
                raise InvalidParameter(f"percentile for {tier} must be in [0, 1), got {pct}")
            spacing = d.min_spacing_ms.get(tier)
            if spacing is None or spacing < 0:
                raise InvalidParameter(f"min spacing for {tier} must be >= 0, got {spacing}")
        if d.beats_per_measure <= 0:
            raise InvalidParameter(
                f"beats_per_measure must be positive, got {d.beats_per_measure}"
            )
        if d.phrase_gap_beats <= 0:
            raise InvalidParameter(
                f"phrase_gap_beats must be positive, got {d.phrase_gap_beats}"
            )

        p = self.path
        if p.screen_half_height <= 0 or not 0 < p.clamp_fraction <= 1:
            raise InvalidParameter(
                f"path clamp must be positive, got half height {p.screen_half_height} "
                f"and fraction {p.clamp_fraction}"
            )
        if p.units_per_beat <= 0:
            raise InvalidParameter(f"units_per_beat must be > 0, got {p.units_per_beat}")
        if not 0 < p.max_turn_degrees < 180:
            raise InvalidParameter(
                f"max_turn_degrees must be in (0, 180), got {p.max_turn_degrees}"
            )
        if p.noise_octaves < 1:
            raise InvalidParameter(f"noise_octaves must be >= 1, got {p.noise_octaves}")
        if p.tail_beats < 0:
            raise InvalidParameter(f"tail_beats must be >= 0, got {p.tail_beats}")
        return self


DEFAULT_CONFIG = ChartGenConfig()
