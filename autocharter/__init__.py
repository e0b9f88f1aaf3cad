"""
autocharter - offline rhythm-game chart generator.

Audio in, charts out: decode -> STFT -> onsets -> beat grid -> per-tier
quantization and thinning -> typed notes + audio-reactive path -> YAML/NPZ.
"""

from autocharter.chart import Chart, Difficulty
from autocharter.config import DEFAULT_CONFIG, ChartGenConfig
from autocharter.errors import ChartGenError
from autocharter.pipeline import analyze_file, analyze_samples, build_chart, process_file
from autocharter.serialize import load_chart, save_chart

__version__ = "0.1.0"
