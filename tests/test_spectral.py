import numpy as np
import pytest

from autocharter.config import AnalysisConfig
from autocharter.errors import InvalidParameter
from autocharter.spectral import compute_spectrogram, frame_count

from conftest import SR, sine


def test_frame_layout():
    cfg = AnalysisConfig()
    y = sine(1000.0, 1.0)
    spec = compute_spectrogram(y, SR, cfg)
    assert spec.n_frames == frame_count(len(y), 2048, 512)
    assert spec.magnitudes.shape == (spec.n_frames, 1025)
    assert spec.mel.shape == (spec.n_frames, 40)
    assert spec.frame_rate == pytest.approx(SR / 512.0)


def test_short_tail_is_zero_padded():
    spec = compute_spectrogram(np.ones(100, dtype=np.float32), SR, AnalysisConfig())
    assert spec.n_frames == 1
    assert spec.magnitudes[0, 0] > 0


def test_empty_input_gives_zero_frames():
    spec = compute_spectrogram(np.zeros(0, dtype=np.float32), SR, AnalysisConfig())
    assert spec.n_frames == 0
    assert spec.frame_energy().shape == (0,)


def test_band_energy_tracks_content():
    y = sine(100.0, 1.0) + sine(8000.0, 1.0, amp=0.05)
    spec = compute_spectrogram(y, SR, AnalysisConfig())
    bass = spec.band_energy(20.0, 250.0)
    high = spec.band_energy(4000.0, 20000.0)
    assert bass.shape == (spec.n_frames,)
    assert bass.mean() > high.mean()


def test_frame_time_round_trip():
    spec = compute_spectrogram(sine(440.0, 1.0), SR, AnalysisConfig())
    for f in (0, 5, 40):
        assert spec.seconds_to_frame(spec.frame_to_seconds(f)) == f
    frames = np.array([0, 5, 40])
    np.testing.assert_array_equal(spec.seconds_to_frame(spec.frame_to_seconds(frames)), frames)


def test_duration_ignores_padding():
    spec = compute_spectrogram(sine(440.0, 1.5), SR, AnalysisConfig())
    assert spec.n_samples == int(1.5 * SR)
    assert spec.duration == pytest.approx(1.5)
    assert compute_spectrogram(np.zeros(0, dtype=np.float32), SR, AnalysisConfig()).duration == 0.0


@pytest.mark.parametrize("window,hop", [(2000, 512), (2048, 2048), (2048, 0)])
def test_invalid_window_or_hop(window, hop):
    cfg = AnalysisConfig(window_size=window, hop_size=hop)
    with pytest.raises(InvalidParameter):
        compute_spectrogram(np.zeros(4096, dtype=np.float32), SR, cfg)


def test_outputs_are_read_only():
    spec = compute_spectrogram(sine(440.0, 0.5), SR, AnalysisConfig())
    with pytest.raises(ValueError):
        spec.magnitudes[0, 0] = 1.0
