"""
Short-time Fourier analysis.

A Spectrogram holds one magnitude spectrum per hop (W/2 + 1 bins) and a
mel-band projection of each frame. Frames start every `hop_size`
samples; the last frame is zero-padded when the tail is short.
"""

from dataclasses import dataclass

import numpy as np
import librosa

from autocharter.config import AnalysisConfig
from autocharter.errors import InvalidParameter

# Frames are transformed in blocks to bound peak memory on long tracks.
FRAME_BLOCK = 1024


@dataclass(frozen=True)
class Spectrogram:
    magnitudes: np.ndarray  # (n_frames, n_bins) float32
    mel: np.ndarray         # (n_frames, n_mels) float32
    sample_rate: int
    window_size: int
    hop_size: int
    n_samples: int = 0  # length of the analysed audio before padding

    @property
    def n_frames(self) -> int:
        return int(self.magnitudes.shape[0])

    @property
    def n_bins(self) -> int:
        return self.window_size // 2 + 1

    @property
    def frame_rate(self) -> float:
        return self.sample_rate / float(self.hop_size)

    @property
    def duration(self) -> float:
        return self.n_samples / float(self.sample_rate)

    def __len__(self) -> int:
        return self.n_frames

    def frame_to_seconds(self, frame):
        """Time of a frame's window centre (works on arrays)."""
        return (frame * self.hop_size + self.window_size // 2) / float(self.sample_rate)

    def seconds_to_frame(self, seconds):
        """Nearest frame whose window is centred on `seconds` (may be negative; works on arrays)."""
        f = np.rint(
            (np.asarray(seconds, dtype=np.float64) * self.sample_rate - self.window_size // 2)
            / float(self.hop_size)
        ).astype(np.int64)
        return int(f) if f.ndim == 0 else f

    def bin_to_hz(self, k) -> float:
        return k * self.sample_rate / float(self.window_size)

    def hz_to_bin(self, hz: float) -> int:
        return int(hz * self.window_size / float(self.sample_rate))

    def band_energy(self, low_hz: float, high_hz: float) -> np.ndarray:
        """RMS magnitude in [low_hz, high_hz] for every frame."""
        lo = max(self.hz_to_bin(low_hz), 1)
        hi = min(self.hz_to_bin(high_hz), self.n_bins - 1)
        if lo >= hi or self.n_frames == 0:
            return np.zeros(self.n_frames, dtype=np.float64)
        band = self.magnitudes[:, lo : hi + 1].astype(np.float64)
        return np.sqrt(np.mean(band * band, axis=1))

    def frame_energy(self) -> np.ndarray:
        """RMS magnitude over all bins for every frame."""
        if self.n_frames == 0:
            return np.zeros(0, dtype=np.float64)
        mags = self.magnitudes.astype(np.float64)
        return np.sqrt(np.mean(mags * mags, axis=1))


def hann_window(window_size: int) -> np.ndarray:
    return librosa.filters.get_window("hann", window_size, fftbins=False).astype(np.float32)


def frame_count(n_samples: int, window_size: int, hop_size: int) -> int:
    if n_samples <= 0:
        return 0
    return 1 + int(np.ceil(max(n_samples - window_size, 0) / float(hop_size)))


def compute_spectrogram(
    samples: np.ndarray,
    sample_rate: int,
    config: AnalysisConfig = AnalysisConfig(),
) -> Spectrogram:
    """
    Hann-windowed STFT magnitudes plus a mel-band projection.

    Raises InvalidParameter for a non power-of-two window or hop >= window.
    """
    w = int(config.window_size)
    h = int(config.hop_size)
    if w <= 0 or (w & (w - 1)) != 0:
        raise InvalidParameter(f"window_size must be a power of two, got {w}", "spectral")
    if h <= 0 or h >= w:
        raise InvalidParameter(f"hop_size must be in (0, {w}), got {h}", "spectral")

    y = np.asarray(samples, dtype=np.float32).reshape(-1)
    n_samples = len(y)
    n_frames = frame_count(len(y), w, h)
    n_bins = w // 2 + 1

    mel_basis = librosa.filters.mel(
        sr=sample_rate, n_fft=w, n_mels=config.n_mels
    ).astype(np.float32)

    if n_frames == 0:
        return Spectrogram(
            magnitudes=np.zeros((0, n_bins), dtype=np.float32),
            mel=np.zeros((0, config.n_mels), dtype=np.float32),
            sample_rate=sample_rate,
            window_size=w,
            hop_size=h,
            n_samples=n_samples,
        )

    padded_len = (n_frames - 1) * h + w
    if padded_len > len(y):
        y = np.concatenate([y, np.zeros(padded_len - len(y), dtype=np.float32)])

    window = hann_window(w)
    frames_view = np.lib.stride_tricks.sliding_window_view(y, w)[::h]

    magnitudes = np.empty((n_frames, n_bins), dtype=np.float32)
    for start in range(0, n_frames, FRAME_BLOCK):
        stop = min(start + FRAME_BLOCK, n_frames)
        block = frames_view[start:stop] * window
        magnitudes[start:stop] = np.abs(np.fft.rfft(block, axis=1))

    mel = np.ascontiguousarray(magnitudes @ mel_basis.T, dtype=np.float32)

    magnitudes.setflags(write=False)
    mel.setflags(write=False)
    return Spectrogram(
        magnitudes=magnitudes,
        mel=mel,
        sample_rate=sample_rate,
        window_size=w,
        hop_size=h,
        n_samples=n_samples,
    )
