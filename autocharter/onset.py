"""
Onset detection: spectral flux + adaptive peak picking.

Two strength detectors are available:

- "flux"      : sum over bins of max(0, |X[n,k]| - |X[n-1,k]|)
- "maxfilter" : same, but |X[n-1,k]| is replaced by the maximum over a
                +/- w bin neighbourhood, which suppresses vibrato/tremolo.

Peak picking keeps frames whose strength rises above a centred moving
mean + sensitivity * stddev (~0.5 s window), are local maxima, are louder
than a silence floor relative to the loudest frame, and are not within
the minimum inter-onset interval of a stronger onset.
"""

from dataclasses import dataclass, replace
from typing import List, Optional

import numpy as np
from scipy.ndimage import maximum_filter1d

from autocharter.config import AnalysisConfig
from autocharter.errors import EmptySpectrogram, InvalidParameter
from autocharter.spectral import Spectrogram


@dataclass(frozen=True)
class OnsetEvent:
    time: float                    # seconds
    strength: float                # normalized 0..1
    frame: int
    beat: Optional[float] = None   # filled in once a beat grid exists

    def with_beat(self, beat: float) -> "OnsetEvent":
        return replace(self, beat=float(beat))


def spectral_flux(spectrogram: Spectrogram, max_filter_width: int = 0) -> np.ndarray:
    """
    Raw (unnormalized) flux, one value per frame; frame 0 is 0.

    With max_filter_width > 0 the previous frame is max-filtered across
    +/- max_filter_width bins before differencing.
    """
    n = spectrogram.n_frames
    flux = np.zeros(n, dtype=np.float64)
    if n < 2:
        return flux

    mags = spectrogram.magnitudes
    prev = mags[:-1]
    if max_filter_width > 0:
        prev = maximum_filter1d(prev, size=2 * max_filter_width + 1, axis=1, mode="nearest")

    diff = mags[1:].astype(np.float64) - prev.astype(np.float64)
    flux[1:] = np.maximum(diff, 0.0).sum(axis=1)
    return flux


def onset_strength(spectrogram: Spectrogram, config: AnalysisConfig = AnalysisConfig()) -> np.ndarray:
    """Onset strength signal for the configured detector, scaled to peak 1."""
    if spectrogram.n_frames == 0:
        raise EmptySpectrogram("spectrogram has zero frames")

    if config.onset_mode == "flux":
        flux = spectral_flux(spectrogram)
    elif config.onset_mode == "maxfilter":
        flux = spectral_flux(spectrogram, max_filter_width=config.max_filter_width)
    else:
        raise InvalidParameter(f"unknown onset mode {config.onset_mode!r}", "onset")

    peak = float(flux.max())
    if peak > 0.0:
        flux = flux / peak
    return flux


def moving_stats(signal: np.ndarray, window: int):
    """
    Centred moving mean and stddev; the window is truncated at the edges.

    Returns:
        mean, std : arrays the same length as `signal`
    """
    x = np.asarray(signal, dtype=np.float64)
    if x.size == 0:
        return np.zeros(0), np.zeros(0)
    # np.convolve "same" returns the longer operand's length
    half = min(max(int(window) // 2, 1), (x.size - 1) // 2)
    kernel = np.ones(2 * half + 1)
    counts = np.convolve(np.ones_like(x), kernel, mode="same")
    mean = np.convolve(x, kernel, mode="same") / counts
    mean_sq = np.convolve(x * x, kernel, mode="same") / counts
    var = np.maximum(mean_sq - mean * mean, 0.0)
    return mean, np.sqrt(var)


def pick_peaks(
    strength: np.ndarray,
    frame_energy: np.ndarray,
    frame_rate: float,
    config: AnalysisConfig = AnalysisConfig(),
) -> np.ndarray:
    """
    Adaptive peak picking over an onset strength signal.

    Returns:
        frames : ascending int array of accepted onset frames
    """
    s = np.asarray(strength, dtype=np.float64)
    n = len(s)
    if n < 2:
        return np.zeros(0, dtype=int)

    window = max(int(round(config.peak_window_seconds * frame_rate)), 3)
    mean, std = moving_stats(s, window)
    above = s > mean + config.sensitivity * std

    # Local maxima (plateaus resolve to their first frame)
    left = np.empty(n, dtype=bool)
    left[0] = False
    left[1:] = s[1:] > s[:-1]
    right = np.ones(n, dtype=bool)
    right[:-1] = s[:-1] >= s[1:]

    energy = np.asarray(frame_energy, dtype=np.float64)
    floor = float(energy.max()) * 10.0 ** (config.silence_db / 20.0) if energy.size else 0.0
    loud = energy > floor

    candidates = np.flatnonzero(above & left & right & loud)
    if candidates.size == 0:
        return candidates

    # Strongest first; a candidate survives only if no stronger accepted
    # onset lies within the minimum interval.
    min_gap = int(round(config.min_interval_ms / 1000.0 * frame_rate))
    order = candidates[np.argsort(-s[candidates], kind="stable")]
    accepted: List[int] = []
    taken = np.zeros(n, dtype=bool)
    for f in order:
        lo = max(0, f - min_gap + 1)
        hi = min(n, f + min_gap)
        if min_gap > 0 and taken[lo:hi].any():
            continue
        taken[f] = True
        accepted.append(int(f))

    return np.array(sorted(accepted), dtype=int)


def detect_onsets(
    spectrogram: Spectrogram,
    config: AnalysisConfig = AnalysisConfig(),
    strength: Optional[np.ndarray] = None,
) -> List[OnsetEvent]:
    """
    Detect onsets from a spectrogram.

    Raises EmptySpectrogram for a spectrogram with zero frames; otherwise
    always succeeds (silent input yields an empty list).
    """
    if spectrogram.n_frames == 0:
        raise EmptySpectrogram("spectrogram has zero frames")
    if strength is None:
        strength = onset_strength(spectrogram, config)

    frames = pick_peaks(strength, spectrogram.frame_energy(), spectrogram.frame_rate, config)
    return [
        OnsetEvent(
            time=float(spectrogram.frame_to_seconds(int(f))),
            strength=float(strength[f]),
            frame=int(f),
        )
        for f in frames
    ]
