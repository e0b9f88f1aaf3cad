"""
Tempo estimation and beat-grid alignment.

Steps:

1. Onset envelope: half-wave rectified log-mel flux averaged over bands
   (or a supplied onset strength signal), smoothed with a ~50 ms Hann
   kernel.
2. Autocorrelation over lags covering 40-240 BPM, weighted by a
   log-lag Gaussian prior centred on 120 BPM; the best lag (refined by
   parabolic interpolation) gives the candidate tempo.
3. Dynamic programming over the envelope's peaks. Each peak scores its
   own strength plus the best predecessor score minus a penalty for
   deviating from a whole number of periods (skipped beats cost extra).
   The chain ending at the best score is recovered by backtracking.
4. The chain is regularized into an evenly spaced grid by a least
   squares fit of beat time against beat index.
5. Tempo changes: the tempo is re-estimated over sliding windows and the
   series of local periods is split recursively where a step explains
   enough of its variance. Each span is tracked again away from its
   edges, and the new tempo takes over on the old grid beat that best
   lines up with the envelope, so the grid stays continuous.
6. The grid is extended back to the first beat at or after 0 s and
   forward to the end of the track.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple

import numpy as np
import librosa

from autocharter.config import BeatConfig
from autocharter.errors import EmptySpectrogram, InsufficientSignal
from autocharter.spectral import Spectrogram

# Local tempo estimates an octave away from the global tempo (within this
# many log2 units) are treated as octave errors.
OCTAVE_TOLERANCE = 0.15
MIN_WINDOW_PEAKS = 4
# Neighbouring spans whose periods differ by less than this share one tempo.
TEMPO_TOLERANCE = 0.01


@dataclass(frozen=True)
class TempoSegment:
    start_beat: int
    bpm: float
    start_time: float


@dataclass(frozen=True)
class BeatGrid:
    beats: Tuple[float, ...]
    bpm: float
    segments: Tuple[TempoSegment, ...]
    fallback: bool = False

    def __post_init__(self):
        if not self.bpm > 0:
            raise ValueError(f"BeatGrid bpm must be > 0, got {self.bpm}")
        if len(self.beats) == 0:
            raise ValueError("BeatGrid needs at least one beat")
        if len(self.beats) > 1 and not np.all(np.diff(self.beats) > 0):
            raise ValueError("BeatGrid beat times must be strictly increasing")

    @property
    def total_beats(self) -> int:
        return len(self.beats) - 1

    def _edge_periods(self) -> Tuple[float, float]:
        if len(self.beats) < 2:
            p = 60.0 / self.bpm
            return p, p
        return self.beats[1] - self.beats[0], self.beats[-1] - self.beats[-2]

    def time_to_beat(self, t):
        """Seconds -> fractional beat index (linear extrapolation past either end)."""
        beats = np.asarray(self.beats, dtype=np.float64)
        idx = np.arange(len(beats), dtype=np.float64)
        first_p, last_p = self._edge_periods()
        tt = np.asarray(t, dtype=np.float64)
        out = np.interp(tt, beats, idx)
        out = np.where(tt < beats[0], (tt - beats[0]) / first_p, out)
        out = np.where(tt > beats[-1], idx[-1] + (tt - beats[-1]) / last_p, out)
        return float(out) if np.ndim(out) == 0 else out

    def beat_to_time(self, b):
        """Fractional beat index -> seconds (inverse of time_to_beat)."""
        beats = np.asarray(self.beats, dtype=np.float64)
        idx = np.arange(len(beats), dtype=np.float64)
        first_p, last_p = self._edge_periods()
        bb = np.asarray(b, dtype=np.float64)
        out = np.interp(bb, idx, beats)
        out = np.where(bb < 0, beats[0] + bb * first_p, out)
        out = np.where(bb > idx[-1], beats[-1] + (bb - idx[-1]) * last_p, out)
        return float(out) if np.ndim(out) == 0 else out


def onset_envelope(
    spectrogram: Spectrogram,
    config: BeatConfig = BeatConfig(),
    strength: Optional[np.ndarray] = None,
) -> np.ndarray:
    """
    Per-frame onset envelope used for tempo and beat estimation.

    If `strength` is given it is reused; otherwise the envelope is the mean
    over mel bands of the half-wave rectified log-mel difference.
    """
    if strength is not None:
        env = np.array(strength, dtype=np.float64)
    else:
        if spectrogram.n_frames == 0:
            raise EmptySpectrogram("spectrogram has zero frames", "beat")
        logmel = np.log1p(spectrogram.mel.astype(np.float64))
        env = np.zeros(spectrogram.n_frames, dtype=np.float64)
        if spectrogram.n_frames > 1:
            env[1:] = np.maximum(np.diff(logmel, axis=0), 0.0).mean(axis=1)

    k = max(int(round(config.smooth_seconds * spectrogram.frame_rate)), 3) | 1
    kernel = np.hanning(k + 2)[1:-1]
    kernel /= kernel.sum()
    return np.convolve(env, kernel, mode="same")


def estimate_tempo(envelope: np.ndarray, frame_rate: float, config: BeatConfig = BeatConfig()) -> float:
    """
    Dominant tempo (BPM) of an onset envelope via prior-weighted autocorrelation.

    Raises InsufficientSignal if the envelope is silent or shorter than two
    periods of the fastest candidate tempo.
    """
    env = np.asarray(envelope, dtype=np.float64)
    lag_min = max(int(np.floor(60.0 * frame_rate / config.max_bpm)), 1)
    lag_max = int(np.ceil(60.0 * frame_rate / config.min_bpm))
    lag_max = min(lag_max, len(env) // 2)

    if len(env) < 2 * lag_min or lag_max <= lag_min:
        raise InsufficientSignal(
            f"onset envelope has {len(env)} frames, too short for a "
            f"{config.max_bpm:.0f} BPM period ({lag_min} frames)"
        )
    if not np.any(env > 0.0):
        raise InsufficientSignal("onset envelope is silent")

    ac = librosa.autocorrelate(env, max_size=lag_max + 1)
    lags = np.arange(lag_min, lag_max + 1)
    ac = ac[lags] / (len(env) - lags)

    prior_lag = 60.0 * frame_rate / config.prior_bpm
    weight = np.exp(-0.5 * (np.log2(lags / prior_lag) / config.prior_octaves) ** 2)
    score = ac * weight

    i = int(np.argmax(score))
    lag = float(lags[i])
    if 0 < i < len(score) - 1:
        a, b, c = score[i - 1], score[i], score[i + 1]
        denom = a - 2.0 * b + c
        if denom < 0:
            lag += 0.5 * (a - c) / denom

    return 60.0 * frame_rate / lag


def candidate_peaks(envelope: np.ndarray, floor: float) -> np.ndarray:
    """Local maxima of the envelope at or above `floor` x its maximum."""
    env = np.asarray(envelope, dtype=np.float64)
    n = len(env)
    if n < 3:
        return np.zeros(0, dtype=int)
    inner = (env[1:-1] > env[:-2]) & (env[1:-1] >= env[2:])
    peaks = np.flatnonzero(inner) + 1
    return peaks[env[peaks] >= floor * env.max()]


def dp_beats(
    envelope: np.ndarray,
    period: float,
    config: BeatConfig = BeatConfig(),
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Best beat chain over envelope peaks for a period given in frames.

    Scores live in flat arrays indexed by candidate (score, predecessor,
    period multiple); the chain is recovered by walking predecessors back
    from the best score.

    Returns:
        frames : envelope frames of the chosen beats (ascending)
        ks     : beat index of each chosen frame (0 for the first; gaps
                 where beats were skipped)
    """
    env = np.asarray(envelope, dtype=np.float64)
    if env.size == 0 or not np.any(env > 0.0):
        raise InsufficientSignal("onset envelope is silent")

    cand = candidate_peaks(env, config.peak_floor)
    if len(cand) < 2:
        raise InsufficientSignal(f"only {len(cand)} candidate beat peaks found")

    std = float(env.std())
    local = env[cand] / (std if std > 0 else 1.0)

    n = len(cand)
    scores = np.empty(n, dtype=np.float64)
    preds = np.full(n, -1, dtype=int)
    mults = np.ones(n, dtype=int)

    lo_dist = 0.5 * period
    hi_dist = (config.max_skip_beats + 0.5) * period

    for j in range(n):
        fj = cand[j]
        lo = int(np.searchsorted(cand, fj - hi_dist, side="left"))
        hi = min(int(np.searchsorted(cand, fj - lo_dist, side="right")), j)
        if hi <= lo:
            scores[j] = local[j]
            continue

        d = (fj - cand[lo:hi]).astype(np.float64)
        m = np.maximum(np.rint(d / period), 1.0)
        penalty = config.tightness * np.log(d / (m * period)) ** 2 + config.skip_penalty * (m - 1.0)
        total = scores[lo:hi] - penalty
        best = int(np.argmax(total))
        scores[j] = local[j] + total[best]
        preds[j] = lo + best
        mults[j] = int(m[best])

    chain: List[int] = []
    j = int(np.argmax(scores))
    while j >= 0:
        chain.append(j)
        j = int(preds[j])
    chain.reverse()

    if len(chain) < 2:
        raise InsufficientSignal("beat alignment found no periodic chain")

    frames = cand[chain]
    ks = np.concatenate([[0], np.cumsum(mults[chain[1:]])]).astype(int)
    return frames, ks


def fit_grid(times: np.ndarray, ks: np.ndarray, period: Optional[float] = None) -> Tuple[float, float]:
    """
    Least squares fit of time = t0 + k * period.

    With `period` given only the offset is fitted.

    Returns:
        t0, period (seconds)
    """
    t = np.asarray(times, dtype=np.float64)
    k = np.asarray(ks, dtype=np.float64)
    if period is not None:
        return float(np.mean(t - k * period)), float(period)
    slope, intercept = np.polyfit(k, t, 1)
    if not slope > 0:
        raise InsufficientSignal(f"beat chain does not advance in time (period {slope:.4f}s)")
    return float(intercept), float(slope)


def local_periods(
    envelope: np.ndarray,
    frame_rate: float,
    config: BeatConfig = BeatConfig(),
    reference: Optional[float] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Tempo of the envelope over sliding windows, as beat periods.

    Windows of `drift_window_seconds` advance by `drift_hop_seconds`.
    Windows holding fewer than four envelope peaks are left out. Given a
    `reference` period, estimates about an octave away from it are folded
    back onto it.

    Returns:
        centres : centre frame of each kept window
        periods : beat period in seconds of each kept window
    """
    env = np.asarray(envelope, dtype=np.float64)
    w = max(int(round(config.drift_window_seconds * frame_rate)), 1)
    h = max(int(round(config.drift_hop_seconds * frame_rate)), 1)
    peaks = candidate_peaks(env, config.peak_floor)

    centres: List[float] = []
    periods: List[float] = []
    for a in range(0, len(env) - w + 1, h):
        lo, hi = np.searchsorted(peaks, [a, a + w])
        if hi - lo < MIN_WINDOW_PEAKS:
            continue
        try:
            p = 60.0 / estimate_tempo(env[a : a + w], frame_rate, config)
        except InsufficientSignal:
            continue
        if reference:
            octave = np.log2(p / reference)
            n = int(round(octave))
            if n != 0 and abs(octave - n) < OCTAVE_TOLERANCE:
                p = p / 2.0 ** n
        centres.append(a + 0.5 * w)
        periods.append(p)
    return np.array(centres, dtype=np.float64), np.array(periods, dtype=np.float64)


def find_tempo_splits(
    centres: np.ndarray,
    periods: np.ndarray,
    threshold: float = 0.0016,
    min_segment: float = 8.0,
    start: Optional[float] = None,
    end: Optional[float] = None,
) -> List[float]:
    """
    Times where the local tempo steps to a new value.

    The local periods, relative to their median, are split recursively at
    the point that best divides them into two steady parts. A split is kept
    when the variance it explains exceeds `threshold` and both sides last
    at least `min_segment` (same units as `centres`).
    """
    c = np.asarray(centres, dtype=np.float64)
    p = np.asarray(periods, dtype=np.float64)
    if len(p) < 2:
        return []
    r = p / np.median(p)
    start = float(c[0]) if start is None else start
    end = float(c[-1]) if end is None else end
    splits: List[float] = []

    def split(lo, hi, t_lo, t_hi):
        n = float(hi - lo)
        best, best_k = threshold, None
        for k in range(lo + 1, hi):
            t = 0.5 * (c[k - 1] + c[k])
            if t - t_lo < min_segment or t_hi - t < min_segment:
                continue
            left, right = r[lo:k], r[k:hi]
            between = len(left) * len(right) / (n * n) * (left.mean() - right.mean()) ** 2
            if between > best:
                best, best_k = between, k
        if best_k is None:
            return
        t = float(0.5 * (c[best_k - 1] + c[best_k]))
        split(lo, best_k, t_lo, t)
        splits.append(t)
        split(best_k, hi, t, t_hi)

    split(0, len(r), start, end)
    return splits


def _fit_span(
    envelope: np.ndarray,
    spectrogram: Spectrogram,
    config: BeatConfig,
    start: float = 0.0,
    end: Optional[float] = None,
    bpm: Optional[float] = None,
    fixed: bool = False,
) -> Tuple[float, float]:
    """
    (t0, period) of the grid fitted to the envelope between two times.

    Without `bpm` the span's own tempo is estimated first; with `fixed`
    only the phase is fitted.
    """
    a = max(spectrogram.seconds_to_frame(start), 0) if start > 0 else 0
    b = len(envelope)
    if end is not None:
        b = min(max(spectrogram.seconds_to_frame(end), a), b)
    sub = envelope[a:b]
    fr = spectrogram.frame_rate
    if bpm is None:
        bpm = estimate_tempo(sub, fr, config)
    frames, ks = dp_beats(sub, fr * 60.0 / bpm, config)
    times = spectrogram.frame_to_seconds(frames + a)
    return fit_grid(times, ks, 60.0 / bpm if fixed else None)


def _first_beat(t0: float, period: float) -> float:
    """Earliest time >= 0 on the grid t0 + k * period."""
    return float(t0 - np.floor(t0 / period + 1e-9) * period)


def _alignment(envelope: np.ndarray, spectrogram: Spectrogram, times: np.ndarray) -> float:
    """Mean envelope strength at the given beat times (one frame of slack)."""
    n = len(envelope)
    frames = spectrogram.seconds_to_frame(np.atleast_1d(times))
    frames = frames[(frames >= 0) & (frames < n)]
    if frames.size == 0:
        return 0.0
    lo = np.clip(frames - 1, 0, n - 1)
    hi = np.clip(frames + 1, 0, n - 1)
    return float(np.maximum(np.maximum(envelope[lo], envelope[frames]), envelope[hi]).mean())


def _junction(
    envelope: np.ndarray,
    spectrogram: Spectrogram,
    start: float,
    period: float,
    new_period: float,
    split: float,
    radius: float,
    duration: float,
) -> Optional[int]:
    """
    Beats the old tempo runs for (from `start`) before `new_period` takes over.

    Candidates are old grid beats within `radius` of the rough split; the
    one whose combined grid best lines up with the envelope wins. None when
    no candidate falls inside the track.
    """
    k_lo = max(int(np.ceil((split - radius - start) / period)), 1)
    k_hi = int(np.floor((min(split + radius, duration) - start) / period))
    if k_hi < k_lo:
        return None

    best_k, best_score = None, -np.inf
    for k in range(k_lo, k_hi + 1):
        c = start + k * period
        before = start + period * np.arange(k_lo, k + 1)
        after = c + new_period * np.arange(1, int(np.floor((split + radius - c) / new_period)) + 1)
        score = _alignment(envelope, spectrogram, np.concatenate([before, after]))
        if score > best_score:
            best_k, best_score = k, score
    return best_k


def _dominant_bpm(segments: List[TempoSegment], total: int) -> float:
    best_bpm, best_len = segments[0].bpm, -1
    for i, seg in enumerate(segments):
        end = segments[i + 1].start_beat if i + 1 < len(segments) else total
        if end - seg.start_beat > best_len:
            best_bpm, best_len = seg.bpm, end - seg.start_beat
    return best_bpm


def _assemble(pieces: List[Tuple[float, float, float]], counts: List[int], duration: float) -> BeatGrid:
    """
    Lay out the beats of consecutive (start, period, bpm) pieces.

    Every piece but the last runs for its entry in `counts`; the last runs
    to the end of the track.
    """
    beats: List[float] = []
    segments: List[TempoSegment] = []
    for i, (start, period, bpm) in enumerate(pieces):
        if i < len(counts):
            n = counts[i]
        else:
            n = int(np.floor((duration - start) / period + 1e-9)) + 1
        if n <= 0:
            continue
        segments.append(TempoSegment(start_beat=len(beats), bpm=bpm, start_time=float(start)))
        beats.extend(float(x) for x in start + period * np.arange(n, dtype=np.float64))

    if not beats:
        raise InsufficientSignal("beat grid lies beyond the end of the track")
    return BeatGrid(
        beats=tuple(beats),
        bpm=_dominant_bpm(segments, len(beats)),
        segments=tuple(segments),
    )


def track_beats(
    spectrogram: Spectrogram,
    config: BeatConfig = BeatConfig(),
    strength: Optional[np.ndarray] = None,
    duration: Optional[float] = None,
) -> BeatGrid:
    """
    Estimate tempo and an evenly spaced beat grid (piecewise when the tempo changes).

    The grid runs from the first beat at or after 0 s to the last beat at
    or before `duration` (the spectrogram's audio length by default). Each
    tempo segment starts exactly on the previous segment's next beat, so
    (start beat, bpm) pairs reproduce the grid.

    With config.bpm_override set, tempo estimation and drift splitting are
    skipped and only the phase is aligned.

    Raises InsufficientSignal when no grid can be estimated.
    """
    env = onset_envelope(spectrogram, config, strength)
    fr = spectrogram.frame_rate
    if duration is None:
        duration = spectrogram.duration
    if not duration > 0:
        duration = float(spectrogram.frame_to_seconds(max(len(env) - 1, 0)))

    override = config.bpm_override
    if override:
        t0, period = _fit_span(env, spectrogram, config, bpm=float(override), fixed=True)
        return _assemble([(_first_beat(t0, period), period, float(override))], [], duration)

    bpm0 = estimate_tempo(env, fr, config)
    centres, periods = local_periods(env, fr, config, reference=60.0 / bpm0)
    splits = find_tempo_splits(
        spectrogram.frame_to_seconds(centres),
        periods,
        config.drift_threshold,
        config.min_segment_beats * 60.0 / bpm0,
        0.0,
        duration,
    )

    if not splits:
        t0, period = _fit_span(env, spectrogram, config, bpm=bpm0)
        return _assemble([(_first_beat(t0, period), period, 60.0 / period)], [], duration)

    # Spans are fitted away from the splits, where windows mix both tempos
    bounds = [0.0] + splits + [duration]
    fits: List[Tuple[float, float, float]] = []
    for i in range(len(bounds) - 1):
        a, b = bounds[i], bounds[i + 1]
        guard = min(0.5 * config.drift_window_seconds, 0.25 * (b - a))
        start = a + guard if i > 0 else 0.0
        end = b - guard if i < len(bounds) - 2 else None
        try:
            t0, period = _fit_span(env, spectrogram, config, start, end)
        except InsufficientSignal as e:
            print(
                f"  Warning: no beats between {a:.1f}s and {b:.1f}s ({e.message}); "
                "keeping the previous tempo there."
            )
            continue
        fits.append((a, t0, period))

    if not fits:
        raise InsufficientSignal("no tempo segment could be aligned")

    _, t0, period = fits[0]
    pieces = [(_first_beat(t0, period), period, 60.0 / period)]
    counts: List[int] = []
    for split, _, new_period in fits[1:]:
        origin, period, _ = pieces[-1]
        if abs(new_period / period - 1.0) < TEMPO_TOLERANCE:
            continue
        k = _junction(
            env, spectrogram, origin, period, new_period, split, config.drift_window_seconds, duration
        )
        if k is None:
            continue
        counts.append(k)
        pieces.append((origin + k * period, new_period, 60.0 / new_period))

    return _assemble(pieces, counts, duration)


def fallback_grid(duration: float, bpm: float, start_time: float = 0.0) -> BeatGrid:
    """Evenly spaced metronome grid covering `duration` seconds."""
    period = 60.0 / bpm
    count = max(int(np.floor(max(duration - start_time, 0.0) / period)) + 1, 2)
    beats = start_time + period * np.arange(count, dtype=np.float64)
    seg = TempoSegment(start_beat=0, bpm=float(bpm), start_time=float(start_time))
    return BeatGrid(
        beats=tuple(float(b) for b in beats),
        bpm=float(bpm),
        segments=(seg,),
        fallback=True,
    )
