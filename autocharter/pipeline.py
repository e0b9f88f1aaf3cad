"""
End-to-end chart generation for one input file.

Decoding, spectral analysis, onset detection and beat tracking run once
per file; quantization, difficulty selection, note typing and
serialization run once per requested difficulty. A failure in the shared
stages aborts the file; a failure in one difficulty is reported and the
remaining difficulties still get written.
"""

import os
from collections import Counter
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from autocharter.beat import BeatGrid, fallback_grid, track_beats
from autocharter.chart import ALL_DIFFICULTIES, Chart, Difficulty, SongMetadata, TimingPoint
from autocharter.config import DEFAULT_CONFIG, ChartGenConfig
from autocharter.curves import CatmullRomSegment
from autocharter.decode import SampleBuffer, decode_audio, make_buffer
from autocharter.difficulty import difficulty_rating, score_notes, select_tiers
from autocharter.errors import ChartGenError, EmptySpectrogram, InsufficientSignal
from autocharter.note_kinds import assign_note_kinds
from autocharter.onset import OnsetEvent, detect_onsets, onset_strength
from autocharter.path import path_segment, synthesize_path
from autocharter.quantize import attach_beats, quantize
from autocharter.serialize import CHART_EXTS, save_chart, save_metadata
from autocharter.spectral import Spectrogram, compute_spectrogram


@dataclass(frozen=True)
class Analysis:
    """Shared, read-only output of the per-file stages."""

    buffer: SampleBuffer
    spectrogram: Spectrogram
    strength: np.ndarray
    onsets: Tuple[OnsetEvent, ...]
    grid: BeatGrid


def analyze_buffer(
    buffer: SampleBuffer,
    config: ChartGenConfig = DEFAULT_CONFIG,
    verbose: bool = False,
) -> Analysis:
    print(
        f"  Duration: {buffer.duration:.2f}s at {buffer.sample_rate} Hz "
        f"(source: {buffer.source_channels} channel(s) at {buffer.source_sample_rate} Hz)"
    )

    spec = compute_spectrogram(buffer.samples, buffer.sample_rate, config.analysis)
    print(f"  Spectrogram: {spec.n_frames} frames x {spec.n_bins} bins")

    try:
        strength = onset_strength(spec, config.analysis)
        onsets = detect_onsets(spec, config.analysis, strength)
    except EmptySpectrogram as e:
        print(f"  Warning: {e}; no onsets can be detected.")
        strength = np.zeros(0, dtype=np.float64)
        onsets = []

    print(
        f"  Detected {len(onsets)} onsets "
        f"(mode {config.analysis.onset_mode}, sensitivity {config.analysis.sensitivity})"
    )
    if verbose and onsets:
        s = np.array([o.strength for o in onsets])
        print(f"    Avg strength: {s.mean():.3f}, Max: {s.max():.3f}")

    try:
        grid = track_beats(spec, config.beat, duration=buffer.duration)
    except InsufficientSignal as e:
        bpm = config.beat.bpm_override or config.beat.fallback_bpm
        print(f"  Warning: {e}; falling back to a steady {bpm:.1f} BPM grid.")
        grid = fallback_grid(buffer.duration, bpm)

    if config.beat.bpm_override and not grid.fallback:
        print(f"  BPM override in effect: {grid.bpm:.2f}")
    print(
        f"  Estimated tempo: {grid.bpm:.2f} BPM, {len(grid.beats)} beats, "
        f"first beat at {grid.beats[0]:.3f}s"
    )
    for seg in grid.segments[1:]:
        print(f"    Tempo change at beat {seg.start_beat} ({seg.start_time:.2f}s): {seg.bpm:.2f} BPM")

    return Analysis(
        buffer=buffer,
        spectrogram=spec,
        strength=strength,
        onsets=tuple(attach_beats(onsets, grid)),
        grid=grid,
    )


def analyze_samples(
    samples: np.ndarray,
    sample_rate: int,
    config: ChartGenConfig = DEFAULT_CONFIG,
    verbose: bool = False,
) -> Analysis:
    """Run the shared stages on raw PCM ((n,) or (channels, n))."""
    config.validate()
    return analyze_buffer(make_buffer(samples, sample_rate, config.analysis.sample_rate), config, verbose)


def analyze_file(path: str, config: ChartGenConfig = DEFAULT_CONFIG, verbose: bool = False) -> Analysis:
    config.validate()
    print(f"  Decoding {path}")
    return analyze_buffer(decode_audio(path, config.analysis.sample_rate), config, verbose)


def tier_seeds(seed: int) -> Dict[Difficulty, int]:
    """One derived seed per tier, independent of which tiers are requested."""
    rng = np.random.default_rng(seed)
    return {tier: int(rng.integers(0, 2**32 - 1)) for tier in ALL_DIFFICULTIES}


def timing_points(grid: BeatGrid) -> Tuple[TimingPoint, ...]:
    return tuple(TimingPoint(beat=float(seg.start_beat), bpm=float(seg.bpm)) for seg in grid.segments)


def build_chart(
    analysis: Analysis,
    tier: Difficulty,
    config: ChartGenConfig = DEFAULT_CONFIG,
    song: Optional[SongMetadata] = None,
    path: Optional[CatmullRomSegment] = None,
    verbose: bool = False,
) -> Chart:
    grid = analysis.grid
    resolution = config.difficulty.grid_resolution[tier.value]

    notes = quantize(analysis.onsets, grid, resolution)
    print(f"    {len(notes)} quantized notes (grid 1/{resolution})")

    scored = score_notes(notes, grid, config.difficulty)
    selected = select_tiers(scored, config.difficulty, up_to=tier)[tier]
    rating = difficulty_rating([s.time for s in selected])
    print(f"    {len(selected)} notes after filtering (rating {rating})")

    rng = np.random.default_rng(tier_seeds(config.difficulty.seed)[tier])
    typed = assign_note_kinds(selected, tier, rng)
    if verbose and typed:
        for kind, count in Counter(n.kind.value for n in typed).most_common():
            print(f"      {kind}: {count}")

    if path is None:
        path = path_segment(synthesize_path(analysis.spectrogram, grid, config.path))

    return Chart(
        difficulty=tier,
        difficulty_rating=rating,
        timing_points=timing_points(grid),
        path_segments=(path,),
        notes=tuple(typed),
        events=(),
        song=song,
        offset=float(grid.beats[0]),
        travel_beats=tier.travel_beats,
        look_ahead_beats=tier.travel_beats,
    )


def chart_output_path(output: str, tier: Difficulty, fmt: str, single: bool) -> str:
    """`output` is used as the file itself for a single chart named like one, else as a directory."""
    if single and os.path.splitext(output)[1].lower() in CHART_EXTS:
        return output
    return os.path.join(output, tier.filename(fmt))


def process_file(
    path: str,
    output: str,
    difficulties: Sequence[Difficulty] = (Difficulty.NORMAL,),
    config: ChartGenConfig = DEFAULT_CONFIG,
    fmt: str = "yaml",
    write_metadata: bool = False,
    title: Optional[str] = None,
    artist: Optional[str] = None,
    verbose: bool = False,
) -> List[str]:
    """
    Generate and write charts for one audio file.

    Returns the paths written. If any difficulty failed, the others are
    still written and the first failure is raised at the end.
    """
    analysis = analyze_file(path, config, verbose)

    stem = os.path.splitext(os.path.basename(path))[0]
    song = SongMetadata(
        title=title or stem,
        artist=artist or "Unknown",
        audio_file=os.path.basename(path),
        difficulties=tuple(difficulties),
    )
    segment = path_segment(synthesize_path(analysis.spectrogram, analysis.grid, config.path))
    print(f"  Path: {len(segment.points)} control points over {segment.end_beat:g} beats")

    single = len(difficulties) == 1
    written: List[str] = []
    done: List[Difficulty] = []
    failures: List[ChartGenError] = []
    for tier in difficulties:
        print(f"\n  Generating {tier.label} chart...")
        try:
            chart = build_chart(analysis, tier, config, song, segment, verbose)
            out = save_chart(chart, chart_output_path(output, tier, fmt, single), fmt)
        except ChartGenError as e:
            print(f"  Error generating {tier.label} chart: {e}")
            failures.append(e)
            continue
        except ValueError as e:
            # Notes or timing that the chart model rejects
            err = ChartGenError(f"invalid {tier.label} chart: {e}", "chart")
            print(f"  Error generating {tier.label} chart: {err}")
            failures.append(err)
            continue
        print(f"    Wrote {out}")
        written.append(out)
        done.append(tier)

    if write_metadata and done:
        out_dir = os.path.dirname(written[0]) or "."
        meta_path = save_metadata(replace(song, difficulties=tuple(done)), os.path.join(out_dir, "metadata.yaml"))
        print(f"  Wrote {meta_path}")

    if failures:
        raise failures[0]
    return written
