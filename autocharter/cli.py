"""
Command line entry point.

    autocharter generate song.mp3 --difficulty all --output charts/
    autocharter convert charts/hard.yaml charts/hard.npz
    autocharter inspect charts/hard.yaml
"""

import os
import sys
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import replace
from typing import List, Optional, Tuple

import fire

from autocharter.chart import ALL_DIFFICULTIES, Difficulty
from autocharter.config import DEFAULT_CONFIG
from autocharter.decode import find_audio_files
from autocharter.errors import ChartGenError, InputIOError, InvalidParameter
from autocharter.pipeline import process_file
from autocharter.serialize import CHART_EXTS, format_for_path, load_chart, save_chart


def parse_difficulties(difficulty) -> List[Difficulty]:
    """'all', a single name, or a comma-separated list (fire may hand over a tuple)."""
    if isinstance(difficulty, (list, tuple)):
        names = [str(d) for d in difficulty]
    else:
        names = str(difficulty).split(",")
    names = [n.strip() for n in names if n.strip()]
    if not names:
        raise InvalidParameter("no difficulty given")
    if any(n.lower() == "all" for n in names):
        return list(ALL_DIFFICULTIES)
    out: List[Difficulty] = []
    for n in names:
        tier = Difficulty.parse(n)
        if tier not in out:
            out.append(tier)
    return out


class ChartGenCLI:
    def generate(
        self,
        input: str = ".",
        difficulty: str = "normal",
        output: str = ".",
        format: Optional[str] = None,
        bpm: Optional[float] = None,
        sensitivity: Optional[float] = None,
        onset_mode: Optional[str] = None,
        min_interval: Optional[float] = None,
        metadata: bool = False,
        title: Optional[str] = None,
        artist: Optional[str] = None,
        verbose: bool = False,
        seed: int = 999,
        workers: int = 1,
    ):
        """
        Generate rhythm charts from audio.

        Args:
            input: Audio file or directory of files (.mp3, .wav, .ogg, .flac).
            difficulty: easy, normal, hard, expert, a comma-separated list,
                        or "all".
            output: Chart file (single difficulty) or output directory.
                    With a directory input each song gets <output>/<song>/.
            format: "yaml" or "npz". Defaults to the output file's
                    extension, else yaml.
            bpm: Force this tempo instead of estimating it.
            sensitivity: Onset threshold in standard deviations (default 1.5,
                         higher = fewer notes).
            onset_mode: "flux" or "maxfilter" (suppresses vibrato).
            min_interval: Minimum gap between onsets in ms (default 50).
            metadata: Also write metadata.yaml next to the charts.
            title: Song title for the metadata (defaults to the file name).
            artist: Song artist for the metadata.
            verbose: Print onset statistics and note kind counts.
            seed: Base RNG seed for reproducible note kinds.
            workers: Parallel worker processes for directory input:
                     * 1  -> sequential (default)
                     * N>1 -> up to N processes
                     * -1 -> all CPU cores
        """
        config = DEFAULT_CONFIG.with_overrides(
            bpm=bpm, sensitivity=sensitivity, onset_mode=onset_mode, min_interval=min_interval
        )
        config = replace(config, difficulty=replace(config.difficulty, seed=int(seed))).validate()
        tiers = parse_difficulties(difficulty)

        if format:
            fmt = format_for_path(output, format)
        elif os.path.splitext(output)[1].lower() in CHART_EXTS:
            fmt = format_for_path(output)
        else:
            fmt = "yaml"

        audio_files = find_audio_files(input)
        if not audio_files:
            raise InputIOError(f"no supported audio files found in {input}")

        options = dict(
            difficulties=tiers,
            config=config,
            fmt=fmt,
            write_metadata=metadata,
            title=title,
            artist=artist,
            verbose=verbose,
        )

        if len(audio_files) == 1 and not os.path.isdir(input):
            print(f"=== Processing {os.path.basename(audio_files[0])} ===")
            process_file(audio_files[0], output, **options)
            print("\nDone.")
            return

        print(f"Found {len(audio_files)} file(s) to process.")
        tasks: List[Tuple[str, str]] = []
        for p in audio_files:
            stem = os.path.splitext(os.path.basename(p))[0]
            tasks.append((p, os.path.join(output, stem)))

        if workers is None or workers == 0:
            workers = 1
        if workers < 0:
            workers = os.cpu_count() or 1

        failures: List[ChartGenError] = []
        if workers == 1 or len(tasks) == 1:
            for p, out_dir in tasks:
                print(f"\n=== Processing {os.path.basename(p)} ===")
                try:
                    process_file(p, out_dir, **options)
                except ChartGenError as e:
                    print(f"  Error processing {p}: {e}")
                    failures.append(e)
        else:
            print(f"\nUsing up to {workers} worker processes for parallel generation...")
            with ProcessPoolExecutor(max_workers=workers) as executor:
                future_map = {}
                for p, out_dir in tasks:
                    print(f"\n=== Queuing {os.path.basename(p)} ===")
                    future_map[executor.submit(process_file, p, out_dir, **options)] = p

                for fut in as_completed(future_map):
                    p = future_map[fut]
                    try:
                        fut.result()
                    except ChartGenError as e:
                        print(f"  Error processing {p} in worker: {e}")
                        failures.append(e)

        print("\nDone.")
        if failures:
            print(f"{len(failures)} of {len(tasks)} file(s) failed.")
            raise failures[0]

    def convert(self, src: str, dst: str, format: Optional[str] = None):
        """Re-encode a chart (YAML <-> NPZ); the format follows dst's extension unless given."""
        chart = load_chart(src)
        save_chart(chart, dst, format)
        print(f"Converted {src} -> {dst}")

    def inspect(self, chart: str):
        """Print a summary of a chart file."""
        loaded = load_chart(chart)
        print(f"{chart}:")
        for line in loaded.summary_lines():
            print(f"  {line}")


def main(argv: Optional[List[str]] = None) -> int:
    """Run the CLI; returns the process exit status."""
    if argv is None and len(sys.argv) == 1:
        print("No command given; generating Normal charts for audio in the current folder...")
        argv = ["generate"]
    try:
        fire.Fire(ChartGenCLI, command=argv, name="autocharter")
    except ChartGenError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    return 0


if __name__ == "__main__":
    sys.exit(main())
