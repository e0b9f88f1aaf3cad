"""
Audio decoding: any supported container -> mono float PCM at 44.1 kHz.
"""

import os
from dataclasses import dataclass
from typing import List

import numpy as np
import librosa

from autocharter.config import TARGET_SAMPLE_RATE
from autocharter.errors import DecodeError, InputIOError, UnsupportedFormat

SUPPORTED_EXTS = (".mp3", ".wav", ".ogg", ".flac")


@dataclass(frozen=True)
class SampleBuffer:
    samples: np.ndarray     # 1-D float32, read-only
    sample_rate: int
    source_sample_rate: int
    source_channels: int

    @property
    def duration(self) -> float:
        return len(self.samples) / float(self.sample_rate)


def find_audio_files(input_path: str) -> List[str]:
    """Return list of audio file paths from a file or directory (non-recursive)."""
    if os.path.isfile(input_path):
        return [input_path]
    if not os.path.isdir(input_path):
        raise InputIOError(f"input path does not exist: {input_path}")

    files: List[str] = []
    for entry in sorted(os.listdir(input_path)):
        full = os.path.join(input_path, entry)
        if os.path.isfile(full) and entry.lower().endswith(SUPPORTED_EXTS):
            files.append(full)
    return files


def make_buffer(
    samples: np.ndarray,
    sample_rate: int,
    target_rate: int = TARGET_SAMPLE_RATE,
) -> SampleBuffer:
    """
    Mix down and resample raw PCM.

    samples may be (n,) or (channels, n); channels are averaged per sample.
    Resampling uses soxr's band-limited interpolation.
    """
    y = np.asarray(samples, dtype=np.float32)
    channels = 1 if y.ndim == 1 else int(y.shape[0])
    if y.ndim > 1:
        y = librosa.to_mono(y)

    if sample_rate != target_rate and y.size > 0:
        y = librosa.resample(
            y, orig_sr=sample_rate, target_sr=target_rate, res_type="soxr_hq"
        )

    y = np.ascontiguousarray(y, dtype=np.float32)
    y.setflags(write=False)
    return SampleBuffer(
        samples=y,
        sample_rate=target_rate,
        source_sample_rate=int(sample_rate),
        source_channels=channels,
    )


def decode_audio(path: str, target_rate: int = TARGET_SAMPLE_RATE) -> SampleBuffer:
    """
    Decode an audio file to mono float PCM at `target_rate`.

    Raises:
        InputIOError       : the path is missing or unreadable
        UnsupportedFormat  : the extension is not a container we decode
        DecodeError        : the data is corrupt or truncated
    """
    ext = os.path.splitext(path)[1].lower()
    if ext not in SUPPORTED_EXTS:
        raise UnsupportedFormat(
            f"unsupported audio container {ext or '(none)'!r} for {path}; "
            f"expected one of {', '.join(SUPPORTED_EXTS)}"
        )
    if not os.path.isfile(path):
        raise InputIOError(f"audio file not found: {path}")
    if not os.access(path, os.R_OK):
        raise InputIOError(f"audio file is not readable: {path}")

    try:
        y, sr = librosa.load(path, sr=None, mono=False)
    except (FileNotFoundError, PermissionError, IsADirectoryError) as e:
        raise InputIOError(f"failed to read {path}: {e}") from e
    except Exception as e:
        # soundfile / audioread raise a variety of types for bad data
        raise DecodeError(f"failed to decode {path}: {e}") from e

    if np.size(y) == 0:
        raise DecodeError(f"no audio samples decoded from {path}")
    if not np.all(np.isfinite(y)):
        raise DecodeError(f"decoded non-finite samples from {path}")

    return make_buffer(y, int(sr), target_rate)
