import numpy as np
import pytest
import soundfile as sf

SR = 44100


def sine(freq, seconds, sr=SR, amp=0.5):
    t = np.arange(int(round(seconds * sr))) / float(sr)
    return (amp * np.sin(2 * np.pi * freq * t)).astype(np.float32)


def clicks_at(times, tail=1.0, sr=SR, seed=0):
    """Decaying 20 ms noise bursts starting at each of `times` (seconds)."""
    rng = np.random.default_rng(seed)
    n = int(round((times[-1] + tail) * sr))
    y = np.zeros(n, dtype=np.float32)
    burst_len = int(0.02 * sr)
    envelope = np.exp(-np.linspace(0.0, 6.0, burst_len))
    for t in times:
        s = int(round(t * sr))
        burst = rng.uniform(-0.9, 0.9, burst_len) * envelope
        y[s : s + burst_len] += burst[: n - s].astype(np.float32)
    return y


def click_track(bpm=120.0, clicks=32, start=0.5, tail=1.0, sr=SR, seed=0):
    """A click on every beat."""
    return clicks_at(start + (60.0 / bpm) * np.arange(clicks), tail, sr, seed)


@pytest.fixture
def sine_wav(tmp_path):
    path = tmp_path / "sine440.wav"
    sf.write(str(path), sine(440.0, 2.0), SR)
    return str(path)


@pytest.fixture
def stereo_wav(tmp_path):
    left = sine(440.0, 1.0)
    right = np.zeros_like(left)
    path = tmp_path / "stereo.wav"
    sf.write(str(path), np.stack([left, right], axis=1), SR)
    return str(path)


@pytest.fixture
def low_rate_wav(tmp_path):
    path = tmp_path / "sine22k.wav"
    sf.write(str(path), sine(440.0, 1.0, sr=22050), 22050)
    return str(path)


@pytest.fixture
def click_wav(tmp_path):
    path = tmp_path / "clicks.wav"
    sf.write(str(path), click_track(), SR)
    return str(path)


@pytest.fixture
def silence_wav(tmp_path):
    path = tmp_path / "silence.wav"
    sf.write(str(path), np.zeros(10 * SR, dtype=np.float32), SR)
    return str(path)


@pytest.fixture
def corrupt_wav(tmp_path):
    path = tmp_path / "corrupt.wav"
    path.write_bytes(b"RIFF\x10\x00\x00\x00WAVEjunk" + bytes(range(256)) * 4)
    return str(path)
