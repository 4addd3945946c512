"""Shared test fixtures for tempo engine tests."""

import threading

import numpy as np
import pytest
from fastapi.testclient import TestClient

from tempotap.analysis.models import BeatAnalysisResult, BeatTimeline
from tempotap.main import app


@pytest.fixture
def client():
    """FastAPI test client."""
    return TestClient(app)


def generate_click_track(
    bpm: float,
    beats_per_bar: int = 4,
    duration_seconds: float = 10.0,
    sr: int = 44100,
    accent_ratio: float = 1.0,
) -> np.ndarray:
    """Generate a synthetic click track, optionally with accented downbeats.

    Returns mono audio at the given sample rate.
    """
    n_samples = int(duration_seconds * sr)
    audio = np.zeros(n_samples, dtype=np.float32)

    beat_interval = 60.0 / bpm  # seconds per beat
    click_duration = 0.02  # 20ms click
    click_samples = int(click_duration * sr)

    # Create click sound (short sine burst with envelope)
    t_click = np.arange(click_samples) / sr
    click = np.sin(2 * np.pi * 1000 * t_click) * np.exp(-t_click * 100)

    beat = 0
    time = 0.0
    while time < duration_seconds:
        sample_pos = int(time * sr)
        is_downbeat = (beat % beats_per_bar) == 0
        amplitude = accent_ratio if is_downbeat else 1.0

        end = min(sample_pos + click_samples, n_samples)
        length = end - sample_pos
        if length > 0:
            audio[sample_pos:end] += click[:length] * amplitude

        time += beat_interval
        beat += 1

    # Normalize
    peak = np.max(np.abs(audio))
    if peak > 0:
        audio = audio / peak

    return audio


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 100.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class GatedAnalyzer:
    """Stand-in pipeline that blocks until released.

    The result's bpm is ``100 * duration`` so tests can tell which buffer
    produced it.
    """

    def __init__(self):
        self.started = threading.Event()
        self.gate = threading.Event()
        self.calls = []

    def __call__(self, buffer, should_abort=None):
        self.calls.append(buffer)
        self.started.set()
        self.gate.wait(5)
        return BeatAnalysisResult(
            bpm=round(100 * buffer.duration, 2),
            confidence=0.9,
            beats=BeatTimeline(times=(0.0,), duration=buffer.duration),
            duration=buffer.duration,
            reliable=True,
            confidence_level="high",
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def click_120():
    """Click track at 120 BPM, 10 seconds."""
    return generate_click_track(bpm=120, duration_seconds=10)


@pytest.fixture
def click_100():
    """Click track at 100 BPM, 10 seconds, accented every 4th beat."""
    return generate_click_track(bpm=100, duration_seconds=10, accent_ratio=2.0)
