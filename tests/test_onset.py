"""Tests for onset extraction."""

import numpy as np
import pytest

from tempotap.analysis.onset import (
    adaptive_threshold,
    detect_onsets,
    frame_length_for,
    onset_envelope,
)
from tests.conftest import generate_click_track


def test_silence_has_no_onsets():
    audio = np.zeros(44100 * 3, dtype=np.float32)
    assert detect_onsets(audio, 44100) == []


def test_audio_below_noise_floor_has_no_onsets():
    rng = np.random.default_rng(0)
    audio = (rng.standard_normal(44100) * 1e-6).astype(np.float32)
    assert detect_onsets(audio, 44100) == []


def test_buffer_shorter_than_one_window_has_no_onsets():
    audio = np.ones(500, dtype=np.float32)
    assert detect_onsets(audio, 44100, frame_length=1024) == []


def test_click_track_onsets_near_clicks(click_120):
    onsets = detect_onsets(click_120, 44100)

    assert len(onsets) == 20
    for i, onset in enumerate(onsets):
        assert abs(onset.time - i * 0.5) < 0.03


def test_onsets_are_ordered_and_inside_buffer(click_100):
    onsets = detect_onsets(click_100, 44100)
    times = [o.time for o in onsets]

    assert times == sorted(times)
    assert len(set(times)) == len(times)
    assert all(0 <= t < 10.0 for t in times)


def test_salience_is_normalized_to_strongest(click_100):
    onsets = detect_onsets(click_100, 44100)

    saliences = [o.salience for o in onsets]
    assert max(saliences) == 1.0
    assert all(0.0 <= s <= 1.0 for s in saliences)
    # Accented downbeats stand out
    assert onsets[0].salience > onsets[1].salience


def test_stereo_is_downmixed():
    mono = generate_click_track(bpm=120, duration_seconds=4)
    stereo = np.stack([mono, mono])

    mono_times = [o.time for o in detect_onsets(mono, 44100)]
    stereo_times = [o.time for o in detect_onsets(stereo, 44100)]
    assert stereo_times == mono_times


def test_envelope_times_are_frame_starts():
    audio = np.zeros(4096, dtype=np.float32)
    times, envelope = onset_envelope(audio, 44100, frame_length=1024)

    assert len(times) == len(envelope) == 7
    assert times[1] == pytest.approx(512 / 44100)


def test_adaptive_threshold_respects_noise_floor():
    envelope = np.zeros(10)
    threshold = adaptive_threshold(envelope, window_frames=4, noise_floor=0.01)
    assert np.all(threshold == 0.01)


def test_adaptive_threshold_is_trailing_mean():
    envelope = np.array([0.0, 0.0, 4.0, 0.0])
    threshold = adaptive_threshold(envelope, window_frames=2, sensitivity=1.0, noise_floor=0.0)
    np.testing.assert_allclose(threshold, [0.0, 0.0, 2.0, 2.0])


@pytest.mark.parametrize("sr,expected", [(8000, 256), (16000, 512), (22050, 512), (44100, 1024), (48000, 1024)])
def test_frame_length_follows_sample_rate(sr, expected):
    assert frame_length_for(sr) == expected


@pytest.mark.parametrize("sr", [8000, 22050, 48000])
def test_onset_times_do_not_depend_on_hop_size(sr):
    audio = generate_click_track(bpm=200, duration_seconds=4, sr=sr)
    onsets = detect_onsets(audio, sr)

    assert len(onsets) == 14
    for i, onset in enumerate(onsets):
        assert abs(onset.time - i * 0.3) < 0.002
