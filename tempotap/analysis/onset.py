"""Onset detection from a short-time energy envelope."""

import math

import numpy as np
import librosa

from tempotap.analysis.models import Onset
from tempotap.audio.preprocessing import prepare_for_onsets, to_mono

DEFAULT_FRAME_DURATION = 0.02  # seconds


def frame_length_for(sr: int, frame_duration: float = DEFAULT_FRAME_DURATION) -> int:
    """Smallest power-of-two window covering *frame_duration* seconds at *sr*.

    44.1 and 48 kHz give 1024 samples, 22.05 kHz gives 512, 8 kHz gives 256.
    """
    return 1 << max(4, math.ceil(math.log2(max(1.0, frame_duration * sr))))


def onset_envelope(
    audio: np.ndarray,
    sr: int,
    frame_length: int | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """Return the RMS energy envelope over half-overlapping frames.

    Returns (times, envelope) arrays. Times are frame start times, so every
    entry lies inside the buffer. Audio shorter than one frame yields two
    empty arrays.
    """
    if frame_length is None:
        frame_length = frame_length_for(sr)
    hop_length = frame_length // 2
    if len(audio) < frame_length:
        return np.zeros(0), np.zeros(0)

    envelope = librosa.feature.rms(
        y=audio, frame_length=frame_length, hop_length=hop_length, center=False,
    )[0]
    times = librosa.frames_to_time(np.arange(len(envelope)), sr=sr, hop_length=hop_length)
    return times, envelope


def adaptive_threshold(
    envelope: np.ndarray,
    window_frames: int,
    sensitivity: float = 1.5,
    noise_floor: float = 1e-4,
) -> np.ndarray:
    """Trailing moving average of the envelope scaled by *sensitivity*.

    The average covers the current frame and the ``window_frames - 1``
    frames before it, zero-padded at the start of the buffer.
    """
    window_frames = max(1, int(window_frames))
    kernel = np.ones(window_frames) / window_frames
    trailing = np.convolve(envelope, kernel)[:len(envelope)]
    return np.maximum(sensitivity * trailing, noise_floor)


def _peak_time(audio: np.ndarray, sr: int, start: int, frame_length: int) -> float:
    """Time of the loudest sample inside one analysis frame."""
    frame = np.abs(audio[start:start + frame_length])
    return (start + int(np.argmax(frame))) / sr


def detect_onsets(
    audio: np.ndarray,
    sr: int,
    frame_length: int | None = None,
    sensitivity: float = 1.5,
    threshold_window: float = 0.75,
    noise_floor: float = 1e-4,
    min_gap: float = 0.05,
) -> list[Onset]:
    """Detect onsets as rising edges of the energy envelope.

    A frame is an onset when it rises above the previous frame and above
    the adaptive threshold. The onset time is the loudest sample of that
    frame, so timing does not depend on the hop size. Onsets closer than
    *min_gap* seconds are merged into the earlier one. Salience is the
    excess over the threshold, normalized so the strongest onset is 1.0.

    *frame_length* defaults to about 20 ms of audio at *sr*.
    Silent audio and audio shorter than one frame return an empty list.
    """
    if frame_length is None:
        frame_length = frame_length_for(sr)

    audio = to_mono(audio)
    if len(audio) < frame_length:
        return []
    if float(np.max(np.abs(audio))) < noise_floor:
        return []

    audio = prepare_for_onsets(audio, sr)
    _, envelope = onset_envelope(audio, sr, frame_length)
    if len(envelope) == 0:
        return []

    hop_length = frame_length // 2
    window_frames = round(threshold_window * sr / hop_length)
    threshold = adaptive_threshold(envelope, window_frames, sensitivity, noise_floor)

    previous = np.concatenate(([0.0], envelope[:-1]))
    candidates = np.flatnonzero((envelope > threshold) & (envelope > previous))
    excess = envelope - threshold

    merged: list[list[float]] = []  # [time, excess]
    for idx in candidates:
        t = _peak_time(audio, sr, int(idx) * hop_length, frame_length)
        e = float(excess[idx])
        if merged and t - merged[-1][0] < min_gap:
            merged[-1][1] = max(merged[-1][1], e)
        else:
            merged.append([t, e])

    if not merged:
        return []

    peak = max(e for _, e in merged)
    return [Onset(time=t, salience=e / peak) for t, e in merged]
