"""Signal conditioning applied before onset extraction."""

from __future__ import annotations

import librosa
import numpy as np
from scipy.signal import butter, sosfilt

RUMBLE_CUTOFF_HZ = 60.0


def to_mono(audio: np.ndarray) -> np.ndarray:
    """Downmix ``(channels, n)`` audio to a mono float32 signal."""
    audio = np.asarray(audio, dtype=np.float32)
    if audio.ndim == 1:
        return audio
    return librosa.to_mono(audio)


def peak_normalize(audio: np.ndarray) -> np.ndarray:
    """Scale so the loudest sample sits at +/-1. All-zero input is returned as is."""
    peak = float(np.max(np.abs(audio))) if len(audio) else 0.0
    if peak == 0.0:
        return audio
    return audio / peak


def remove_rumble(
    audio: np.ndarray,
    sr: int,
    cutoff: float = RUMBLE_CUTOFF_HZ,
    order: int = 4,
) -> np.ndarray:
    """High-pass out sub-bass energy that would smear transient edges.

    Sample rates whose Nyquist frequency is at or below *cutoff* cannot be
    filtered and are returned unchanged.
    """
    if cutoff >= sr / 2:
        return audio
    sos = butter(N=order, Wn=cutoff, btype="highpass", fs=sr, output="sos")
    return sosfilt(sos, audio).astype(np.float32)


def prepare_for_onsets(audio: np.ndarray, sr: int) -> np.ndarray:
    """Mono, peak-normalized, rumble-free signal for the energy envelope."""
    return remove_rumble(peak_normalize(to_mono(audio)), sr)
