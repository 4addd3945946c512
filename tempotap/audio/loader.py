"""Audio file loading utilities."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path
from typing import Union

import librosa

from tempotap.analysis.models import SampleBuffer


def load_audio(
    file_path_or_buffer: Union[str, Path, BytesIO],
    sr: int | None = None,
) -> SampleBuffer:
    """Load an audio file or buffer and convert to mono.

    Parameters
    ----------
    file_path_or_buffer:
        Path to an audio file or a BytesIO buffer containing audio data.
    sr:
        Target sample rate. ``None`` keeps the file's native rate.

    Returns
    -------
    SampleBuffer
        The decoded mono samples with their sample rate.
    """
    audio, sample_rate = librosa.load(file_path_or_buffer, sr=sr, mono=True)
    return SampleBuffer.from_samples(audio, int(sample_rate))
