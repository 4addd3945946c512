"""Core data models for tempo and beat analysis."""

from dataclasses import dataclass, field

import numpy as np

from tempotap.analysis.errors import InvalidInputError

MAX_CHANNELS = 2


@dataclass(frozen=True, eq=False)
class SampleBuffer:
    """An immutable block of audio captured for one analysis run.

    Stereo audio uses librosa's ``(channels, n_samples)`` layout; the
    ``(n_samples, channels)`` layout is transposed on construction.
    """
    samples: np.ndarray
    sample_rate: int

    @classmethod
    def from_samples(cls, samples, sample_rate: int) -> "SampleBuffer":
        """Copy *samples* into a read-only buffer, rejecting invalid input."""
        if isinstance(sample_rate, bool) or not isinstance(sample_rate, (int, np.integer)):
            raise InvalidInputError(f"Sample rate must be an integer, got {sample_rate!r}")
        if sample_rate <= 0:
            raise InvalidInputError(f"Sample rate must be positive, got {sample_rate}")

        try:
            data = np.array(samples, dtype=np.float32)
        except (TypeError, ValueError) as e:
            raise InvalidInputError(f"Samples are not numeric: {e}") from e
        if data.ndim == 0 or data.ndim > 2:
            raise InvalidInputError(f"Samples must be 1-D or 2-D, got {data.ndim}-D")
        if data.ndim == 2 and data.shape[0] > MAX_CHANNELS >= data.shape[1]:
            # (n_samples, channels) as returned by soundfile
            data = np.ascontiguousarray(data.T)
        if data.shape[-1] == 0:
            raise InvalidInputError("Sample buffer is empty")

        buffer = cls(samples=data, sample_rate=int(sample_rate))
        if not 1 <= buffer.channels <= MAX_CHANNELS:
            raise InvalidInputError(
                f"Expected mono or stereo audio, got {buffer.channels} channels"
            )
        data.setflags(write=False)
        return buffer

    @property
    def n_samples(self) -> int:
        return int(self.samples.shape[-1])

    @property
    def channels(self) -> int:
        return 1 if self.samples.ndim == 1 else int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        """Duration in seconds."""
        return self.n_samples / self.sample_rate


@dataclass(frozen=True)
class Onset:
    """A detected transient."""
    time: float  # seconds
    salience: float  # 0.0-1.0, strongest onset in the buffer is 1.0


@dataclass(frozen=True)
class BeatMarker:
    """A beat placed on a normalized time axis for display."""
    time: float
    position: float  # time / duration, 0.0-1.0
    is_strong: bool


@dataclass(frozen=True)
class BeatTimeline:
    """Strictly increasing beat times within [0, duration]."""
    times: tuple[float, ...] = ()
    duration: float = 0.0

    def __len__(self) -> int:
        return len(self.times)

    def __iter__(self):
        return iter(self.times)

    @property
    def strong_beats(self) -> tuple[float, ...]:
        """Every 4th beat, starting with the first."""
        return self.times[::4]

    def markers(self) -> list[BeatMarker]:
        if self.duration <= 0:
            return []
        return [
            BeatMarker(time=t, position=t / self.duration, is_strong=(i % 4 == 0))
            for i, t in enumerate(self.times)
        ]


@dataclass(frozen=True)
class BeatAnalysisResult:
    """Outcome of one offline analysis run."""
    bpm: float  # 0.0 means undetermined
    confidence: float  # 0.0-1.0
    beats: BeatTimeline = field(default_factory=BeatTimeline)
    duration: float = 0.0
    reliable: bool = False
    confidence_level: str = "low"  # "low" | "medium" | "high"
    start_offset: float = 0.0  # time of the first beat
    onset_count: int = 0

    @classmethod
    def undetermined(cls, duration: float = 0.0, onset_count: int = 0) -> "BeatAnalysisResult":
        return cls(
            bpm=0.0,
            confidence=0.0,
            beats=BeatTimeline(duration=duration),
            duration=duration,
            onset_count=onset_count,
        )

    @property
    def is_undetermined(self) -> bool:
        return self.bpm <= 0


@dataclass(frozen=True)
class TapState:
    """Snapshot of the current tap series."""
    taps: tuple[float, ...] = ()  # monotonic timestamps in the rolling window
    tap_count: int = 0  # taps in the whole series
    bpm: float = 0.0
    last_tap: float | None = None


@dataclass(frozen=True)
class FusedTempo:
    """The externally observed tempo."""
    bpm: float = 0.0
    confidence: float = 0.0
    source: str = "none"  # "none" | "analysis" | "tap" | "manual"
    reliable: bool = False
    confidence_level: str = "low"

    @property
    def can_apply(self) -> bool:
        return self.bpm > 0
