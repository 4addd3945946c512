"""Fusion of offline analysis, tap tempo and manual input into one tempo."""

import logging
import threading

from tempotap.analysis.errors import InvalidInputError
from tempotap.analysis.models import BeatAnalysisResult, FusedTempo, TapState

logger = logging.getLogger(__name__)


def classify_confidence(confidence: float, usable: float = 0.4, high: float = 0.7) -> str:
    """Display tier for a confidence value: "high", "medium" or "low".

    "medium" and above counts as usable. This is a classification for
    display, not a gate.
    """
    if confidence >= high:
        return "high"
    elif confidence >= usable:
        return "medium"
    else:
        return "low"


def clamp_confidence(confidence: float) -> float:
    return max(0.0, min(1.0, float(confidence)))


class TempoFusion:
    """Holds the authoritative FusedTempo.

    An active tap series (two or more taps) takes precedence. Otherwise the
    most recent of the latest analysis result and a manually entered BPM
    wins. Undetermined analysis results leave the fused value alone.

    Every update method returns ``(snapshot, changed)`` where *changed* is
    True when the fused bpm or confidence moved.
    """

    def __init__(
        self,
        usable_confidence: float = 0.4,
        high_confidence: float = 0.7,
        tap_confidence_taps: int = 8,
    ):
        self.usable_confidence = usable_confidence
        self.high_confidence = high_confidence
        self.tap_confidence_taps = max(1, tap_confidence_taps)

        self._lock = threading.Lock()
        self._baseline: FusedTempo | None = None  # latest analysis or manual value
        self._tap_state = TapState()
        self._current = FusedTempo()

    @property
    def current(self) -> FusedTempo:
        with self._lock:
            return self._current

    def _make(self, bpm: float, confidence: float, source: str) -> FusedTempo:
        confidence = clamp_confidence(confidence)
        level = classify_confidence(confidence, self.usable_confidence, self.high_confidence)
        return FusedTempo(
            bpm=max(0.0, float(bpm)),
            confidence=confidence,
            source=source,
            reliable=confidence >= self.usable_confidence,
            confidence_level=level,
        )

    def _recompute_locked(self) -> tuple[FusedTempo, bool]:
        tap = self._tap_state
        if tap.tap_count >= 2 and tap.bpm > 0:
            confidence = min(1.0, tap.tap_count / self.tap_confidence_taps)
            fused = self._make(tap.bpm, confidence, "tap")
        elif self._baseline is not None:
            fused = self._baseline
        else:
            fused = FusedTempo()

        previous = self._current
        self._current = fused
        changed = (fused.bpm, fused.confidence) != (previous.bpm, previous.confidence)
        if changed:
            logger.info(f"Fused tempo: {fused.bpm:.1f} BPM "
                        f"(confidence {fused.confidence:.2f}, source {fused.source})")
        return fused, changed

    def set_analysis_result(self, result: BeatAnalysisResult) -> tuple[FusedTempo, bool]:
        with self._lock:
            if not result.is_undetermined:
                self._baseline = self._make(result.bpm, result.confidence, "analysis")
            return self._recompute_locked()

    def set_manual_bpm(self, bpm: float) -> tuple[FusedTempo, bool]:
        """Install a user-entered BPM with full confidence."""
        if bpm <= 0:
            raise InvalidInputError(f"Manual BPM must be positive, got {bpm}")
        with self._lock:
            self._baseline = self._make(bpm, 1.0, "manual")
            return self._recompute_locked()

    def set_tap_state(self, state: TapState) -> tuple[FusedTempo, bool]:
        with self._lock:
            self._tap_state = state
            return self._recompute_locked()

    def clear(self) -> tuple[FusedTempo, bool]:
        with self._lock:
            self._baseline = None
            self._tap_state = TapState()
            return self._recompute_locked()
