"""Tap tempo estimation from manual tap events."""

import threading
import time
from collections import deque
from typing import Callable

from tempotap.analysis.models import TapState


class TapTempoTracker:
    """Rolling-window tap tempo.

    Parameters
    ----------
    window:
        Number of most recent taps averaged into the BPM estimate.
    min_interval, max_interval:
        Plausible tap interval in seconds. An interval outside this range
        starts a new series with the current tap.
    inactivity_timeout:
        Seconds after the last tap at which the series is cleared.
    clock:
        Monotonic time source, ``time.monotonic`` by default.
    """

    def __init__(
        self,
        window: int = 8,
        min_interval: float = 0.25,
        max_interval: float = 2.0,
        inactivity_timeout: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = max(2, window)
        self.min_interval = min_interval
        self.max_interval = max_interval
        self.inactivity_timeout = inactivity_timeout
        self._clock = clock

        self._lock = threading.Lock()
        self._taps: deque[float] = deque(maxlen=self.window)
        self._count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def tap(self, at: float | None = None) -> TapState:
        """Record a tap at *at* (defaults to now) and return the new state."""
        with self._lock:
            now = self._clock() if at is None else at
            self._expire_locked(now)

            if self._taps:
                interval = now - self._taps[-1]
                if not (self.min_interval <= interval <= self.max_interval):
                    self._clear_locked()

            self._taps.append(now)
            self._count += 1
            return self._snapshot_locked()

    def state(self, now: float | None = None) -> TapState:
        """Snapshot of the current series, with inactivity applied."""
        with self._lock:
            self._expire_locked(self._clock() if now is None else now)
            return self._snapshot_locked()

    def tap_count(self, now: float | None = None) -> int:
        return self.state(now).tap_count

    def bpm(self, now: float | None = None) -> float:
        return self.state(now).bpm

    def is_active(self, now: float | None = None) -> bool:
        """True while a non-expired series of at least two taps exists."""
        state = self.state(now)
        return state.tap_count >= 2 and state.bpm > 0

    def expires_at(self) -> float | None:
        """Clock time at which the current series will be cleared."""
        with self._lock:
            if not self._taps:
                return None
            return self._taps[-1] + self.inactivity_timeout

    def reset(self) -> TapState:
        with self._lock:
            self._clear_locked()
            return self._snapshot_locked()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _clear_locked(self) -> None:
        self._taps.clear()
        self._count = 0

    def _expire_locked(self, now: float) -> None:
        if self._taps and now - self._taps[-1] > self.inactivity_timeout:
            self._clear_locked()

    def _snapshot_locked(self) -> TapState:
        taps = tuple(self._taps)
        bpm = 0.0
        if len(taps) >= 2:
            mean_interval = (taps[-1] - taps[0]) / (len(taps) - 1)
            if mean_interval > 0:
                bpm = round(60.0 / mean_interval, 2)
        return TapState(
            taps=taps,
            tap_count=self._count,
            bpm=bpm,
            last_tap=taps[-1] if taps else None,
        )
