"""Analysis orchestrator - runs the pipeline and owns the session state."""

import asyncio
import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

import numpy as np

from tempotap.analysis.errors import AnalysisCancelledError, AnalysisFailedError
from tempotap.analysis.fusion import TempoFusion
from tempotap.analysis.models import (
    BeatAnalysisResult,
    BeatMarker,
    BeatTimeline,
    FusedTempo,
    Onset,
    SampleBuffer,
    TapState,
)
from tempotap.analysis.onset import detect_onsets, frame_length_for
from tempotap.analysis.periodicity import estimate_periodicity, simple_grid
from tempotap.analysis.tap import TapTempoTracker
from tempotap.audio.loader import load_audio
from tempotap.audio.preprocessing import to_mono
from tempotap.config import settings

logger = logging.getLogger(__name__)

_EVENTS = ("tempo_updated", "tap_tempo_updated", "analysis_completed", "analysis_failed")


def _check_abort(should_abort: Callable[[], bool] | None) -> None:
    if should_abort is not None and should_abort():
        raise AnalysisCancelledError("Analysis superseded")


def analyze_buffer(
    buffer: SampleBuffer,
    should_abort: Callable[[], bool] | None = None,
) -> BeatAnalysisResult:
    """Run onset extraction and periodicity estimation on one buffer.

    Raises ValueError for a malformed buffer and AnalysisCancelledError when
    *should_abort* turns true between stages.
    """
    duration = buffer.duration
    logger.info(f"Analyzing {duration:.1f}s of audio at {buffer.sample_rate}Hz "
                f"({buffer.channels} channel(s))")

    audio = to_mono(buffer.samples)
    if not np.all(np.isfinite(audio)):
        raise ValueError("Sample buffer contains non-finite values")

    # Step 1: Onset detection
    logger.info("Step 1: Onset detection")
    onsets = detect_onsets(
        audio,
        buffer.sample_rate,
        frame_length=frame_length_for(buffer.sample_rate, settings.frame_duration),
        sensitivity=settings.onset_sensitivity,
        threshold_window=settings.threshold_window,
        noise_floor=settings.noise_floor,
        min_gap=settings.min_onset_gap,
    )
    logger.info(f"  {len(onsets)} onsets")
    _check_abort(should_abort)

    # Step 2: Periodicity
    logger.info("Step 2: Periodicity estimation")
    result = estimate_periodicity(
        onsets,
        duration,
        min_bpm=settings.min_bpm,
        max_bpm=settings.max_bpm,
        bpm_step=settings.bpm_step,
        tolerance=settings.alignment_tolerance,
        octave_margin=settings.octave_margin,
        canonical_range=(settings.canonical_min_bpm, settings.canonical_max_bpm),
        min_onsets=settings.min_onsets,
        usable_confidence=settings.usable_confidence,
        high_confidence=settings.high_confidence,
    )
    logger.info(f"  Tempo: {result.bpm} BPM (confidence: {result.confidence}, "
                f"{len(result.beats)} beats)")
    return result


def analyze_samples(samples, sample_rate: int) -> BeatAnalysisResult:
    """Validate and analyze in-memory samples on the calling thread."""
    return analyze_buffer(SampleBuffer.from_samples(samples, sample_rate))


def analyze_file(file_path: str, sr: int | None = None) -> BeatAnalysisResult:
    """Load an audio file and analyze it on the calling thread."""
    return analyze_buffer(load_audio(file_path, sr=sr))


@dataclass(eq=False)
class _Request:
    id: int
    buffer: SampleBuffer
    generation: int
    future: Future = field(default_factory=Future)
    abort: threading.Event = field(default_factory=threading.Event)


class TempoEngine:
    """Tempo session: offline analysis, tap tempo and their fusion.

    Offline analysis runs on a single background worker. A new request
    supersedes the running one and replaces any queued one, so only the most
    recently requested buffer is ever published. ``tap()`` runs on the
    calling thread and never waits for analysis.

    Listeners are registered with :meth:`subscribe`. Events are delivered
    in the order their state changes were committed, on whichever thread is
    draining the event queue, unless a *dispatch* callable is given, e.g.
    ``loop.call_soon_threadsafe``, which receives ``(fn, *args)``.
    """

    def __init__(
        self,
        dispatch: Callable[..., object] | None = None,
        clock: Callable[[], float] = time.monotonic,
        analyzer: Callable[..., BeatAnalysisResult] = analyze_buffer,
        expiry_timer: bool | None = None,
    ):
        self._dispatch = dispatch
        self._analyzer = analyzer
        self._use_expiry_timer = settings.tap_expiry_timer if expiry_timer is None else expiry_timer

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="tempotap-analysis")
        self._lock = threading.RLock()
        self._idle = threading.Condition(self._lock)

        self._tracker = TapTempoTracker(
            window=settings.tap_window,
            min_interval=settings.tap_min_interval,
            max_interval=settings.tap_max_interval,
            inactivity_timeout=settings.tap_inactivity_timeout,
            clock=clock,
        )
        self._fusion = TempoFusion(
            usable_confidence=settings.usable_confidence,
            high_confidence=settings.high_confidence,
            tap_confidence_taps=settings.tap_confidence_taps,
        )
        self._listeners: dict[str, list[Callable]] = {name: [] for name in _EVENTS}
        self._outbox: deque[tuple[str, tuple]] = deque()
        self._draining = False

        self._next_id = 0
        self._generation = 0
        self._running: _Request | None = None
        self._queued: _Request | None = None
        self._last_result: BeatAnalysisResult | None = None
        self._status = "idle"
        self._expiry: threading.Timer | None = None
        self._closed = False

    def __enter__(self) -> "TempoEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Subscribers
    # ------------------------------------------------------------------

    def subscribe(
        self,
        on_tempo_updated: Callable[[float, float], None] | None = None,
        on_tap_tempo_updated: Callable[[float, int], None] | None = None,
        on_analysis_completed: Callable[[BeatAnalysisResult], None] | None = None,
        on_analysis_failed: Callable[[AnalysisFailedError], None] | None = None,
    ) -> Callable[[], None]:
        """Register callbacks. Returns a function that unregisters them."""
        added = [
            (name, cb) for name, cb in zip(_EVENTS, (
                on_tempo_updated, on_tap_tempo_updated,
                on_analysis_completed, on_analysis_failed,
            ))
            if cb is not None
        ]
        with self._lock:
            for name, cb in added:
                self._listeners[name].append(cb)

        def unsubscribe() -> None:
            with self._lock:
                for name, cb in added:
                    if cb in self._listeners[name]:
                        self._listeners[name].remove(cb)

        return unsubscribe

    def _publish_locked(self, events: list[tuple[str, tuple]]) -> None:
        """Queue events in the same critical section as the change they report."""
        self._outbox.extend(events)

    def _drain(self) -> None:
        """Deliver queued events in commit order.

        Only one thread drains at a time. A thread that finds a drain in
        progress returns at once and its events go out with that drain.
        """
        with self._lock:
            if self._draining:
                return
            self._draining = True
        finished = False
        try:
            while True:
                with self._lock:
                    if not self._outbox:
                        self._draining = False
                        finished = True
                        return
                    name, args = self._outbox.popleft()
                    listeners = list(self._listeners[name])
                for cb in listeners:
                    if self._dispatch is not None:
                        self._dispatch(self._invoke, cb, name, args)
                    else:
                        self._invoke(cb, name, args)
        finally:
            if not finished:
                with self._lock:
                    self._draining = False

    @staticmethod
    def _invoke(cb: Callable, name: str, args: tuple) -> None:
        try:
            cb(*args)
        except Exception as e:
            logger.warning(f"Listener for {name} failed: {e}")

    @staticmethod
    def _tempo_event(fused: FusedTempo, changed: bool) -> list[tuple[str, tuple]]:
        return [("tempo_updated", (fused.bpm, fused.confidence))] if changed else []

    # ------------------------------------------------------------------
    # Offline analysis
    # ------------------------------------------------------------------

    def analyze(self, samples, sample_rate: int | None = None) -> Future:
        """Schedule analysis of *samples* and return a Future for the result.

        Invalid input raises InvalidInputError here, before any work is
        scheduled. The future resolves to a BeatAnalysisResult, raises
        AnalysisFailedError, or is cancelled when superseded or reset.
        """
        if sample_rate is None:
            sample_rate = settings.sample_rate
        buffer = SampleBuffer.from_samples(samples, sample_rate)
        return self.submit(buffer)

    async def analyze_async(self, samples, sample_rate: int | None = None) -> BeatAnalysisResult:
        """Await :meth:`analyze` from asyncio code."""
        return await asyncio.wrap_future(self.analyze(samples, sample_rate))

    def submit(self, buffer: SampleBuffer) -> Future:
        """Schedule an already validated buffer."""
        with self._lock:
            if self._closed:
                raise RuntimeError("TempoEngine is closed")
            self._next_id += 1
            request = _Request(id=self._next_id, buffer=buffer, generation=self._generation)

            if self._queued is not None:
                self._supersede_locked(self._queued)
                self._queued = None
            if self._running is not None:
                self._supersede_locked(self._running)
                self._queued = request
                self._status = "analyzing"
                logger.info(f"Analysis #{request.id} queued behind #{self._running.id}")
            else:
                self._start_locked(request)
        return request.future

    def cancel(self) -> bool:
        """Cancel the running and queued analysis without clearing state."""
        with self._lock:
            cancelled = False
            for request in (self._running, self._queued):
                if request is not None and not request.abort.is_set():
                    self._supersede_locked(request)
                    cancelled = True
            self._queued = None
            if cancelled:
                self._status = "cancelled"
            return cancelled

    def join(self, timeout: float | None = None) -> bool:
        """Wait until no analysis is running or queued."""
        with self._idle:
            return self._idle.wait_for(
                lambda: self._running is None and self._queued is None, timeout,
            )

    def _supersede_locked(self, request: _Request) -> None:
        request.abort.set()
        request.future.cancel()

    def _start_locked(self, request: _Request) -> None:
        self._running = request
        self._status = "analyzing"
        self._executor.submit(self._run, request)

    def _run(self, request: _Request) -> None:
        result = None
        error = None
        try:
            result = self._analyzer(request.buffer, should_abort=request.abort.is_set)
        except AnalysisCancelledError:
            logger.info(f"Analysis #{request.id} cancelled")
        except Exception as e:
            logger.warning(f"Analysis #{request.id} failed: {e}")
            error = AnalysisFailedError(f"Analysis failed: {e}", cause=e)
            error.__cause__ = e
        self._finish(request, result, error)

    def _finish(
        self,
        request: _Request,
        result: BeatAnalysisResult | None,
        error: AnalysisFailedError | None,
    ) -> None:
        with self._lock:
            if self._running is request:
                self._running = None
            try:
                self._resolve_locked(request, result, error)
            finally:
                if self._queued is not None and not self._closed:
                    queued, self._queued = self._queued, None
                    self._start_locked(queued)
                elif self._running is None and self._status == "analyzing":
                    self._status = "cancelled"
                if self._running is None and self._queued is None:
                    self._idle.notify_all()
        self._drain()

    def _resolve_locked(
        self,
        request: _Request,
        result: BeatAnalysisResult | None,
        error: AnalysisFailedError | None,
    ) -> None:
        # Once running, the future can no longer be cancelled by its caller
        if (request.abort.is_set() or request.generation != self._generation
                or not request.future.set_running_or_notify_cancel()):
            logger.debug(f"Dropping stale result of analysis #{request.id}")
            return

        if error is None and result is None:
            error = AnalysisFailedError("Analysis stopped without a result")
        if error is not None:
            self._status = "failed"
            request.future.set_exception(error)
            self._publish_locked([("analysis_failed", (error,))])
            return

        self._last_result = result
        fused, changed = self._fusion.set_analysis_result(result)
        self._status = "no_tempo" if result.is_undetermined else "completed"
        request.future.set_result(result)
        self._publish_locked(
            self._tempo_event(fused, changed) + [("analysis_completed", (result,))]
        )

    # ------------------------------------------------------------------
    # Tap tempo
    # ------------------------------------------------------------------

    def tap(self) -> TapState:
        """Record one manual tap."""
        with self._lock:
            state = self._tracker.tap()
            fused, changed = self._fusion.set_tap_state(state)
            self._schedule_expiry_locked()
            self._publish_locked([("tap_tempo_updated", (state.bpm, state.tap_count))]
                                 + self._tempo_event(fused, changed))
        self._drain()
        return state

    def tap_count(self) -> int:
        return self._tracker.tap_count()

    @property
    def tap_state(self) -> TapState:
        return self._tracker.state()

    def reset_tap_tempo(self) -> None:
        with self._lock:
            self._cancel_expiry_locked()
            state = self._tracker.reset()
            fused, changed = self._fusion.set_tap_state(state)
            self._publish_locked([("tap_tempo_updated", (0.0, 0))]
                                 + self._tempo_event(fused, changed))
        self._drain()

    def _schedule_expiry_locked(self) -> None:
        self._cancel_expiry_locked()
        if not self._use_expiry_timer or self._closed:
            return
        # Fire just past the window so the tracker sees the series as expired
        delay = self._tracker.inactivity_timeout + 0.05
        self._expiry = threading.Timer(delay, self._on_tap_expired)
        self._expiry.daemon = True
        self._expiry.start()

    def _cancel_expiry_locked(self) -> None:
        if self._expiry is not None:
            self._expiry.cancel()
            self._expiry = None

    def _on_tap_expired(self) -> None:
        with self._lock:
            self._refresh_tap_locked()
        self._drain()

    def _refresh_tap_locked(self) -> None:
        state = self._tracker.state()
        fused, changed = self._fusion.set_tap_state(state)
        events = self._tempo_event(fused, changed)
        if changed and state.tap_count == 0:
            events.insert(0, ("tap_tempo_updated", (0.0, 0)))
        self._publish_locked(events)

    # ------------------------------------------------------------------
    # Fused state
    # ------------------------------------------------------------------

    @property
    def fused(self) -> FusedTempo:
        """Current fused tempo, with tap inactivity applied."""
        with self._lock:
            self._refresh_tap_locked()
            fused = self._fusion.current
        self._drain()
        return fused

    @property
    def fused_snapshot(self) -> FusedTempo:
        """Fused tempo as last committed, without re-checking tap inactivity."""
        return self._fusion.current

    def set_manual_bpm(self, bpm: float) -> FusedTempo:
        with self._lock:
            fused, changed = self._fusion.set_manual_bpm(bpm)
            self._publish_locked(self._tempo_event(fused, changed))
        self._drain()
        return fused

    @property
    def last_result(self) -> BeatAnalysisResult | None:
        with self._lock:
            return self._last_result

    @property
    def beat_timeline(self) -> BeatTimeline:
        result = self.last_result
        return result.beats if result is not None else BeatTimeline()

    @property
    def duration(self) -> float:
        result = self.last_result
        return result.duration if result is not None else 0.0

    def markers(self) -> list[BeatMarker]:
        return self.beat_timeline.markers()

    @property
    def status(self) -> str:
        """"idle", "analyzing", "completed", "no_tempo", "failed" or "cancelled"."""
        with self._lock:
            return self._status

    @property
    def is_analyzing(self) -> bool:
        return self.status == "analyzing"

    def simple_grid(
        self,
        bpm: float | None = None,
        duration: float | None = None,
        start_offset: float = 0.0,
    ) -> BeatTimeline:
        """Regular beat grid, by default at the fused tempo over the last analyzed duration."""
        return simple_grid(
            self.fused.bpm if bpm is None else bpm,
            self.duration if duration is None else duration,
            start_offset,
        )

    def detect_onsets(self, samples, sample_rate: int | None = None,
                      sensitivity: float | None = None) -> list[Onset]:
        """Run onset extraction synchronously on the calling thread."""
        buffer = SampleBuffer.from_samples(
            samples, settings.sample_rate if sample_rate is None else sample_rate,
        )
        return detect_onsets(
            buffer.samples,
            buffer.sample_rate,
            frame_length=frame_length_for(buffer.sample_rate, settings.frame_duration),
            sensitivity=settings.onset_sensitivity if sensitivity is None else sensitivity,
            threshold_window=settings.threshold_window,
            noise_floor=settings.noise_floor,
            min_gap=settings.min_onset_gap,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def reset(self) -> None:
        """Cancel pending analysis and clear all state to undetermined."""
        with self._lock:
            self._generation += 1
            for request in (self._running, self._queued):
                if request is not None:
                    self._supersede_locked(request)
            self._queued = None
            self._cancel_expiry_locked()
            self._tracker.reset()
            self._last_result = None
            self._status = "idle"
            fused, changed = self._fusion.clear()
            self._publish_locked(self._tempo_event(fused, changed))
        logger.info("Tempo engine reset")
        self._drain()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for request in (self._running, self._queued):
                if request is not None:
                    self._supersede_locked(request)
            self._queued = None
            self._cancel_expiry_locked()
        self._executor.shutdown(wait=False)
