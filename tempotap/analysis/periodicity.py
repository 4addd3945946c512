"""Tempo and beat grid estimation from onset periodicity."""

import logging
import math

import numpy as np

from tempotap.analysis.fusion import classify_confidence, clamp_confidence
from tempotap.analysis.models import BeatAnalysisResult, BeatTimeline, Onset

logger = logging.getLogger(__name__)

# Onsets at least this salient can anchor the candidate grid
_STRONG_SALIENCE = 0.5
# Window around half/double tempo searched during octave resolution
_OCTAVE_SEARCH = 0.03


def score_periods(
    times: np.ndarray,
    saliences: np.ndarray,
    periods: np.ndarray,
    anchor: float,
    tolerance: float = 0.08,
) -> np.ndarray:
    """Score how well onsets line up with a grid of each candidate period.

    For every period the score is the salience-weighted share of onsets
    within *tolerance* (fraction of a period) of a grid slot, multiplied by
    the share of grid slots between the first and last onset that were hit.
    The second factor keeps sub-multiples of the true period from matching
    it. Scores are in [0, 1].
    """
    periods = np.asarray(periods, dtype=float)
    phase = (times[None, :] - anchor) / periods[:, None]
    slot = np.rint(phase)
    aligned = np.abs(phase - slot) <= tolerance

    total = float(saliences.sum())
    if total <= 0:
        return np.zeros(len(periods))
    recall = (aligned * saliences[None, :]).sum(axis=1) / total

    # Distinct grid slots that received at least one aligned onset
    slots = np.sort(np.where(aligned, slot, np.inf), axis=1)
    first_of_run = np.ones_like(aligned)
    first_of_run[:, 1:] = slots[:, 1:] != slots[:, :-1]
    hits = (np.isfinite(slots) & first_of_run).sum(axis=1)

    lo = np.ceil((times.min() - anchor) / periods - tolerance)
    hi = np.floor((times.max() - anchor) / periods + tolerance)
    n_slots = np.maximum(hi - lo + 1, 1)
    precision = np.minimum(hits / n_slots, 1.0)

    return recall * precision


def _canonical_distance(bpm: float, canonical_range: tuple[float, float]) -> float:
    low, high = canonical_range
    if bpm < low:
        return low - bpm
    if bpm > high:
        return bpm - high
    return 0.0


def resolve_octave(
    candidate_bpms: np.ndarray,
    scores: np.ndarray,
    winner: int,
    margin: float = 0.1,
    canonical_range: tuple[float, float] = (80.0, 160.0),
) -> int:
    """Pick between the winner and its half/double tempo.

    An octave alternative replaces the winner when it scores within *margin*
    (relative) of it and lies closer to the canonical tempo range.
    """
    best = winner
    best_bpm = float(candidate_bpms[winner])
    floor = float(scores[winner]) * (1.0 - margin)

    for factor in (0.5, 2.0):
        target = best_bpm * factor
        near = np.flatnonzero(np.abs(candidate_bpms - target) <= target * _OCTAVE_SEARCH)
        if len(near) == 0:
            continue
        alt = int(near[np.argmax(scores[near])])
        if scores[alt] < floor:
            continue
        if (_canonical_distance(float(candidate_bpms[alt]), canonical_range)
                < _canonical_distance(float(candidate_bpms[best]), canonical_range)):
            best = alt
    return best


def refine_period(
    times: np.ndarray,
    period: float,
    anchor: float,
    tolerance: float = 0.08,
) -> tuple[float, float]:
    """Least-squares fit of aligned onset times against their grid slots.

    Returns (period, first_aligned_time). Falls back to the unrefined period
    when fewer than two distinct slots are aligned.
    """
    phase = (times - anchor) / period
    slot = np.rint(phase)
    aligned = np.abs(phase - slot) <= tolerance
    if not np.any(aligned):
        return period, anchor

    first = float(times[aligned].min())
    if len(np.unique(slot[aligned])) < 2:
        return period, first

    slope, _intercept = np.polyfit(slot[aligned], times[aligned], 1)
    if not math.isfinite(slope) or slope <= 0:
        return period, first
    return float(slope), first


def build_beat_timeline(start: float, period: float, duration: float) -> BeatTimeline:
    """Walk forward from *start* in steps of *period* up to *duration*."""
    if period <= 0 or duration <= 0 or start > duration:
        return BeatTimeline(duration=max(duration, 0.0))

    first_index = max(0, math.ceil(-start / period))
    last_index = math.floor((duration - start) / period + 1e-9)
    times = []
    for i in range(first_index, last_index + 1):
        t = round(start + i * period, 6)
        if 0.0 <= t <= duration:
            times.append(t)
    return BeatTimeline(times=tuple(times), duration=duration)


def simple_grid(bpm: float, duration: float, start_offset: float = 0.0) -> BeatTimeline:
    """A regular beat grid for a known tempo."""
    if bpm <= 0:
        return BeatTimeline(duration=max(duration, 0.0))
    return build_beat_timeline(start_offset, 60.0 / bpm, duration)


def estimate_periodicity(
    onsets: list[Onset],
    duration: float,
    min_bpm: float = 40.0,
    max_bpm: float = 220.0,
    bpm_step: float = 0.5,
    tolerance: float = 0.08,
    octave_margin: float = 0.1,
    canonical_range: tuple[float, float] = (80.0, 160.0),
    min_onsets: int = 4,
    usable_confidence: float = 0.4,
    high_confidence: float = 0.7,
) -> BeatAnalysisResult:
    """Estimate tempo, beat timeline and confidence from onsets.

    Too few onsets give an undetermined result (bpm 0, confidence 0).
    """
    if len(onsets) < max(min_onsets, 2) or duration <= 0:
        logger.info(f"  {len(onsets)} onsets, not enough to estimate tempo")
        return BeatAnalysisResult.undetermined(duration, onset_count=len(onsets))

    times = np.array([o.time for o in onsets], dtype=float)
    saliences = np.array([o.salience for o in onsets], dtype=float)

    strong = np.flatnonzero(saliences >= _STRONG_SALIENCE)
    anchor = float(times[strong[0]]) if len(strong) else float(times[0])

    candidate_bpms = np.arange(min_bpm, max_bpm + bpm_step / 2, bpm_step)
    scores = score_periods(times, saliences, 60.0 / candidate_bpms, anchor, tolerance)
    winner = int(np.argmax(scores))
    if scores[winner] <= 0:
        return BeatAnalysisResult.undetermined(duration, onset_count=len(onsets))

    chosen = resolve_octave(candidate_bpms, scores, winner, octave_margin, canonical_range)
    if chosen != winner:
        logger.info(f"  Octave resolution: {candidate_bpms[winner]:.1f} -> "
                    f"{candidate_bpms[chosen]:.1f} BPM")

    period, first_beat = refine_period(times, 60.0 / float(candidate_bpms[chosen]), anchor, tolerance)
    bpm = min(max(60.0 / period, min_bpm), max_bpm)
    period = 60.0 / bpm

    confidence = round(clamp_confidence(scores[chosen]), 3)
    beats = build_beat_timeline(first_beat, period, duration)

    return BeatAnalysisResult(
        bpm=round(bpm, 2),
        confidence=confidence,
        beats=beats,
        duration=duration,
        reliable=confidence >= usable_confidence,
        confidence_level=classify_confidence(confidence, usable_confidence, high_confidence),
        start_offset=beats.times[0] if len(beats) else 0.0,
        onset_count=len(onsets),
    )
