"""Tests for tempo fusion and reliability classification."""

import pytest

from tempotap.analysis.errors import InvalidInputError
from tempotap.analysis.fusion import TempoFusion, classify_confidence
from tempotap.analysis.models import BeatAnalysisResult, TapState


def _result(bpm=128.0, confidence=0.8):
    return BeatAnalysisResult(bpm=bpm, confidence=confidence, duration=10.0, reliable=True)


def _taps(count, bpm=120.0):
    taps = tuple(float(i) * 60.0 / bpm for i in range(min(count, 8)))
    return TapState(taps=taps, tap_count=count, bpm=bpm if count >= 2 else 0.0,
                    last_tap=taps[-1] if taps else None)


@pytest.mark.parametrize("confidence,level", [
    (0.0, "low"), (0.39, "low"), (0.4, "medium"), (0.69, "medium"), (0.7, "high"), (1.0, "high"),
])
def test_classify_confidence(confidence, level):
    assert classify_confidence(confidence) == level


def test_initial_state_is_undetermined():
    fused = TempoFusion().current

    assert fused.bpm == 0.0
    assert fused.confidence == 0.0
    assert fused.source == "none"
    assert not fused.reliable
    assert not fused.can_apply


def test_analysis_result_becomes_authoritative():
    fused, changed = TempoFusion().set_analysis_result(_result())

    assert changed
    assert fused.bpm == 128.0
    assert fused.source == "analysis"
    assert fused.confidence_level == "high"


def test_active_tap_series_takes_precedence():
    fusion = TempoFusion()
    fusion.set_analysis_result(_result())

    fused, changed = fusion.set_tap_state(_taps(4))

    assert changed
    assert fused.source == "tap"
    assert fused.bpm == 120.0
    assert fused.confidence == pytest.approx(0.5)
    assert fused.reliable


def test_tap_confidence_saturates():
    fused, _ = TempoFusion().set_tap_state(_taps(12))
    assert fused.confidence == 1.0


def test_single_tap_does_not_override():
    fusion = TempoFusion()
    fusion.set_analysis_result(_result())

    fused, changed = fusion.set_tap_state(_taps(1))

    assert not changed
    assert fused.source == "analysis"


def test_expired_tap_series_falls_back_to_analysis():
    fusion = TempoFusion()
    fusion.set_analysis_result(_result())
    fusion.set_tap_state(_taps(4))

    fused, changed = fusion.set_tap_state(TapState())

    assert changed
    assert fused.bpm == 128.0
    assert fused.source == "analysis"


def test_undetermined_result_leaves_fused_value():
    fusion = TempoFusion()
    fusion.set_analysis_result(_result())

    fused, changed = fusion.set_analysis_result(BeatAnalysisResult.undetermined(4.0))

    assert not changed
    assert fused.bpm == 128.0


def test_manual_and_analysis_most_recent_wins():
    fusion = TempoFusion()
    fusion.set_analysis_result(_result())

    fused, _ = fusion.set_manual_bpm(90.0)
    assert (fused.bpm, fused.confidence, fused.source) == (90.0, 1.0, "manual")

    fused, _ = fusion.set_analysis_result(_result(bpm=100.0, confidence=0.5))
    assert (fused.bpm, fused.source, fused.confidence_level) == (100.0, "analysis", "medium")


def test_manual_bpm_must_be_positive():
    with pytest.raises(InvalidInputError):
        TempoFusion().set_manual_bpm(0)


def test_clear_returns_to_undetermined():
    fusion = TempoFusion()
    fusion.set_analysis_result(_result())

    fused, changed = fusion.clear()

    assert changed
    assert fused.bpm == 0.0 and fused.source == "none"
