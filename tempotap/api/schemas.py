"""Pydantic response models for API."""

from pydantic import BaseModel

from tempotap.analysis.models import BeatAnalysisResult, FusedTempo


class BeatMarkerResponse(BaseModel):
    time: float
    position: float
    is_strong: bool


class BeatAnalysisResponse(BaseModel):
    bpm: float
    confidence: float
    reliable: bool
    confidence_level: str = "low"
    duration: float = 0.0
    start_offset: float = 0.0
    onset_count: int = 0
    beats: list[float] = []
    markers: list[BeatMarkerResponse] = []


class FusedTempoResponse(BaseModel):
    bpm: float
    confidence: float
    source: str = "none"
    reliable: bool = False
    confidence_level: str = "low"


def result_to_response(result: BeatAnalysisResult) -> BeatAnalysisResponse:
    """Convert a BeatAnalysisResult to its JSON model."""
    return BeatAnalysisResponse(
        bpm=result.bpm,
        confidence=result.confidence,
        reliable=result.reliable,
        confidence_level=result.confidence_level,
        duration=result.duration,
        start_offset=result.start_offset,
        onset_count=result.onset_count,
        beats=list(result.beats.times),
        markers=[
            BeatMarkerResponse(time=m.time, position=m.position, is_strong=m.is_strong)
            for m in result.beats.markers()
        ],
    )


def fused_to_response(fused: FusedTempo) -> FusedTempoResponse:
    return FusedTempoResponse(
        bpm=fused.bpm,
        confidence=fused.confidence,
        source=fused.source,
        reliable=fused.reliable,
        confidence_level=fused.confidence_level,
    )


# WebSocket message types

class TempoMessage(BaseModel):
    type: str = "tempo"
    data: FusedTempoResponse


class TapTempoMessage(BaseModel):
    type: str = "tap_tempo"
    bpm: float
    tap_count: int


class AnalysisMessage(BaseModel):
    type: str = "analysis"
    data: BeatAnalysisResponse


class ErrorMessage(BaseModel):
    type: str = "error"
    message: str
