"""WebSocket endpoint for an interactive tempo session."""

import asyncio
import json
import logging

import numpy as np
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from tempotap.analysis.engine import TempoEngine
from tempotap.analysis.errors import TempotapError
from tempotap.analysis.fusion import classify_confidence
from tempotap.api.schemas import (
    AnalysisMessage,
    ErrorMessage,
    FusedTempoResponse,
    TapTempoMessage,
    TempoMessage,
    fused_to_response,
    result_to_response,
)
from tempotap.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()


def _handle_command(engine: TempoEngine, command: dict) -> dict | None:
    """Apply one JSON command. Returns an immediate reply, if any."""
    kind = command.get("type")
    if kind == "tap":
        engine.tap()
    elif kind == "reset_tap":
        engine.reset_tap_tempo()
    elif kind == "reset":
        engine.reset()
    elif kind == "manual_bpm":
        engine.set_manual_bpm(float(command.get("bpm", 0)))
    elif kind == "state":
        return TempoMessage(data=fused_to_response(engine.fused)).model_dump()
    else:
        return ErrorMessage(message=f"Unknown command: {kind!r}").model_dump()
    return None


@router.websocket("/ws/session")
async def tempo_session(websocket: WebSocket, sr: int | None = None):
    """Interactive tempo session via WebSocket.

    Protocol:
    - Client sends binary Float32 PCM buffers (mono) to analyze, at the
      sample rate given by the ``sr`` query parameter
    - Client sends JSON commands: {"type": "tap"}, {"type": "reset_tap"},
      {"type": "reset"}, {"type": "manual_bpm", "bpm": B}, {"type": "state"}
    - Server sends JSON messages:
      - {"type": "tempo", "data": {...}}
      - {"type": "tap_tempo", "bpm": B, "tap_count": N}
      - {"type": "analysis", "data": {...}}
      - {"type": "analysis_failed", "message": "..."}
      - {"type": "error", "message": "..."}
    """
    await websocket.accept()

    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()
    sample_rate = sr or settings.sample_rate

    # Events are marshaled onto this loop, so the queue is only touched here
    engine = TempoEngine(dispatch=loop.call_soon_threadsafe)

    def on_tempo_updated(bpm: float, confidence: float):
        # Built from the event arguments; engine.fused would publish again
        data = FusedTempoResponse(
            bpm=bpm,
            confidence=confidence,
            source=engine.fused_snapshot.source,
            reliable=confidence >= settings.usable_confidence,
            confidence_level=classify_confidence(
                confidence, settings.usable_confidence, settings.high_confidence),
        )
        outbox.put_nowait(TempoMessage(data=data).model_dump())

    engine.subscribe(
        on_tempo_updated=on_tempo_updated,
        on_tap_tempo_updated=lambda bpm, tap_count: outbox.put_nowait(
            TapTempoMessage(bpm=bpm, tap_count=tap_count).model_dump()),
        on_analysis_completed=lambda result: outbox.put_nowait(
            AnalysisMessage(data=result_to_response(result)).model_dump()),
        on_analysis_failed=lambda error: outbox.put_nowait(
            {"type": "analysis_failed", "message": str(error)}),
    )

    async def sender():
        while True:
            message = await outbox.get()
            await websocket.send_json(message)

    sender_task = asyncio.create_task(sender())

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            data = message.get("bytes")
            if data is not None:
                if len(data) % 4:
                    outbox.put_nowait(ErrorMessage(message="PCM payload is not Float32").model_dump())
                    continue
                samples = np.frombuffer(data, dtype=np.float32)
                try:
                    engine.analyze(samples, sample_rate)
                except TempotapError as e:
                    outbox.put_nowait(ErrorMessage(message=str(e)).model_dump())
                continue

            text = message.get("text")
            if text is None:
                continue
            try:
                reply = _handle_command(engine, json.loads(text))
            except (ValueError, TypeError, AttributeError) as e:
                reply = ErrorMessage(message=f"Bad command: {e}").model_dump()
            if reply is not None:
                outbox.put_nowait(reply)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.warning(f"Session failed: {e}")
        try:
            await websocket.send_json(ErrorMessage(message=str(e)).model_dump())
        except Exception:
            pass
    finally:
        sender_task.cancel()
        engine.close()
