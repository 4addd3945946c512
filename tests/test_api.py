"""Tests for the HTTP and WebSocket surface."""

import soundfile as sf

from tests.conftest import generate_click_track


def test_health_endpoint(client):
    """GET /api/health should return ok."""
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_api_analyze_endpoint(client, tmp_path):
    """POST /api/analyze should return tempo, beats and markers."""
    audio = generate_click_track(bpm=120, duration_seconds=8, sr=22050)
    wav_path = tmp_path / "test.wav"
    sf.write(str(wav_path), audio, 22050)

    with open(wav_path, "rb") as f:
        response = client.post("/api/analyze", files={"file": ("test.wav", f, "audio/wav")})

    assert response.status_code == 200
    data = response.json()
    assert abs(data["bpm"] - 120) < 1.0
    assert data["reliable"] is True
    assert data["confidence_level"] == "high"
    assert data["duration"] > 7.9
    assert len(data["beats"]) == len(data["markers"])
    assert data["markers"][0]["is_strong"] is True


def test_api_analyze_silence_is_not_an_error(client, tmp_path):
    wav_path = tmp_path / "silence.wav"
    sf.write(str(wav_path), [0.0] * 22050, 22050)

    with open(wav_path, "rb") as f:
        response = client.post("/api/analyze", files={"file": ("silence.wav", f, "audio/wav")})

    assert response.status_code == 200
    assert response.json()["bpm"] == 0.0
    assert response.json()["beats"] == []


def test_api_analyze_rejects_unsupported_format(client):
    response = client.post(
        "/api/analyze",
        files={"file": ("notes.txt", b"hello", "text/plain")},
    )

    assert response.status_code == 400
    assert "Unsupported format" in response.json()["detail"]


def test_api_analyze_rejects_oversized_file(client, monkeypatch):
    """Upload endpoint should reject files larger than configured limit."""
    from tempotap.config import settings

    monkeypatch.setattr(settings, "max_upload_mb", 1)
    payload = b"x" * (1024 * 1024 + 1)

    response = client.post(
        "/api/analyze",
        files={"file": ("big.wav", payload, "audio/wav")},
    )

    assert response.status_code == 400
    assert "File too large" in response.json()["detail"]


def test_api_analyze_tempfile_failure_returns_generic_error(client, monkeypatch):
    """Upload endpoint should not leak internal exception details."""
    import tempotap.api.upload as upload_module

    def _raise_tempfile_error(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(upload_module.tempfile, "NamedTemporaryFile", _raise_tempfile_error)

    response = client.post(
        "/api/analyze",
        files={"file": ("test.wav", b"audio", "audio/wav")},
    )

    assert response.status_code == 500
    assert response.json()["detail"] == "Analysis failed"


def test_ws_tap_and_state(client):
    with client.websocket_connect("/api/ws/session") as ws:
        ws.send_json({"type": "tap"})
        message = ws.receive_json()
        assert message == {"type": "tap_tempo", "bpm": 0.0, "tap_count": 1}

        ws.send_json({"type": "state"})
        message = ws.receive_json()
        assert message["type"] == "tempo"
        assert message["data"]["bpm"] == 0.0
        assert message["data"]["source"] == "none"


def test_ws_manual_bpm_publishes_tempo(client):
    with client.websocket_connect("/api/ws/session") as ws:
        ws.send_json({"type": "manual_bpm", "bpm": 97.5})
        message = ws.receive_json()

        assert message["type"] == "tempo"
        assert message["data"]["bpm"] == 97.5
        assert message["data"]["confidence"] == 1.0
        assert message["data"]["source"] == "manual"
        assert message["data"]["reliable"] is True
        assert message["data"]["confidence_level"] == "high"

        ws.send_json({"type": "reset"})
        cleared = ws.receive_json()
        assert cleared["data"] == {
            "bpm": 0.0, "confidence": 0.0, "source": "none",
            "reliable": False, "confidence_level": "low",
        }


def test_ws_bad_commands_report_errors(client):
    with client.websocket_connect("/api/ws/session") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["type"] == "error"

        ws.send_json({"type": "dance"})
        assert "Unknown command" in ws.receive_json()["message"]

        ws.send_json({"type": "manual_bpm", "bpm": -3})
        assert ws.receive_json()["type"] == "error"

        ws.send_bytes(b"abc")
        assert ws.receive_json()["message"] == "PCM payload is not Float32"


def test_ws_binary_buffer_is_analyzed(client):
    audio = generate_click_track(bpm=120, duration_seconds=8, sr=22050)

    with client.websocket_connect("/api/ws/session?sr=22050") as ws:
        ws.send_bytes(audio.astype("float32").tobytes())

        messages = [ws.receive_json() for _ in range(2)]

    assert [m["type"] for m in messages] == ["tempo", "analysis"]
    assert abs(messages[1]["data"]["bpm"] - 120) < 1.0
    assert messages[0]["data"]["source"] == "analysis"
