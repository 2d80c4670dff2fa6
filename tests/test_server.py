"""Tests for the texture server REST endpoints."""

import asyncio

import numpy as np
import pytest

try:
    from fastapi.testclient import TestClient
    _HAS_TESTCLIENT = True
except ImportError:
    _HAS_TESTCLIENT = False

try:
    from cutout_engine import server
    from cutout_engine.server import ServerState, app
    _HAS_SERVER = True
except ImportError:
    _HAS_SERVER = False

from cutout_engine.config import PipelineOptions
from cutout_engine.frames import Frame
from cutout_engine.gestures import GestureCandidate
from cutout_engine.session import ProcessingSession
from cutout_engine.sources import IterableSource


pytestmark = pytest.mark.skipif(
    not (_HAS_TESTCLIENT and _HAS_SERVER),
    reason="fastapi not installed"
)


class FakeSegmenter:
    def infer(self, frame, timestamp_us):
        mask = np.zeros(frame.pixel_count, dtype=np.uint8)
        mask[::2] = 1
        return mask

    def close(self):
        pass


class FakeGestureEngine:
    def infer(self, frame, timestamp_us):
        return [[GestureCandidate("thumbs_up", 0.9)]]

    def close(self):
        pass


def make_session(n_frames=1):
    frames = [Frame.from_rgb(np.full((2, 4, 3), 80, dtype=np.uint8)) for _ in range(n_frames)]
    session = ProcessingSession(
        IterableSource(frames),
        FakeSegmenter,
        gesture_factory=FakeGestureEngine,
        options=PipelineOptions(gesture_enabled=True),
    )
    loop = asyncio.new_event_loop()
    loop.run_until_complete(session.initialize())
    loop.close()
    session.start()
    return session


@pytest.fixture
def client(monkeypatch):
    fresh = ServerState()
    # Keep the processing loop from opening a camera
    fresh.autostart = False
    monkeypatch.setattr(server, "state", fresh)
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


class TestRESTEndpoints:
    def test_index(self, client):
        resp = client.get("/")
        assert resp.status_code == 200
        assert "foreground.png" in resp.text

    def test_api_status_without_session(self, client):
        resp = client.get("/api/status")
        assert resp.status_code == 200
        data = resp.json()
        assert data["running"] is False
        assert data["session"] is None
        assert data["clients"] == 0

    def test_api_status_with_session(self, client):
        session = make_session()
        server.state.session = session
        session.tick()

        data = client.get("/api/status").json()
        assert data["session"]["state"] == "processing"
        assert data["session"]["texture"]["dims"] == [4, 2]
        session.stop()

    def test_api_gestures(self, client):
        resp = client.get("/api/gestures")
        assert resp.status_code == 200
        assert resp.json()["labels"] == {"primary": "left", "secondary": "right"}

        session = make_session()
        server.state.session = session
        session.tick()
        data = client.get("/api/gestures").json()
        assert data["slots"] == {"primary": "thumbs_up", "secondary": "no gesture"}
        session.stop()

    def test_set_slot_labels(self, client):
        resp = client.post("/api/slots/labels", json={"primary": "right", "secondary": "left"})
        assert resp.status_code == 200
        assert client.get("/api/gestures").json()["labels"] == {"primary": "right", "secondary": "left"}

    def test_set_slot_labels_invalid(self, client):
        resp = client.post("/api/slots/labels", json={"primary": ["x"]})
        assert resp.status_code == 422

    def test_api_options(self, client):
        data = client.get("/api/options").json()
        assert data["compositing_mode"] == "dual"
        assert data["decimation"] == 1

    def test_metrics_endpoint(self, client):
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "cutout_engine_publishes_total" in resp.text


class TestTextures:
    def test_no_session(self, client):
        assert client.get("/api/textures/foreground.png").status_code == 404

    def test_unknown_texture(self, client):
        server.state.session = make_session()
        assert client.get("/api/textures/mask.png").status_code == 404
        server.state.session.stop()

    def test_nothing_published(self, client):
        server.state.session = make_session(n_frames=0)
        server.state.session.tick()
        assert client.get("/api/textures/foreground.png").status_code == 404
        server.state.session.stop()

    def test_png(self, client):
        if server.cv2 is None:
            pytest.skip("opencv-python not installed")
        session = make_session()
        server.state.session = session
        session.tick()

        resp = client.get("/api/textures/background.png")
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "image/png"
        assert resp.content[:8] == b"\x89PNG\r\n\x1a\n"
        session.stop()


class TestWebSocket:
    def test_ws_connect(self, client):
        with client.websocket_connect("/ws") as ws:
            msg = ws.receive_json()
            assert msg["type"] == "connected"
            assert msg["labels"] == {"primary": "left", "secondary": "right"}

    def test_ws_ping(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.receive_json()
            ws.send_text('{"type": "ping"}')
            msg = ws.receive_json()
            assert msg["type"] == "pong"


class TestFrameMessage:
    def test_frame_message(self, client):
        session = make_session()
        session.tick()
        msg = server.frame_message(session.last_result, session.bridge.version, resized=True)
        assert msg["type"] == "frame"
        assert (msg["width"], msg["height"]) == (4, 2)
        assert msg["coverage"] == 0.5
        assert msg["slots"]["primary"] == "thumbs_up"
        session.stop()
