"""Tests for the inference engine boundary."""

import asyncio
from types import SimpleNamespace

import numpy as np
import pytest

from cutout_engine import engines
from cutout_engine.engines import (
    InferenceEngine,
    MediaPipeGestureRecognizer,
    MediaPipeSegmenter,
    segmenter_factory,
)
from cutout_engine.errors import EngineInitFailure, InferenceFailure
from cutout_engine.frames import Frame
from cutout_engine.session import ProcessingSession, SessionState
from cutout_engine.sources import IterableSource


class DummyEngine(InferenceEngine):
    def __init__(self):
        super().__init__()
        self.released = 0

    def _release(self):
        self.released += 1


def make_frame():
    return Frame.from_rgb(np.zeros((2, 2, 3), dtype=np.uint8), timestamp=0.0)


class TestInferenceEngine:
    def test_close_once(self):
        engine = DummyEngine()
        engine.close()
        engine.close()
        assert engine.closed
        assert engine.released == 1

    def test_context_manager(self):
        with DummyEngine() as engine:
            pass
        assert engine.released == 1

    def test_closed_engine_fails(self):
        engine = DummyEngine()
        engine.close()
        with pytest.raises(InferenceFailure):
            engine._check_open()

    def test_timestamps_strictly_increase(self):
        engine = DummyEngine()
        stamps = [engine._next_timestamp_ms(us) for us in (5_000, 5_400, 5_000, 9_000)]
        assert stamps == [5, 6, 7, 9]


class FakeRecognizer:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.timestamps = []

    def recognize_for_video(self, image, timestamp_ms):
        self.timestamps.append(timestamp_ms)
        if self.error:
            raise self.error
        return self.result

    def close(self):
        pass


def category(name, score):
    return SimpleNamespace(category_name=name, score=score)


def fake_recognizer(monkeypatch, recognizer):
    monkeypatch.setattr(engines, "_to_mp_image", lambda frame, use_srgba: frame)
    engine = MediaPipeGestureRecognizer.__new__(MediaPipeGestureRecognizer)
    InferenceEngine.__init__(engine)
    engine.delegate = "cpu"
    engine._recognizer = recognizer
    return engine


class TestGestureRecognizerAdapter:
    def test_candidates_ranked(self, monkeypatch):
        result = SimpleNamespace(gestures=[
            [category("Open_Palm", 0.2), category("Thumb_Up", 0.7)],
            [category("None", 0.9)],
        ])
        engine = fake_recognizer(monkeypatch, FakeRecognizer(result))

        observation = engine.infer(make_frame(), 1_000)

        assert [c.label for c in observation[0]] == ["Thumb_Up", "Open_Palm"]
        assert observation[1][0].label == "None"
        assert observation[0][0].confidence == pytest.approx(0.7)

    def test_no_hands(self, monkeypatch):
        engine = fake_recognizer(monkeypatch, FakeRecognizer(SimpleNamespace(gestures=[])))
        assert engine.infer(make_frame(), 1_000) == []

    def test_failure_wrapped(self, monkeypatch):
        engine = fake_recognizer(monkeypatch, FakeRecognizer(error=RuntimeError("graph error")))
        with pytest.raises(InferenceFailure):
            engine.infer(make_frame(), 1_000)


class TestMediaPipeConstruction:
    def test_factory_is_deferred(self, tmp_path):
        factory = segmenter_factory(tmp_path / "missing.tflite")
        assert callable(factory)

    def test_missing_model(self, tmp_path):
        pytest.importorskip("mediapipe")
        with pytest.raises(FileNotFoundError):
            MediaPipeSegmenter(tmp_path / "missing.tflite", delegate="cpu")

    def test_missing_model_fails_initialize(self, tmp_path):
        session = ProcessingSession(
            IterableSource([]),
            segmenter_factory(tmp_path / "missing.tflite", delegate="cpu"),
        )
        loop = asyncio.new_event_loop()
        try:
            with pytest.raises(EngineInitFailure):
                loop.run_until_complete(session.initialize())
        finally:
            loop.close()
        assert session.state is SessionState.IDLE
