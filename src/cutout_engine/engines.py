"""Inference engine boundary and MediaPipe Tasks adapters.

The pipeline talks to engines through two small interfaces:

- SegmentationEngine.infer(frame, timestamp_us) -> category mask
- GestureEngine.infer(frame, timestamp_us) -> gesture observation

Both may fail per call with InferenceFailure and are released with
``close()``, which is safe to call more than once but releases the native
handle exactly once.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from pathlib import Path

import numpy as np

from cutout_engine.errors import InferenceFailure
from cutout_engine.frames import Frame
from cutout_engine.gestures import GestureCandidate, GestureObservation

try:
    import mediapipe as mp
    from mediapipe.tasks import python as mp_tasks
    from mediapipe.tasks.python import vision as mp_vision
except ImportError:
    mp = None

logger = logging.getLogger("cutout_engine.engines")


class InferenceEngine(ABC):
    """Common lifecycle for engine handles."""

    name = "engine"

    def __init__(self):
        self._close_lock = threading.Lock()
        self._closed = False
        self._last_ts_ms = -1

    def close(self):
        """Release the native handle. Later calls are no-ops."""
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._release()
        logger.debug("%s released", self.name)

    @abstractmethod
    def _release(self):
        """Free engine resources. Called exactly once."""

    @property
    def closed(self) -> bool:
        return self._closed

    def _check_open(self):
        if self._closed:
            raise InferenceFailure(f"{self.name} is closed")

    def _next_timestamp_ms(self, timestamp_us: int) -> int:
        # MediaPipe video mode rejects non-increasing timestamps.
        ts = max(int(timestamp_us // 1000), self._last_ts_ms + 1)
        self._last_ts_ms = ts
        return ts

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


class SegmentationEngine(InferenceEngine):
    name = "segmenter"

    @abstractmethod
    def infer(self, frame: Frame, timestamp_us: int) -> np.ndarray:
        """Return one category value per pixel of ``frame``."""


class GestureEngine(InferenceEngine):
    name = "gesture_recognizer"

    @abstractmethod
    def infer(self, frame: Frame, timestamp_us: int) -> GestureObservation:
        """Return ranked gesture candidates per detected hand."""


def _require_mediapipe():
    if mp is None:
        raise ImportError(
            "mediapipe is required. Install with: pip install mediapipe"
        )


def _base_options(model_path: str | Path, delegate: str):
    path = Path(model_path)
    if not path.exists():
        raise FileNotFoundError(f"Model asset not found: {path}")
    Delegate = mp_tasks.BaseOptions.Delegate
    return mp_tasks.BaseOptions(
        model_asset_path=str(path),
        delegate=Delegate.GPU if delegate == "gpu" else Delegate.CPU,
    )


def _to_mp_image(frame: Frame, use_srgba: bool):
    if use_srgba:
        return mp.Image(image_format=mp.ImageFormat.SRGBA, data=np.ascontiguousarray(frame.pixels))
    return mp.Image(image_format=mp.ImageFormat.SRGB, data=frame.rgb)


class MediaPipeSegmenter(SegmentationEngine):
    """Selfie / DeepLab segmentation via MediaPipe Tasks ImageSegmenter.

    Runs in VIDEO mode and returns the category mask as a flat uint8 array.
    Category 0 is background for the selfie and DeepLab models.
    """

    def __init__(self, model_path: str | Path, delegate: str = "gpu"):
        super().__init__()
        _require_mediapipe()

        self.delegate = delegate
        options = mp_vision.ImageSegmenterOptions(
            base_options=_base_options(model_path, delegate),
            running_mode=mp_vision.RunningMode.VIDEO,
            output_category_mask=True,
            output_confidence_masks=False,
        )
        self._segmenter = mp_vision.ImageSegmenter.create_from_options(options)
        logger.info("Segmenter loaded: %s (%s)", model_path, delegate)

    def infer(self, frame: Frame, timestamp_us: int) -> np.ndarray:
        self._check_open()
        image = _to_mp_image(frame, use_srgba=self.delegate == "gpu")
        try:
            result = self._segmenter.segment_for_video(image, self._next_timestamp_ms(timestamp_us))
        except Exception as e:
            raise InferenceFailure(f"segmentation failed: {e}") from e

        if result.category_mask is None:
            raise InferenceFailure("segmenter returned no category mask")
        # Copy out of MediaPipe's buffer before the result is released.
        return result.category_mask.numpy_view().copy().reshape(-1)

    def _release(self):
        self._segmenter.close()


class MediaPipeGestureRecognizer(GestureEngine):
    """Hand gesture recognition via MediaPipe Tasks GestureRecognizer."""

    def __init__(self, model_path: str | Path, delegate: str = "gpu", num_hands: int = 2):
        super().__init__()
        _require_mediapipe()

        self.delegate = delegate
        options = mp_vision.GestureRecognizerOptions(
            base_options=_base_options(model_path, delegate),
            running_mode=mp_vision.RunningMode.VIDEO,
            num_hands=num_hands,
        )
        self._recognizer = mp_vision.GestureRecognizer.create_from_options(options)
        logger.info("Gesture recognizer loaded: %s (%s, %d hands)", model_path, delegate, num_hands)

    def infer(self, frame: Frame, timestamp_us: int) -> GestureObservation:
        self._check_open()
        image = _to_mp_image(frame, use_srgba=self.delegate == "gpu")
        try:
            result = self._recognizer.recognize_for_video(image, self._next_timestamp_ms(timestamp_us))
        except Exception as e:
            raise InferenceFailure(f"gesture recognition failed: {e}") from e

        observation = []
        for categories in result.gestures or []:
            ranked = sorted(categories, key=lambda c: c.score, reverse=True)
            observation.append([
                GestureCandidate(label=c.category_name or "", confidence=float(c.score))
                for c in ranked
            ])
        return observation

    def _release(self):
        self._recognizer.close()


def segmenter_factory(model_path: str | Path, delegate: str = "gpu"):
    """Deferred constructor for ``ProcessingSession.initialize()``."""
    return lambda: MediaPipeSegmenter(model_path, delegate=delegate)


def gesture_factory(model_path: str | Path, delegate: str = "gpu", num_hands: int = 2):
    """Deferred constructor for ``ProcessingSession.initialize()``."""
    return lambda: MediaPipeGestureRecognizer(model_path, delegate=delegate, num_hands=num_hands)
