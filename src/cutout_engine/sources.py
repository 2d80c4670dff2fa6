"""Frame sources: where each tick's frame comes from.

A source's ``next_frame()`` returns a Frame, or None when nothing is
available right now (camera not delivering, replay exhausted). A None is a
skipped tick, never an error.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterator, Optional

from cutout_engine.errors import PermissionDenied
from cutout_engine.frames import Frame
from cutout_engine.recorder import FramePlayer

try:
    import cv2
except ImportError:
    cv2 = None

logger = logging.getLogger("cutout_engine.sources")


class FrameSource(ABC):
    """Supplies one frame per tick."""

    def open(self):
        """Acquire the underlying device. Raises PermissionDenied on failure."""

    @abstractmethod
    def next_frame(self) -> Optional[Frame]:
        """Return the latest frame, or None if none is available."""

    def close(self):
        """Release the underlying device."""

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, *args):
        self.close()


class CameraSource(FrameSource):
    """Frames from a local camera via OpenCV."""

    def __init__(self, index: int = 0, width: Optional[int] = None, height: Optional[int] = None):
        self.index = index
        self.width = width
        self.height = height
        self._capture = None

    def open(self):
        if self._capture is not None:
            return
        if cv2 is None:
            raise ImportError("opencv-python is required for camera capture. Install with: pip install opencv-python")

        capture = cv2.VideoCapture(self.index)
        if not capture.isOpened():
            capture.release()
            raise PermissionDenied(f"Could not open camera {self.index}")

        if self.width:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        if self.height:
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self._capture = capture
        logger.info("Camera %d opened", self.index)

    def next_frame(self) -> Optional[Frame]:
        if self._capture is None:
            return None
        ret, bgr = self._capture.read()
        if not ret or bgr is None:
            return None
        return Frame.from_bgr(bgr, timestamp=time.monotonic())

    def close(self):
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info("Camera %d released", self.index)

    @property
    def is_open(self) -> bool:
        return self._capture is not None


class ReplaySource(FrameSource):
    """Frames from a recording made with ``FrameRecorder``.

    Frames are re-stamped with the current monotonic time so engines that
    require increasing timestamps accept looped playback.
    """

    def __init__(self, path: str | Path, loop: bool = False):
        self.path = Path(path)
        self.loop = loop
        self._player: Optional[FramePlayer] = None
        self._iter: Optional[Iterator] = None

    def open(self):
        if self._player is not None:
            return
        if not self.path.exists():
            raise PermissionDenied(f"Recording not found: {self.path}")
        self._player = FramePlayer.load(self.path)
        self._iter = self._player.play()
        logger.info("Replaying %s (%d frames)", self.path, self._player.frame_count)

    def next_frame(self) -> Optional[Frame]:
        if self._player is None:
            return None

        recorded = next(self._iter, None)
        if recorded is None and self.loop and self._player.frame_count:
            self._iter = self._player.play()
            recorded = next(self._iter, None)
        if recorded is None:
            return None
        return recorded.to_frame(timestamp=time.monotonic())

    def close(self):
        self._player = None
        self._iter = None


class IterableSource(FrameSource):
    """Frames from any iterable, e.g. a list of frames in tests or a generator."""

    def __init__(self, frames):
        self._iter = iter(frames)

    def next_frame(self) -> Optional[Frame]:
        return next(self._iter, None)
