"""Frame and category mask data model."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from cutout_engine.errors import ShapeMismatch

CHANNELS = 4  # RGBA


@dataclass(frozen=True, eq=False)
class Frame:
    """One captured video frame.

    ``pixels`` is an RGBA uint8 array of shape (height, width, 4). The array
    is made read-only on construction so a frame can be shared between the
    segmentation and gesture engines of the same tick without copying.
    """
    width: int
    height: int
    pixels: np.ndarray
    timestamp: float = field(default_factory=time.monotonic)

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ShapeMismatch(f"Invalid frame size {self.width}x{self.height}")

        pixels = np.asarray(self.pixels, dtype=np.uint8)
        expected = self.width * self.height * CHANNELS
        if pixels.size != expected:
            raise ShapeMismatch(
                f"Frame {self.width}x{self.height} needs {expected} bytes, got {pixels.size}"
            )

        pixels = pixels.reshape(self.height, self.width, CHANNELS)
        if pixels.flags.writeable:
            pixels = pixels.copy()
            pixels.flags.writeable = False
        object.__setattr__(self, "pixels", pixels)

    @property
    def dims(self) -> tuple[int, int]:
        """(width, height)."""
        return self.width, self.height

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def timestamp_us(self) -> int:
        """Capture timestamp in integer microseconds, as the engines expect."""
        return int(round(self.timestamp * 1_000_000))

    @property
    def rgb(self) -> np.ndarray:
        """Contiguous RGB view for engines that do not take an alpha channel."""
        return np.ascontiguousarray(self.pixels[:, :, :3])

    @classmethod
    def from_rgb(cls, rgb: np.ndarray, timestamp: Optional[float] = None) -> Frame:
        """Build an opaque frame from an (H, W, 3) RGB array."""
        if rgb.ndim != 3 or rgb.shape[2] != 3:
            raise ShapeMismatch(f"Expected (H, W, 3) RGB array, got shape {rgb.shape}")

        h, w = rgb.shape[:2]
        rgba = np.empty((h, w, CHANNELS), dtype=np.uint8)
        rgba[:, :, :3] = rgb
        rgba[:, :, 3] = 255
        rgba.flags.writeable = False
        return cls(
            width=w,
            height=h,
            pixels=rgba,
            timestamp=time.monotonic() if timestamp is None else timestamp,
        )

    @classmethod
    def from_bgr(cls, bgr: np.ndarray, timestamp: Optional[float] = None) -> Frame:
        """Build an opaque frame from an OpenCV-style (H, W, 3) BGR array."""
        if bgr.ndim != 3 or bgr.shape[2] != 3:
            raise ShapeMismatch(f"Expected (H, W, 3) BGR array, got shape {bgr.shape}")
        return cls.from_rgb(bgr[:, :, ::-1], timestamp)


def validate_mask(frame: Frame, mask: np.ndarray) -> np.ndarray:
    """Check that ``mask`` pairs with ``frame`` and return it flattened.

    A category mask holds one classification value per pixel, either flat
    or shaped (height, width). Anything else is rejected rather than
    truncated or broadcast.
    """
    mask = np.asarray(mask)
    if mask.size != frame.pixel_count:
        raise ShapeMismatch(
            f"Mask has {mask.size} values, frame {frame.width}x{frame.height} "
            f"has {frame.pixel_count} pixels"
        )
    if mask.ndim == 2 and mask.shape != (frame.height, frame.width):
        raise ShapeMismatch(
            f"Mask shape {mask.shape} does not match frame ({frame.height}, {frame.width})"
        )
    if mask.ndim == 3 and mask.shape != (frame.height, frame.width, 1):
        raise ShapeMismatch(f"Mask shape {mask.shape} is not a single-channel image")
    if mask.ndim > 3:
        raise ShapeMismatch(f"Mask has {mask.ndim} dimensions")
    return mask.reshape(-1)
