"""Mask compositing: split a frame into foreground and background cutouts.

Given a frame and its category mask, every pixel is classified as subject
(foreground) or background under a ``MaskPolicy``. The foreground cutout
keeps subject pixels and clears the rest; the background cutout is its
exact complement. Both buffers are computed in full before they are
returned, and nothing is cached between calls.

Two policies cover the mask signals segmentation models produce:

- ``CategoryPolicy``: discrete category ids, background iff id equals
  ``background_id`` (selfie and DeepLab models label background 0).
- ``ThresholdPolicy``: continuous confidences, background iff the value is
  below ``threshold``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, Optional, Union

import numpy as np

from cutout_engine.frames import Frame, validate_mask


class CompositingMode(Enum):
    SINGLE = "single"
    DUAL = "dual"


class Layer(Enum):
    FOREGROUND = "foreground"
    BACKGROUND = "background"


@dataclass(frozen=True)
class CategoryPolicy:
    """Background iff the mask value equals ``background_id``."""
    background_id: float = 0

    def foreground_mask(self, mask: np.ndarray) -> np.ndarray:
        return mask != self.background_id

    def describe(self) -> str:
        return f"category(background_id={self.background_id})"


@dataclass(frozen=True)
class ThresholdPolicy:
    """Background iff the mask value is below ``threshold``."""
    threshold: float = 0.052

    def foreground_mask(self, mask: np.ndarray) -> np.ndarray:
        return mask >= self.threshold

    def describe(self) -> str:
        return f"threshold({self.threshold})"


MaskPolicy = Union[CategoryPolicy, ThresholdPolicy]

DEFAULT_POLICY = CategoryPolicy()


@dataclass(frozen=True, eq=False)
class CompositeResult:
    """Cutout buffers derived from one frame.

    ``background`` is None in single mode when only the foreground is kept,
    and vice versa. Unpacks as ``(foreground, background)``.
    """
    foreground: Optional[np.ndarray]
    background: Optional[np.ndarray]
    width: int
    height: int
    foreground_pixels: int

    def __iter__(self) -> Iterator[Optional[np.ndarray]]:
        yield self.foreground
        yield self.background

    @property
    def dims(self) -> tuple[int, int]:
        return self.width, self.height

    @property
    def coverage(self) -> float:
        """Fraction of pixels classified as foreground."""
        return self.foreground_pixels / float(self.width * self.height)

    def buffers(self) -> dict[str, Optional[np.ndarray]]:
        return {
            Layer.FOREGROUND.value: self.foreground,
            Layer.BACKGROUND.value: self.background,
        }


def classify(frame: Frame, mask: np.ndarray, policy: MaskPolicy = DEFAULT_POLICY) -> np.ndarray:
    """Return a boolean (height, width) array, True where the pixel is foreground.

    Raises:
        ShapeMismatch: if the mask does not have exactly one value per pixel.
    """
    flat = validate_mask(frame, mask)
    keep = np.asarray(policy.foreground_mask(flat), dtype=bool)
    return keep.reshape(frame.height, frame.width)


def _cutout(pixels: np.ndarray, keep: np.ndarray) -> np.ndarray:
    # Fresh zeroed buffer; kept pixels copied over unchanged.
    out = np.zeros(pixels.shape, dtype=np.uint8)
    out[keep] = pixels[keep]
    return out


def composite(
    frame: Frame,
    mask: np.ndarray,
    policy: MaskPolicy = DEFAULT_POLICY,
    mode: CompositingMode = CompositingMode.DUAL,
    keep: Layer = Layer.FOREGROUND,
) -> CompositeResult:
    """Derive complementary cutout buffers from a frame and its category mask.

    Args:
        frame: Source frame.
        mask: One classification value per pixel, flat or (height, width).
        policy: How a mask value maps to foreground/background.
        mode: DUAL computes both cutouts. SINGLE computes only ``keep``.
        keep: Which cutout to compute in SINGLE mode.

    Returns:
        CompositeResult with (height, width, 4) uint8 RGBA buffers.

    Raises:
        ShapeMismatch: if the mask does not have exactly one value per pixel.
    """
    fg_mask = classify(frame, mask, policy)
    pixels = frame.pixels

    foreground = background = None
    if mode is CompositingMode.DUAL or keep is Layer.FOREGROUND:
        foreground = _cutout(pixels, fg_mask)
    if mode is CompositingMode.DUAL or keep is Layer.BACKGROUND:
        background = _cutout(pixels, ~fg_mask)

    return CompositeResult(
        foreground=foreground,
        background=background,
        width=frame.width,
        height=frame.height,
        foreground_pixels=int(np.count_nonzero(fg_mask)),
    )


def overlay(
    frame: Frame,
    mask: np.ndarray,
    policy: MaskPolicy = DEFAULT_POLICY,
    color: tuple[int, int, int] = (255, 0, 0),
    opacity: float = 0.5,
) -> np.ndarray:
    """Tint background pixels with ``color`` for a mask debug view.

    Foreground pixels are left untouched. The result is fully opaque.
    """
    if not 0.0 <= opacity <= 1.0:
        raise ValueError(f"opacity must be in [0, 1], got {opacity}")

    bg = ~classify(frame, mask, policy)
    out = frame.pixels.copy()
    tint = np.asarray(color, dtype=np.float32)
    rgb = out[:, :, :3].astype(np.float32)
    rgb[bg] = rgb[bg] * (1.0 - opacity) + tint * opacity
    out[:, :, :3] = np.clip(np.rint(rgb), 0, 255).astype(np.uint8)
    out[:, :, 3] = 255
    return out

