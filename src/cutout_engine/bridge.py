"""Hand-off of composited buffers to an external renderer.

Each logical buffer ("foreground", "background") lives in a TextureSlot
whose pixel array keeps the same identity between publishes, so a renderer
can bind its texture to it once and re-upload when the slot is dirty. A
change in frame size reallocates every slot and raises the ``resized``
flag; the renderer must reallocate its side before copying.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Mapping, Optional, Sequence

import numpy as np

from cutout_engine.errors import ShapeMismatch
from cutout_engine.frames import CHANNELS


@dataclass
class TextureSlot:
    """Stable storage for one logical texture."""
    name: str
    pixels: np.ndarray
    dirty: bool = False
    version: int = 0


class TextureBridge:
    """Publishes RGBA buffers with dirty and resize signalling.

    Writers call ``publish()`` once per processed frame. Readers poll
    ``dirty``/``resized`` on their own cadence and read the slot arrays,
    or take a consistent copy with ``snapshot()`` from another thread.
    """

    def __init__(self, names: Sequence[str] = ("foreground", "background")):
        if not names:
            raise ValueError("TextureBridge needs at least one buffer name")
        self._lock = threading.Lock()
        self._names = tuple(names)
        self._dims: Optional[tuple[int, int]] = None
        self._slots: dict[str, TextureSlot] = {
            n: TextureSlot(name=n, pixels=np.zeros((0, 0, CHANNELS), dtype=np.uint8))
            for n in self._names
        }
        self._version = 0
        self._generation = 0
        self._resized = False

    def publish(
        self,
        buffers: Mapping[str, Optional[np.ndarray]],
        dims: tuple[int, int],
    ) -> bool:
        """Copy ``buffers`` into their slots.

        Args:
            buffers: Logical name -> (height, width, 4) uint8 array. A None
                value leaves that slot's content as it was.
            dims: (width, height) of every buffer in this publish.

        Returns:
            True if this publish changed the dimensions.

        Raises:
            KeyError: for a buffer name the bridge does not hold.
            ShapeMismatch: if a buffer does not match ``dims``.
        """
        width, height = dims
        expected = (height, width, CHANNELS)

        unknown = set(buffers) - set(self._names)
        if unknown:
            raise KeyError(f"Unknown texture buffer(s): {sorted(unknown)}")

        arrays: dict[str, np.ndarray] = {}
        for name, buf in buffers.items():
            if buf is None:
                continue
            arr = np.asarray(buf)
            if arr.size != width * height * CHANNELS:
                raise ShapeMismatch(
                    f"Buffer '{name}' has {arr.size} bytes, expected {width}x{height}x{CHANNELS}"
                )
            arrays[name] = arr.reshape(expected)

        with self._lock:
            resized = self._dims != (width, height)
            if resized:
                for slot in self._slots.values():
                    slot.pixels = np.zeros(expected, dtype=np.uint8)
                    slot.dirty = False
                self._dims = (width, height)
                self._generation += 1
                self._resized = True

            if arrays:
                self._version += 1
            for name, arr in arrays.items():
                slot = self._slots[name]
                np.copyto(slot.pixels, arr, casting="unsafe")
                slot.dirty = True
                slot.version = self._version

        return resized

    # --- Renderer side ---

    def slot(self, name: str) -> TextureSlot:
        return self._slots[name]

    def consume(self, name: str) -> bool:
        """Clear and return the dirty flag for ``name``."""
        with self._lock:
            slot = self._slots[name]
            was_dirty = slot.dirty
            slot.dirty = False
            return was_dirty

    def acknowledge_resize(self) -> bool:
        """Clear and return the resize flag once the renderer has reallocated."""
        with self._lock:
            was_resized = self._resized
            self._resized = False
            return was_resized

    def snapshot(self, name: str) -> np.ndarray:
        """Copy of a slot's current pixels, consistent with a single publish."""
        with self._lock:
            return self._slots[name].pixels.copy()

    def is_dirty(self, name: str) -> bool:
        with self._lock:
            return self._slots[name].dirty

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    @property
    def dims(self) -> Optional[tuple[int, int]]:
        return self._dims

    @property
    def resized(self) -> bool:
        return self._resized

    @property
    def version(self) -> int:
        return self._version

    @property
    def generation(self) -> int:
        return self._generation
