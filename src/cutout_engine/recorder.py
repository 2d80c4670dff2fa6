"""Frame recording and replay — capture camera frames to disk.

Record real sessions for:
- Reproducible runs without a camera (see ``sources.ReplaySource``)
- CI pipelines on headless machines
- Benchmarks on real footage instead of synthetic frames
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

import numpy as np

from cutout_engine.frames import Frame


@dataclass
class RecordedFrame:
    """A single frame in a recording."""
    timestamp: float  # seconds from recording start
    pixels: np.ndarray  # (H, W, 4) RGBA

    def to_frame(self, timestamp: Optional[float] = None) -> Frame:
        h, w = self.pixels.shape[:2]
        return Frame(
            width=w,
            height=h,
            pixels=self.pixels,
            timestamp=self.timestamp if timestamp is None else timestamp,
        )


class FrameRecorder:
    """Records frames to a compressed .npz file.

    Usage:
        recorder = FrameRecorder()
        recorder.start()
        # In your frame loop:
        recorder.add_frame(frame)
        # When done:
        recorder.save("session.npz")
    """

    def __init__(self, max_frames: Optional[int] = None):
        self._frames: list[RecordedFrame] = []
        self._start_time: Optional[float] = None
        self._recording = False
        self._max_frames = max_frames

    def start(self):
        """Begin a new recording session."""
        self._frames = []
        self._start_time = time.monotonic()
        self._recording = True

    def stop(self) -> int:
        """Stop recording. Returns number of frames captured."""
        self._recording = False
        return len(self._frames)

    @property
    def is_recording(self) -> bool:
        return self._recording

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def duration(self) -> float:
        """Duration of recording in seconds."""
        if not self._frames:
            return 0.0
        return self._frames[-1].timestamp

    def add_frame(self, frame: Frame):
        """Add a frame to the recording. Ignored when not recording."""
        if not self._recording:
            return
        if self._max_frames is not None and len(self._frames) >= self._max_frames:
            self._recording = False
            return

        self._frames.append(RecordedFrame(
            timestamp=time.monotonic() - self._start_time,
            pixels=np.array(frame.pixels, dtype=np.uint8),
        ))

    def save(self, path: str | Path) -> Path:
        """Save in compressed numpy format. Frames may differ in size."""
        path = Path(path).with_suffix(".npz")
        path.parent.mkdir(parents=True, exist_ok=True)

        arrays = {
            "version": np.array([1], dtype=np.int32),
            "timestamps": np.array([f.timestamp for f in self._frames], dtype=np.float64),
        }
        for i, f in enumerate(self._frames):
            arrays[f"frame_{i:06d}"] = f.pixels

        np.savez_compressed(path, **arrays)
        return path


class FramePlayer:
    """Replays a recorded session.

    Usage:
        player = FramePlayer.load("session.npz")
        for frame in player.play():
            show(frame.to_frame())

        # Or replay at original speed:
        for frame in player.play_realtime():
            ...
    """

    def __init__(self, frames: list[RecordedFrame]):
        self._frames = frames

    @classmethod
    def load(cls, path: str | Path) -> FramePlayer:
        """Load a recording saved by ``FrameRecorder.save``."""
        with np.load(Path(path), allow_pickle=False) as data:
            timestamps = data["timestamps"]
            frames = [
                RecordedFrame(timestamp=float(timestamps[i]), pixels=data[f"frame_{i:06d}"])
                for i in range(len(timestamps))
            ]
        return cls(frames)

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def duration(self) -> float:
        if not self._frames:
            return 0.0
        return self._frames[-1].timestamp

    def play(self) -> Iterator[RecordedFrame]:
        """Iterate through all frames instantly (no timing)."""
        yield from self._frames

    def play_realtime(self, speed: float = 1.0) -> Iterator[RecordedFrame]:
        """Replay at original timing (or scaled by speed factor).

        Args:
            speed: Playback speed multiplier (2.0 = double speed).
        """
        if not self._frames:
            return

        start = time.monotonic()

        for frame in self.play():
            target_time = frame.timestamp / speed
            elapsed = time.monotonic() - start
            if target_time > elapsed:
                time.sleep(target_time - elapsed)
            yield frame

    def get_frame(self, index: int) -> Optional[RecordedFrame]:
        """Get a specific frame by index."""
        if 0 <= index < len(self._frames):
            return self._frames[index]
        return None
