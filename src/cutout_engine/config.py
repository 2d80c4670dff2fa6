"""Pipeline options and YAML config loading.

Example ``cutout.yml``:

    compositing_mode: dual
    gesture_enabled: true
    decimation: 2
    policy: category
    background_id: 0
    segmenter_model: models/selfie_segmenter.tflite
    gesture_model: models/gesture_recognizer.task
    delegate: gpu
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from cutout_engine.compositor import (
    CategoryPolicy,
    CompositingMode,
    Layer,
    MaskPolicy,
    ThresholdPolicy,
)

MODEL_DIR = Path("models")

_POLICIES = ("category", "threshold")
_DELEGATES = ("gpu", "cpu")


@dataclass
class PipelineOptions:
    """Everything that selects a pipeline variant.

    One options set replaces separate single-cutout, dual-cutout and
    gesture-enabled pipelines.
    """
    compositing_mode: str = "dual"
    keep: str = "foreground"  # single mode only
    gesture_enabled: bool = False
    decimation: int = 1
    policy: str = "category"
    background_id: float = 0
    threshold: float = 0.052
    min_gesture_confidence: float = 0.0
    segmenter_model: str = str(MODEL_DIR / "selfie_segmenter.tflite")
    gesture_model: str = str(MODEL_DIR / "gesture_recognizer.task")
    delegate: str = "gpu"
    num_hands: int = 2
    camera_index: int = 0
    camera_width: int = 640
    camera_height: int = 480
    refresh_hz: float = 60.0
    background_inference: bool = False

    def __post_init__(self):
        CompositingMode(self.compositing_mode)
        Layer(self.keep)
        if self.policy not in _POLICIES:
            raise ValueError(f"policy must be one of {_POLICIES}, got {self.policy!r}")
        if self.delegate not in _DELEGATES:
            raise ValueError(f"delegate must be one of {_DELEGATES}, got {self.delegate!r}")
        if int(self.decimation) != self.decimation or self.decimation < 1:
            raise ValueError(f"decimation must be a positive integer, got {self.decimation}")
        self.decimation = int(self.decimation)
        if self.refresh_hz <= 0:
            raise ValueError(f"refresh_hz must be positive, got {self.refresh_hz}")
        if not 1 <= self.num_hands <= 2:
            raise ValueError(f"num_hands must be 1 or 2, got {self.num_hands}")
        if not 0.0 <= self.min_gesture_confidence <= 1.0:
            raise ValueError("min_gesture_confidence must be in [0, 1]")

    @property
    def mode(self) -> CompositingMode:
        return CompositingMode(self.compositing_mode)

    @property
    def keep_layer(self) -> Layer:
        return Layer(self.keep)

    def build_policy(self) -> MaskPolicy:
        if self.policy == "threshold":
            return ThresholdPolicy(threshold=self.threshold)
        return CategoryPolicy(background_id=self.background_id)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> PipelineOptions:
        data = data or {}
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown option(s): {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_yaml(cls, path: str | Path) -> PipelineOptions:
        """Load options from a YAML file. Missing keys keep their defaults."""
        with open(path) as f:
            data = yaml.safe_load(f)
        if data is not None and not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at top level")
        return cls.from_dict(data)

    def save_yaml(self, path: str | Path):
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
