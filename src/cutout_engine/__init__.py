"""CutoutEngine - Live foreground/background cutouts from a camera feed."""

__version__ = "0.1.0"

from cutout_engine.errors import (
    CutoutEngineError,
    EngineInitFailure,
    InferenceFailure,
    PermissionDenied,
    SessionStateError,
    ShapeMismatch,
)
from cutout_engine.frames import Frame, validate_mask
from cutout_engine.compositor import (
    CategoryPolicy,
    CompositeResult,
    CompositingMode,
    Layer,
    ThresholdPolicy,
    composite,
    overlay,
)
from cutout_engine.gestures import (
    NO_GESTURE,
    GestureCandidate,
    GestureResolver,
    GestureSlots,
)
from cutout_engine.pacer import FramePacer, LatestValue, TickOutcome
from cutout_engine.bridge import TextureBridge, TextureSlot
from cutout_engine.config import PipelineOptions
from cutout_engine.sources import CameraSource, FrameSource, IterableSource, ReplaySource
from cutout_engine.recorder import FramePlayer, FrameRecorder
from cutout_engine.session import ProcessingSession, SessionState, TickContext, TickResult
from cutout_engine.profiler import PipelineProfiler
from cutout_engine.metrics import MetricsCollector
