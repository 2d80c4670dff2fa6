"""Exception types raised by CutoutEngine.

Everything derives from CutoutEngineError so callers can catch the whole
family at the edge (CLI, server) and let per-frame failures stay local.
"""

from __future__ import annotations


class CutoutEngineError(Exception):
    """Base class for all CutoutEngine errors."""


class PermissionDenied(CutoutEngineError):
    """The frame source could not be opened (no camera, no permission).

    Non-fatal: the session keeps its state and the caller may retry.
    """


class EngineInitFailure(CutoutEngineError):
    """An inference engine could not be acquired.

    Raised from ``ProcessingSession.initialize()``. No handles are left
    behind when this is raised.
    """


class ShapeMismatch(CutoutEngineError, ValueError):
    """A mask or buffer does not match the frame dimensions it is paired with."""


class InferenceFailure(CutoutEngineError):
    """A single inference call failed. Recoverable: the tick is skipped."""


class SessionStateError(CutoutEngineError, RuntimeError):
    """An operation was requested in a session state that does not allow it."""
