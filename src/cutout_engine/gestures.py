"""Resolve per-hand gesture candidates into two positional slots.

The gesture engine reports, per detected hand, a list of candidates ranked
by confidence. The renderer only needs two labels, so hand 0 feeds the
"primary" slot and hand 1 the "secondary" slot. Resolution is stateless
across ticks: a hand that is not reported on a tick empties its slot on
that same tick.

The engine's hand order carries no left/right guarantee, so slot names are
positional. Calling them "left" and "right" in a UI is a display choice.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence, Union

NO_GESTURE = "no gesture"

SLOT_NAMES = ("primary", "secondary")


@dataclass(frozen=True)
class GestureCandidate:
    """One ranked guess for a hand's gesture."""
    label: str
    confidence: float


CandidateLike = Union[GestureCandidate, tuple[str, float]]

# Per hand (engine order), candidates in descending confidence.
GestureObservation = Sequence[Sequence[CandidateLike]]


@dataclass(frozen=True)
class GestureSlots:
    """The two positional gesture labels exposed to the renderer."""
    primary: str = NO_GESTURE
    secondary: str = NO_GESTURE

    def as_tuple(self) -> tuple[str, str]:
        return self.primary, self.secondary

    def to_dict(self) -> dict[str, str]:
        return {"primary": self.primary, "secondary": self.secondary}

    @property
    def empty(self) -> bool:
        return self.primary == NO_GESTURE and self.secondary == NO_GESTURE


EMPTY_SLOTS = GestureSlots()


def _as_candidate(item: CandidateLike) -> GestureCandidate:
    if isinstance(item, GestureCandidate):
        return item
    label, confidence = item
    return GestureCandidate(label=str(label), confidence=float(confidence))


class GestureResolver:
    """Maps a raw gesture observation onto ``GestureSlots``.

    Args:
        min_confidence: Top candidates below this resolve to the sentinel.
        label_aliases: Engine labels to rename before they reach a slot.
            MediaPipe's "None" category means "no recognised gesture" and is
            mapped to the sentinel by default.
    """

    DEFAULT_ALIASES = {"None": NO_GESTURE, "": NO_GESTURE}

    def __init__(
        self,
        min_confidence: float = 0.0,
        label_aliases: Optional[dict[str, str]] = None,
    ):
        if not 0.0 <= min_confidence <= 1.0:
            raise ValueError(f"min_confidence must be in [0, 1], got {min_confidence}")
        self.min_confidence = min_confidence
        self._aliases = dict(self.DEFAULT_ALIASES if label_aliases is None else label_aliases)
        self._slots = EMPTY_SLOTS

    def _label_for(self, candidates: Sequence[CandidateLike]) -> str:
        if not candidates:
            return NO_GESTURE
        top = _as_candidate(candidates[0])
        if top.confidence < self.min_confidence:
            return NO_GESTURE
        return self._aliases.get(top.label, top.label)

    def resolve(self, observation: Optional[GestureObservation]) -> GestureSlots:
        """Resolve one tick's observation. Unreported hands reset their slot."""
        hands = list(observation or [])
        labels = [
            self._label_for(hands[i]) if i < len(hands) else NO_GESTURE
            for i in range(len(SLOT_NAMES))
        ]
        self._slots = GestureSlots(primary=labels[0], secondary=labels[1])
        return self._slots

    @property
    def slots(self) -> GestureSlots:
        """Result of the most recent ``resolve()`` call."""
        return self._slots

    def reset(self):
        self._slots = EMPTY_SLOTS
