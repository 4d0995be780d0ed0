from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Final

N_CLASSES: Final[int] = 10

Probs = Sequence[float]


@dataclass(frozen=True)
class PredictionRequest:
    content: bytes
    content_type: str | None
    filename: str | None = None


@dataclass(frozen=True)
class PredictionResult:
    predicted_label: int
    # Iteration order: probability descending, then label ascending
    probabilities: Mapping[int, float]

    @property
    def confidence(self) -> float:
        return self.probabilities[self.predicted_label]

    @staticmethod
    def from_probs(probs: Probs) -> PredictionResult:
        """Build a result from a softmax vector indexed by label."""
        if len(probs) != N_CLASSES:
            raise ValueError(f"expected {N_CLASSES} class scores, got {len(probs)}")
        top = 0
        for i in range(1, len(probs)):
            # Strict comparison keeps the lowest label on ties
            if probs[i] > probs[top]:
                top = i
        ordered = sorted(range(len(probs)), key=lambda i: (-probs[i], i))
        return PredictionResult(
            predicted_label=top,
            probabilities={i: float(probs[i]) for i in ordered},
        )
