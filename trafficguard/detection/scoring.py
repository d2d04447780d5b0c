from __future__ import annotations
from typing import Mapping, Protocol


class ScoringStrategy(Protocol):
    """Turns named feature values into one number. Swap in a trained model here."""
    def score(self, features: Mapping[str, float]) -> float: ...


class WeightedSum:
    """Fixed hand-tuned weights. Features without a weight contribute nothing."""

    def __init__(self, weights: Mapping[str, float]):
        self.weights = dict(weights)

    def score(self, features: Mapping[str, float]) -> float:
        return sum(self.weights[name] * float(value) for name, value in features.items() if name in self.weights)


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))
