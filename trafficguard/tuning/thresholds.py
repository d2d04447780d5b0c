from __future__ import annotations
import threading
from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional

RULE_ANOMALY = "anomaly-detection"
RULE_BOT = "bot-detection"
RULE_RATE_LIMIT = "rate-limit"

DEFAULT_RULES = [
    ("sql-injection", "SQL Injection Detection"),
    ("xss-attack", "XSS Attack Detection"),
    ("path-traversal", "Path Traversal Detection"),
    ("command-injection", "Command Injection Detection"),
    (RULE_RATE_LIMIT, "Rate Limiting"),
    (RULE_BOT, "Bot Detection"),
    ("scanner-detection", "Scanner Detection"),
    (RULE_ANOMALY, "Anomaly Detection"),
]

BASE_CUTOFF = 50.0
BASE_MAX_FP_RATE = 5.0
MIN_CUTOFF = 20.0
MAX_CUTOFF = 100.0


class Sensitivity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    def step(self, delta: int) -> Optional["Sensitivity"]:
        """Neighbouring level, or None when already at the end of the scale."""
        order = list(Sensitivity)
        idx = order.index(self) + delta
        if idx < 0 or idx >= len(order):
            return None
        return order[idx]


@dataclass
class RuleThreshold:
    rule_id: str
    sensitivity: Sensitivity = Sensitivity.MEDIUM
    anomaly_score: float = BASE_CUTOFF
    max_false_positive_rate: float = BASE_MAX_FP_RATE

    def snapshot(self) -> dict:
        d = asdict(self)
        d["sensitivity"] = self.sensitivity.value
        return d


class ThresholdTable:
    """
    Shared sensitivity state. Only the auto-tuner writes; the scorer, the
    classifier and the rate limiter read on every call.
    """

    def __init__(self, rule_ids: Iterable[str] = ()):
        self._rules: Dict[str, RuleThreshold] = {}
        self._locks: Dict[str, threading.Lock] = {}
        for rid in rule_ids:
            self.ensure(rid)

    def ensure(self, rule_id: str) -> RuleThreshold:
        if rule_id not in self._rules:
            self._locks.setdefault(rule_id, threading.Lock())
            self._rules.setdefault(rule_id, RuleThreshold(rule_id=rule_id))
        return self._rules[rule_id]

    def lock(self, rule_id: str) -> threading.Lock:
        return self._locks[rule_id]

    def get(self, rule_id: str) -> Optional[RuleThreshold]:
        th = self._rules.get(rule_id)
        return replace(th) if th else None

    def all(self) -> List[RuleThreshold]:
        return [replace(t) for t in list(self._rules.values())]

    def live(self, rule_id: str) -> Optional[RuleThreshold]:
        return self._rules.get(rule_id)

    def cutoff_offset(self, rule_id: str) -> float:
        """How far the rule's cutoff has drifted from the starting value (positive = more tolerant)."""
        th = self._rules.get(rule_id)
        return (th.anomaly_score - BASE_CUTOFF) if th else 0.0

    def sensitivity(self, rule_id: str) -> Sensitivity:
        th = self._rules.get(rule_id)
        return th.sensitivity if th else Sensitivity.MEDIUM
