from __future__ import annotations
import logging
import math
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Pattern

from trafficguard.core.concurrency import Clock, StripedLock, system_clock
from trafficguard.detection.events import BehaviorSignals, normalize_headers
from trafficguard.detection.recorder import TelemetryRecorder
from trafficguard.detection.scoring import ScoringStrategy, WeightedSum, clamp
from trafficguard.tuning.thresholds import RULE_BOT, ThresholdTable

logger = logging.getLogger(__name__)

__all__ = ["BotClass", "BotClassification", "BotClassifier", "BOT_WEIGHTS", "compile_glob"]


class BotClass(str, Enum):
    HUMAN = "human"
    GOOD_BOT = "good_bot"
    BAD_BOT = "bad_bot"
    UNKNOWN = "unknown"


# positive = human-like, negative = bot-like
BOT_WEIGHTS = {
    "request_rate": -0.15,
    "burstiness": -0.10,
    "human_timing": 0.20,
    "accept_language": 0.08,
    "referer": 0.08,
    "cookies": 0.10,
    "header_count": 0.05,
    "ua_complexity": 0.08,
    "mouse_movement": 0.20,
    "scroll_behavior": 0.15,
    "challenge_time": 0.15,
}

GOOD_BOT_CONFIDENCE = 95
HUMAN_CUTOFF = 0.3
BAD_BOT_CUTOFF = -0.3
SESSION_WINDOW_SEC = 300.0
_UA_TOKEN_SPLIT = re.compile(r"[/()\s;,]")


def compile_glob(pattern: str) -> Pattern[str]:
    """Substring match where '*' stands for any run of characters, case-insensitive."""
    parts = [re.escape(p) for p in pattern.split("*")]
    return re.compile(".*".join(parts), re.IGNORECASE)


@dataclass
class BotClassification:
    source_id: str
    identifying_string: str
    classification: BotClass
    confidence: int
    features: Dict[str, float] = field(default_factory=dict)
    reasons: List[str] = field(default_factory=list)
    timestamp: float = 0.0


@dataclass(frozen=True)
class BotFeedback:
    source_id: str
    label: BotClass
    previous: Optional[BotClass]
    timestamp: float


class BotClassifier:
    """
    Weighted human/bot classifier.

    Known crawlers short-circuit to good_bot. Everything else is scored from
    the source's recent timing (recorder history) plus per-request headers
    and optional client behaviour signals.
    """

    def __init__(
        self,
        recorder: TelemetryRecorder,
        *,
        good_bot_patterns: Iterable[str] = (),
        history_max: int = 100,
        feedback_max: int = 1000,
        thresholds: Optional[ThresholdTable] = None,
        strategy: Optional[ScoringStrategy] = None,
        locks: Optional[StripedLock] = None,
        clock: Clock = system_clock,
    ):
        self.recorder = recorder
        self.history_max = max(1, int(history_max))
        self.thresholds = thresholds
        self.strategy: ScoringStrategy = strategy or WeightedSum(BOT_WEIGHTS)
        self._patterns: List[Pattern[str]] = [compile_glob(p) for p in good_bot_patterns]
        self._locks = locks or StripedLock()
        self._clock = clock
        self._history: Dict[str, Deque[BotClassification]] = {}
        self._feedback: Deque[BotFeedback] = deque(maxlen=max(1, int(feedback_max)))
        self._feedback_lock = threading.Lock()

    def is_known_good_bot(self, identifying_string: str) -> bool:
        return any(p.search(identifying_string or "") for p in self._patterns)

    @property
    def bad_bot_cutoff(self) -> float:
        # a more tolerant bot rule (higher cutoff) pushes the bad_bot line further down
        offset = self.thresholds.cutoff_offset(RULE_BOT) / 100.0 if self.thresholds else 0.0
        return clamp(BAD_BOT_CUTOFF - offset, -1.0, 0.0)

    # --- features -------------------------------------------------------------

    def extract_features(
        self,
        source_id: str,
        identifying_string: str,
        headers: Mapping[str, str],
        signals: Optional[BehaviorSignals] = None,
    ) -> Dict[str, float]:
        now = self._clock()
        stamps = [e.timestamp for e in self.recorder.history(source_id, since=now - SESSION_WINDOW_SEC)]
        request_rate = len(stamps) / (SESSION_WINDOW_SEC / 60.0)

        burstiness = 0.0
        avg_interval = 0.0
        interval_stddev = 100.0
        if len(stamps) > 1:
            intervals = [(stamps[i] - stamps[i - 1]) * 1000.0 for i in range(1, len(stamps))]
            avg_interval = sum(intervals) / len(intervals)
            var = sum((x - avg_interval) ** 2 for x in intervals) / len(intervals)
            interval_stddev = math.sqrt(var)
            burstiness = sum(1 for x in intervals if x < 100) / len(intervals)

        ua = identifying_string or ""
        signals = signals or BehaviorSignals()
        return {
            "request_rate": request_rate,
            "burstiness": burstiness,
            "session_duration": (stamps[-1] - stamps[0]) if stamps else 0.0,
            "avg_interval_ms": avg_interval,
            "interval_stddev_ms": interval_stddev,
            "human_timing": 1.0 if interval_stddev > 500 else 0.0,
            "accept_language": 1.0 if headers.get("accept-language") else 0.0,
            "referer": 1.0 if headers.get("referer") else 0.0,
            "cookies": 1.0 if headers.get("cookie") else 0.0,
            "header_count": float(len(headers)),
            "ua_complexity": float(len(_UA_TOKEN_SPLIT.split(ua))) if len(ua) > 50 else 0.0,
            "mouse_movement": 1.0 if signals.mouse_movement else 0.0,
            "scroll_behavior": 1.0 if signals.scroll_behavior else 0.0,
            "challenge_time_ms": float(signals.challenge_time_ms or 0.0),
        }

    @staticmethod
    def activations(features: Mapping[str, float]) -> tuple[Dict[str, float], List[str]]:
        """Map raw features onto multipliers for the weight table, with reasons."""
        act: Dict[str, float] = {}
        reasons: List[str] = []

        rate = features["request_rate"]
        if rate > 60:
            act["request_rate"] = 3
            reasons.append("Very high request rate")
        elif rate > 30:
            act["request_rate"] = 2
            reasons.append("High request rate")

        if features["burstiness"] > 0.5:
            act["burstiness"] = 2
            reasons.append("Bursty request pattern")

        if features["human_timing"]:
            act["human_timing"] = 1
            reasons.append("Human-like timing patterns")
        elif features["interval_stddev_ms"] < 100:
            reasons.append("Very consistent timing (bot-like)")

        for name in ("accept_language", "referer", "cookies"):
            if features[name]:
                act[name] = 1
        if features["header_count"] > 10:
            act["header_count"] = 1

        if features["mouse_movement"]:
            act["mouse_movement"] = 1
            reasons.append("Mouse movement detected")
        if features["scroll_behavior"]:
            act["scroll_behavior"] = 1
            reasons.append("Scroll behavior detected")
        if 500 < features["challenge_time_ms"] < 30000:
            act["challenge_time"] = 1
            reasons.append("Passed JS challenge naturally")

        if features["ua_complexity"] > 10:
            act["ua_complexity"] = 1
        return act, reasons

    # --- classify -------------------------------------------------------------

    def classify(
        self,
        source_id: str,
        identifying_string: str,
        headers: Optional[Mapping[str, str]] = None,
        signals: Optional[BehaviorSignals] = None,
    ) -> BotClassification:
        hdrs = normalize_headers(headers)
        now = self._clock()

        if self.is_known_good_bot(identifying_string):
            result = BotClassification(
                source_id=source_id,
                identifying_string=identifying_string,
                classification=BotClass.GOOD_BOT,
                confidence=GOOD_BOT_CONFIDENCE,
                features={},
                reasons=["Verified search engine bot"],
                timestamp=now,
            )
            self._remember(result)
            return result

        features = self.extract_features(source_id, identifying_string, hdrs, signals)
        act, reasons = self.activations(features)
        signed = clamp(self.strategy.score(act), -1.0, 1.0)
        confidence = int(round(abs(signed) * 100))

        if signed > HUMAN_CUTOFF:
            label = BotClass.HUMAN
        elif signed < self.bad_bot_cutoff:
            label = BotClass.BAD_BOT
        else:
            label = BotClass.UNKNOWN

        result = BotClassification(
            source_id=source_id,
            identifying_string=identifying_string,
            classification=label,
            confidence=confidence,
            features=features,
            reasons=reasons,
            timestamp=now,
        )
        self._remember(result)
        return result

    def _remember(self, result: BotClassification) -> None:
        with self._locks.for_key(result.source_id):
            hist = self._history.get(result.source_id)
            if hist is None:
                hist = deque(maxlen=self.history_max)
                self._history[result.source_id] = hist
            hist.append(result)

    # --- feedback & reads -----------------------------------------------------

    def record_feedback(self, source_id: str, label: BotClass | str) -> BotFeedback:
        """Store a human-corrected label. Stored classifications are left untouched."""
        label = BotClass(label)
        last = self.latest(source_id)
        fb = BotFeedback(
            source_id=source_id,
            label=label,
            previous=last.classification if last else None,
            timestamp=self._clock(),
        )
        with self._feedback_lock:
            self._feedback.append(fb)
        logger.info("bot feedback source=%s label=%s previous=%s", source_id, label.value,
                    fb.previous.value if fb.previous else None)
        return fb

    def feedback(self, limit: int = 50) -> List[BotFeedback]:
        with self._feedback_lock:
            items = list(self._feedback)
        return items[-limit:] if limit > 0 else []

    def history(self, source_id: str) -> List[BotClassification]:
        with self._locks.for_key(source_id):
            return list(self._history.get(source_id, ()))

    def latest(self, source_id: str) -> Optional[BotClassification]:
        with self._locks.for_key(source_id):
            hist = self._history.get(source_id)
            return hist[-1] if hist else None

    def evict(self, active_sources: Iterable[str]) -> int:
        """Forget classification history for sources the recorder no longer tracks."""
        keep = set(active_sources)
        removed = 0
        for source_id in list(self._history.keys()):
            if source_id in keep:
                continue
            with self._locks.for_key(source_id):
                if self._history.pop(source_id, None) is not None:
                    removed += 1
        return removed

    def stats(self) -> dict:
        counts = {c.value: 0 for c in BotClass}
        recent: List[BotClassification] = []
        for source_id in list(self._history.keys()):
            hist = self.history(source_id)
            for c in hist:
                counts[c.classification.value] += 1
            if hist:
                recent.append(hist[-1])
        recent.sort(key=lambda c: c.timestamp)
        return {
            "total_classifications": sum(counts.values()),
            "human_count": counts[BotClass.HUMAN.value],
            "bad_bot_count": counts[BotClass.BAD_BOT.value],
            "good_bot_count": counts[BotClass.GOOD_BOT.value],
            "unknown_count": counts[BotClass.UNKNOWN.value],
            "recent_classifications": list(reversed(recent[-20:])),
        }
