from __future__ import annotations
import math
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, tzinfo
from typing import Dict, List, Optional

from trafficguard.core.concurrency import Clock, system_clock
from trafficguard.detection.events import RequestEvent
from trafficguard.detection.recorder import TelemetryRecorder
from trafficguard.detection.scoring import ScoringStrategy, WeightedSum, clamp
from trafficguard.tuning.thresholds import RULE_ANOMALY, ThresholdTable

__all__ = ["AnomalyScore", "AnomalyScorer", "ANOMALY_WEIGHTS"]

ANOMALY_WEIGHTS = {
    "request_rate": 0.25,
    "path_entropy": 0.20,
    "timing_consistency": 0.15,
    "method_mix": 0.15,
    "size_anomaly": 0.15,
    "time_of_day": 0.10,
}

# stddev (ms) assumed when there are too few intervals to measure
DEFAULT_TIMING_STDDEV_MS = 100.0
# sub-score for method/size/time-of-day when a source has no events at all
NEUTRAL_SUBSCORE = 20.0
NIGHT_LAST_HOUR = 6


@dataclass
class AnomalyScore:
    source_id: str
    score: int
    features: Dict[str, float]
    is_anomaly: bool
    reasons: List[str] = field(default_factory=list)
    threshold: float = 70.0
    timestamp: float = 0.0


class AnomalyScorer:
    """
    Six-feature anomaly score over a source's current window.

    Sub-scores are 0..100 each; the strategy combines them (weighted sum by
    default). Scores at or above the effective threshold are flagged and kept
    in a bounded anomaly log.
    """

    def __init__(
        self,
        recorder: TelemetryRecorder,
        *,
        threshold: float = 70.0,
        baseline_rpm: float = 10.0,
        log_max: int = 1000,
        thresholds: Optional[ThresholdTable] = None,
        strategy: Optional[ScoringStrategy] = None,
        clock: Clock = system_clock,
        tz: Optional[tzinfo] = None,
    ):
        self.recorder = recorder
        self.baseline_rpm = max(0.001, float(baseline_rpm))
        self.log_max = max(2, int(log_max))
        self.thresholds = thresholds
        self.strategy: ScoringStrategy = strategy or WeightedSum(ANOMALY_WEIGHTS)
        self.tz = tz
        self._clock = clock
        self._threshold = clamp(float(threshold), 0.0, 100.0)
        self._anomalies: List[AnomalyScore] = []
        self._anomalies_lock = threading.Lock()

    # --- threshold ------------------------------------------------------------

    @property
    def threshold(self) -> float:
        """Configured threshold shifted by the auto-tuner's anomaly rule."""
        offset = self.thresholds.cutoff_offset(RULE_ANOMALY) if self.thresholds else 0.0
        return clamp(self._threshold + offset, 0.0, 100.0)

    def set_threshold(self, value: float) -> float:
        self._threshold = clamp(float(value), 0.0, 100.0)
        return self._threshold

    # --- scoring --------------------------------------------------------------

    def score(self, source_id: str, *, record: bool = True) -> AnomalyScore:
        now = self._clock()
        history = self.recorder.history(source_id, since=now - self.recorder.window_sec)
        reasons: List[str] = []

        rpm = self.request_rate(history)
        rate_score = min(100.0, rpm / self.baseline_rpm * 20)
        if rate_score > 50:
            reasons.append(f"High request rate: {rpm:.1f}/min")

        entropy = self.path_entropy(history)
        entropy_score = 80.0 if entropy > 0.8 else entropy * 100
        if entropy_score > 60:
            reasons.append(f"High path randomness: {entropy * 100:.0f}%")

        stddev = self.timing_stddev(history)
        timing_score = 80.0 if stddev < 50 else max(0.0, 100 - stddev)
        if timing_score > 60:
            reasons.append("Suspiciously consistent timing")

        method_score = self.method_mix(history)
        if method_score > 50:
            reasons.append("Unusual HTTP method usage")

        size_score = self.size_anomaly(history)
        if size_score > 50:
            reasons.append("Abnormal request sizes")

        tod_score = self.time_of_day(history)
        if tod_score > 50:
            reasons.append("Unusual access times")

        features = {
            "request_rate": clamp(rate_score, 0.0, 100.0),
            "path_entropy": clamp(entropy_score, 0.0, 100.0),
            "timing_consistency": clamp(timing_score, 0.0, 100.0),
            "method_mix": method_score,
            "size_anomaly": size_score,
            "time_of_day": tod_score,
        }
        total = clamp(self.strategy.score(features), 0.0, 100.0)
        threshold = self.threshold
        result = AnomalyScore(
            source_id=source_id,
            score=int(round(total)),
            features=features,
            is_anomaly=total >= threshold,
            reasons=reasons,
            threshold=threshold,
            timestamp=now,
        )
        if result.is_anomaly and record:
            with self._anomalies_lock:
                self._anomalies.append(result)
                if len(self._anomalies) > self.log_max:
                    self._anomalies = self._anomalies[-(self.log_max // 2):]
        return result

    # --- features -------------------------------------------------------------

    @staticmethod
    def request_rate(history: List[RequestEvent]) -> float:
        """Events per minute across the span the events cover."""
        if len(history) < 2:
            return 0.0
        span_min = (history[-1].timestamp - history[0].timestamp) / 60.0
        return len(history) / span_min if span_min > 0 else float(len(history))

    @staticmethod
    def path_entropy(history: List[RequestEvent]) -> float:
        """Shannon entropy of visited paths divided by log2(distinct paths): 0..1."""
        counts = Counter(e.path for e in history)
        if len(counts) < 2:
            return 0.0
        total = len(history)
        entropy = -sum((c / total) * math.log2(c / total) for c in counts.values())
        return entropy / math.log2(len(counts))

    @staticmethod
    def timing_stddev(history: List[RequestEvent]) -> float:
        if len(history) < 3:
            return DEFAULT_TIMING_STDDEV_MS
        intervals = [
            (history[i].timestamp - history[i - 1].timestamp) * 1000.0
            for i in range(1, len(history))
        ]
        mean = sum(intervals) / len(intervals)
        var = sum((x - mean) ** 2 for x in intervals) / len(intervals)
        return math.sqrt(var)

    @staticmethod
    def method_mix(history: List[RequestEvent]) -> float:
        if not history:
            return NEUTRAL_SUBSCORE
        get_pct = sum(1 for e in history if e.method == "GET") / len(history) * 100
        if get_pct < 30:
            return 80.0
        if get_pct < 50:
            return 50.0
        return 20.0

    @staticmethod
    def size_anomaly(history: List[RequestEvent]) -> float:
        if not history:
            return NEUTRAL_SUBSCORE
        avg = sum(e.size for e in history) / len(history)
        if avg > 10000:
            return 70.0
        if avg < 100:
            return 50.0
        return 20.0

    def time_of_day(self, history: List[RequestEvent]) -> float:
        if not history:
            return NEUTRAL_SUBSCORE
        night = sum(
            1 for e in history
            if datetime.fromtimestamp(e.timestamp, tz=self.tz).hour <= NIGHT_LAST_HOUR
        )
        night_pct = night / len(history) * 100
        if night_pct > 50:
            return 70.0
        if night_pct > 30:
            return 50.0
        return 20.0

    # --- reporting ------------------------------------------------------------

    def recent_anomalies(self, limit: int = 20) -> List[AnomalyScore]:
        with self._anomalies_lock:
            items = list(self._anomalies)
        return list(reversed(items[-max(0, int(limit)):])) if limit > 0 else []

    def anomaly_count(self) -> int:
        with self._anomalies_lock:
            return len(self._anomalies)

    def stats(self, top: int = 5) -> dict:
        total = self.recorder.total_logged()
        detected = self.anomaly_count()
        rate = round(detected / total * 100, 2) if total > 0 else 0.0
        ranked = sorted(
            ({"source_id": s, "score": self.score(s, record=False).score} for s in self.recorder.sources()),
            key=lambda x: x["score"],
            reverse=True,
        )
        return {
            "total_requests": total,
            "unique_sources": len(self.recorder.sources()),
            "anomalies_detected": detected,
            "anomaly_rate": rate,
            "threshold": self.threshold,
            "top_anomalous_sources": ranked[:top],
        }
