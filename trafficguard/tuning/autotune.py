from __future__ import annotations
import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from trafficguard.core.concurrency import Clock, system_clock
from trafficguard.tuning.thresholds import (
    DEFAULT_RULES,
    MAX_CUTOFF,
    MIN_CUTOFF,
    RuleThreshold,
    Sensitivity,
    ThresholdTable,
)

logger = logging.getLogger(__name__)

__all__ = [
    "AutoTuner",
    "Direction",
    "FalsePositiveReport",
    "Recommendation",
    "RulePerformance",
    "TuneReport",
    "TuningAction",
]


class Recommendation(str, Enum):
    KEEP = "keep"
    REVIEW = "review"
    ADJUST_THRESHOLD = "adjust_threshold"
    DISABLE = "disable"


class Direction(str, Enum):
    INCREASE_TOLERANCE = "increase_tolerance"  # fewer false positives
    DECREASE_TOLERANCE = "decrease_tolerance"  # more detection


@dataclass
class RulePerformance:
    rule_id: str
    rule_name: str
    triggers: int = 0
    false_positives: int = 0
    true_positives: int = 0
    accuracy: float = 100.0
    last_triggered: Optional[float] = None
    recommendation: Recommendation = Recommendation.KEEP

    @property
    def false_positive_rate(self) -> float:
        return self.false_positives / self.triggers * 100 if self.triggers > 0 else 0.0


@dataclass
class FalsePositiveReport:
    id: str
    rule_id: str
    source_id: str
    path: str
    identifying_string: str
    timestamp: float
    headers: Dict[str, str] = field(default_factory=dict)
    reason: Optional[str] = None
    verified: bool = False
    reviewed: bool = False
    # whether filing this report moved one true positive into the FP column
    took_true_positive: bool = False


@dataclass
class TuningAction:
    id: str
    rule_id: str
    action: str
    previous_value: Dict[str, Any]
    new_value: Dict[str, Any]
    reason: str
    timestamp: float
    reverted: bool = False


@dataclass
class TuneReport:
    tuned: int
    recommendations: List[RulePerformance]
    actions: List[TuningAction]


def recommend(perf: RulePerformance) -> Recommendation:
    fp_rate = perf.false_positive_rate
    if fp_rate > 30:
        return Recommendation.DISABLE
    if fp_rate > 15:
        return Recommendation.ADJUST_THRESHOLD
    if fp_rate > 5:
        return Recommendation.REVIEW
    return Recommendation.KEEP


class AutoTuner:
    """
    Per-rule accuracy bookkeeping and threshold tuning.

    Each rule has its own lock, so triggers on different rules never contend.
    Accuracy and recommendation are always derived from the counters; nothing
    sets them directly.
    """

    def __init__(
        self,
        thresholds: ThresholdTable,
        *,
        rules: Iterable[Tuple[str, str]] = DEFAULT_RULES,
        enabled: bool = True,
        min_triggers: int = 10,
        reports_max: int = 1000,
        clock: Clock = system_clock,
    ):
        self.thresholds = thresholds
        self.enabled = bool(enabled)
        self.min_triggers = max(1, int(min_triggers))
        self.reports_max = max(2, int(reports_max))
        self._clock = clock
        self._perf: Dict[str, RulePerformance] = {}
        self._reports: List[FalsePositiveReport] = []
        self._reports_lock = threading.Lock()
        self._history: List[TuningAction] = []
        self._history_lock = threading.Lock()
        # called after every applied threshold change, outside the rule lock
        self.on_action: Optional[Callable[[TuningAction], None]] = None
        for rule_id, name in rules:
            self.add_rule(rule_id, name)

    def add_rule(self, rule_id: str, name: str) -> RulePerformance:
        self.thresholds.ensure(rule_id)
        return self._perf.setdefault(rule_id, RulePerformance(rule_id=rule_id, rule_name=name))

    def _update_accuracy(self, perf: RulePerformance) -> None:
        if perf.triggers > 0:
            acc = (perf.triggers - perf.false_positives) / perf.triggers * 100
            perf.accuracy = round(max(0.0, min(100.0, acc)), 2)
        else:
            perf.accuracy = 100.0
        perf.recommendation = recommend(perf)

    # --- triggers & reports ---------------------------------------------------

    def record_trigger(self, rule_id: str, was_blocked: bool) -> bool:
        perf = self._perf.get(rule_id)
        if perf is None:
            return False
        with self.thresholds.lock(rule_id):
            perf.triggers += 1
            perf.last_triggered = self._clock()
            if was_blocked:
                perf.true_positives += 1
            self._update_accuracy(perf)
        return True

    def report_false_positive(
        self,
        rule_id: str,
        source_id: str,
        path: str,
        identifying_string: str = "",
        reason: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Optional[str]:
        perf = self._perf.get(rule_id)
        if perf is None:
            return None
        report = FalsePositiveReport(
            id=f"fp-{uuid.uuid4().hex[:12]}",
            rule_id=rule_id,
            source_id=source_id,
            path=path,
            identifying_string=identifying_string,
            timestamp=self._clock(),
            headers=dict(headers or {}),
            reason=reason,
        )
        with self.thresholds.lock(rule_id):
            perf.false_positives += 1
            if perf.true_positives > 0:
                perf.true_positives -= 1
                report.took_true_positive = True
            self._update_accuracy(perf)
            should_tune = self._over_tolerance(perf)

        with self._reports_lock:
            self._reports.append(report)
            if len(self._reports) > self.reports_max:
                self._reports = self._reports[-(self.reports_max // 2):]

        logger.info("false positive reported id=%s rule=%s source=%s", report.id, rule_id, source_id)
        if self.enabled and should_tune:
            self.adjust_rule_threshold(rule_id, Direction.INCREASE_TOLERANCE)
        return report.id

    def _over_tolerance(self, perf: RulePerformance) -> bool:
        th = self.thresholds.get(perf.rule_id)
        if th is None:
            return False
        return perf.triggers >= self.min_triggers and perf.false_positive_rate > th.max_false_positive_rate

    def verify_false_positive(self, report_id: str, is_verified: bool) -> bool:
        with self._reports_lock:
            report = next((r for r in self._reports if r.id == report_id), None)
            if report is None or report.reviewed:
                return False
            report.reviewed = True
            report.verified = bool(is_verified)
        if not is_verified:
            perf = self._perf.get(report.rule_id)
            if perf is not None:
                with self.thresholds.lock(report.rule_id):
                    if perf.false_positives > 0:
                        perf.false_positives -= 1
                        if report.took_true_positive:
                            perf.true_positives += 1
                    self._update_accuracy(perf)
        logger.info("false positive %s %s", report_id, "confirmed" if is_verified else "rejected")
        return True

    # --- thresholds -----------------------------------------------------------

    def adjust_rule_threshold(self, rule_id: str, direction: Direction | str) -> Optional[TuningAction]:
        """Move one sensitivity step. Returns None at the end of the scale or for unknown rules."""
        direction = Direction(direction)
        th: Optional[RuleThreshold] = self.thresholds.live(rule_id)
        if th is None:
            return None
        with self.thresholds.lock(rule_id):
            step = -1 if direction is Direction.INCREASE_TOLERANCE else 1
            nxt = th.sensitivity.step(step)
            if nxt is None:
                return None
            previous = th.snapshot()
            th.sensitivity = nxt
            if direction is Direction.INCREASE_TOLERANCE:
                th.anomaly_score = min(MAX_CUTOFF, th.anomaly_score + 10)
                th.max_false_positive_rate += 2
                reason = "High false positive rate detected"
            else:
                th.anomaly_score = max(MIN_CUTOFF, th.anomaly_score - 10)
                th.max_false_positive_rate = max(1.0, th.max_false_positive_rate - 1)
                reason = "Low detection rate, increasing sensitivity"
            action = TuningAction(
                id=f"tune-{uuid.uuid4().hex[:12]}",
                rule_id=rule_id,
                action="threshold_changed",
                previous_value=previous,
                new_value=th.snapshot(),
                reason=reason,
                timestamp=self._clock(),
            )
        with self._history_lock:
            self._history.append(action)
        logger.warning("auto-tune rule=%s %s -> sensitivity=%s", rule_id, direction.value, action.new_value["sensitivity"])
        if self.on_action is not None:
            self.on_action(action)
        return action

    def revert_action(self, action_id: str) -> bool:
        with self._history_lock:
            action = next((a for a in self._history if a.id == action_id), None)
            if action is None or action.reverted:
                return False
            action.reverted = True
        th = self.thresholds.live(action.rule_id)
        if th is None:
            return False
        prev = action.previous_value
        with self.thresholds.lock(action.rule_id):
            th.sensitivity = Sensitivity(prev["sensitivity"])
            th.anomaly_score = float(prev["anomaly_score"])
            th.max_false_positive_rate = float(prev["max_false_positive_rate"])
        logger.info("reverted tuning action %s on rule %s", action_id, action.rule_id)
        return True

    def run_auto_tune(self) -> TuneReport:
        """Hourly sweep. Only adjust_threshold is applied; disable/review are surfaced."""
        recommendations: List[RulePerformance] = []
        actions: List[TuningAction] = []
        for perf in list(self._perf.values()):
            if perf.triggers < self.min_triggers or perf.recommendation is Recommendation.KEEP:
                continue
            recommendations.append(replace(perf))
            if self.enabled and perf.recommendation is Recommendation.ADJUST_THRESHOLD:
                action = self.adjust_rule_threshold(perf.rule_id, Direction.INCREASE_TOLERANCE)
                if action is not None:
                    actions.append(action)
        return TuneReport(tuned=len(actions), recommendations=recommendations, actions=actions)

    def set_auto_tune(self, enabled: bool) -> None:
        self.enabled = bool(enabled)
        logger.info("auto-tune %s", "enabled" if self.enabled else "disabled")

    # --- reads ----------------------------------------------------------------

    def performance(self, rule_id: str) -> Optional[RulePerformance]:
        perf = self._perf.get(rule_id)
        return replace(perf) if perf else None

    def rule_performance(self) -> List[RulePerformance]:
        return [replace(p) for p in list(self._perf.values())]

    def threshold(self, rule_id: str) -> Optional[RuleThreshold]:
        return self.thresholds.get(rule_id)

    def false_positive_reports(self, rule_id: Optional[str] = None, limit: int = 50) -> List[FalsePositiveReport]:
        with self._reports_lock:
            reports = list(self._reports)
        if rule_id:
            return [r for r in reports if r.rule_id == rule_id]
        return reports[-limit:]

    def tuning_history(self, limit: int = 20) -> List[TuningAction]:
        with self._history_lock:
            items = list(self._history)
        return list(reversed(items[-limit:])) if limit > 0 else []

    def stats(self) -> dict:
        today = datetime.fromtimestamp(self._clock(), tz=timezone.utc).date()

        def _is_today(ts: float) -> bool:
            return datetime.fromtimestamp(ts, tz=timezone.utc).date() == today

        with self._history_lock:
            actions_today = sum(1 for a in self._history if _is_today(a.timestamp))
        with self._reports_lock:
            fps_today = sum(1 for r in self._reports if _is_today(r.timestamp))
        perfs = self.rule_performance()
        overall = round(sum(p.accuracy for p in perfs) / len(perfs)) if perfs else 100
        return {
            "total_rules": len(perfs),
            "tuning_actions_today": actions_today,
            "false_positives_today": fps_today,
            "rules_needing_review": sum(1 for p in perfs if p.recommendation is not Recommendation.KEEP),
            "overall_accuracy": overall,
            "auto_tune_enabled": self.enabled,
        }
