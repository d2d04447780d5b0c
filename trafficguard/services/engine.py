from __future__ import annotations
import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Set

from trafficguard.alerts import (
    AlertManager,
    AlertPayload,
    KIND_ANOMALY,
    KIND_BAD_BOT,
    KIND_RATE_LIMITED,
    KIND_THRESHOLD_TUNED,
)
from trafficguard.core.concurrency import Clock, StripedLock, system_clock
from trafficguard.detection.anomaly import AnomalyScore, AnomalyScorer
from trafficguard.detection.bots import BotClass, BotClassification, BotClassifier, BotFeedback
from trafficguard.detection.events import BehaviorSignals, RequestEvent
from trafficguard.detection.recorder import TelemetryRecorder
from trafficguard.protection.credentials import CredentialStore
from trafficguard.protection.ratelimit import RateLimitDecision, RateLimiter, default_endpoints
from trafficguard.tuning.autotune import AutoTuner, TuneReport, TuningAction
from trafficguard.tuning.thresholds import DEFAULT_RULES, RULE_ANOMALY, RULE_BOT, RULE_RATE_LIMIT, ThresholdTable

logger = logging.getLogger(__name__)

__all__ = ["Action", "Verdict", "ProtectionEngine", "SweepResult", "build_engine"]

STATUS_ALLOW = 200
STATUS_CHALLENGE = 403
STATUS_BOT_BLOCK = 403
STATUS_RATE_LIMITED = 429


class Action(str, Enum):
    ALLOW = "allow"
    CHALLENGE = "challenge"
    BLOCK = "block"


@dataclass
class Verdict:
    action: Action
    status: int
    source_id: str
    anomaly: AnomalyScore
    classification: BotClassification
    rate_limit: RateLimitDecision
    reasons: List[str] = field(default_factory=list)
    headers: Dict[str, str] = field(default_factory=dict)
    # alerts raised while deciding; the async caller delivers them
    alerts: List[AlertPayload] = field(default_factory=list, repr=False)


@dataclass
class SweepResult:
    sources_evicted: int
    counters_evicted: int
    classifications_evicted: int
    tracked_sources: int


class ProtectionEngine:
    """
    Wires recorder, scorer, classifier, limiter and tuner around one clock,
    one lock pool and one threshold table, and folds their outputs into a
    Verdict.

    evaluate() is synchronous and does no I/O. Alerts are attached to the
    verdict and handed to publish() by async callers.
    """

    def __init__(
        self,
        *,
        recorder: TelemetryRecorder,
        scorer: AnomalyScorer,
        classifier: BotClassifier,
        limiter: RateLimiter,
        tuner: AutoTuner,
        alerts: Optional[AlertManager] = None,
        metrics: Optional[Dict[str, Any]] = None,
        clock: Clock = system_clock,
    ):
        self.recorder = recorder
        self.scorer = scorer
        self.classifier = classifier
        self.limiter = limiter
        self.tuner = tuner
        self.thresholds = tuner.thresholds
        self.credentials = limiter.credentials
        self.alerts = alerts
        self.metrics = metrics or {}
        self._clock = clock
        self._pending: Set[asyncio.Task] = set()
        tuner.on_action = self._tuned

    def now(self) -> float:
        return self._clock()

    def _metric(self, name: str):
        return self.metrics.get(name)

    # --- request path ---------------------------------------------------------

    def evaluate(
        self,
        event: RequestEvent,
        signals: Optional[BehaviorSignals] = None,
        credential: Optional[str] = None,
    ) -> Verdict:
        started = time.perf_counter()
        self.recorder.record(event, log=False)
        self.recorder.log_request(event.method, event.path, event.source_id, credential, ts=event.timestamp)

        anomaly = self.scorer.score(event.source_id)
        bot = self.classifier.classify(event.source_id, event.user_agent, event.headers, signals)
        rl = self.limiter.check_rate_limit(
            event.method, event.path, event.source_id, credential, log_request=False
        )

        reasons: List[str] = []
        alerts: List[AlertPayload] = []
        action, status = Action.ALLOW, STATUS_ALLOW

        if not rl.allowed:
            action, status = Action.BLOCK, STATUS_RATE_LIMITED
            reasons.append(f"Rate limit exceeded on {rl.endpoint}")
            alerts.append(self._payload(KIND_RATE_LIMITED, event, "rate_limit_exceeded",
                                        {"limit": rl.limit, "endpoint": rl.endpoint}))
            denied = self._metric("denied")
            if denied is not None:
                denied.labels(endpoint=rl.endpoint or "unknown").inc()
        elif bot.classification is BotClass.BAD_BOT:
            action, status = Action.BLOCK, STATUS_BOT_BLOCK
        elif anomaly.is_anomaly and bot.classification is not BotClass.GOOD_BOT:
            action, status = Action.CHALLENGE, STATUS_CHALLENGE

        if bot.classification is BotClass.BAD_BOT:
            reasons.extend(bot.reasons)
            alerts.append(self._payload(KIND_BAD_BOT, event, "bad_bot",
                                        {"confidence": bot.confidence}))
        if anomaly.is_anomaly:
            reasons.extend(anomaly.reasons)
            alerts.append(self._payload(KIND_ANOMALY, event, "anomaly_score",
                                        {"score": anomaly.score, "threshold": anomaly.threshold}))

        blocked = action is Action.BLOCK
        if anomaly.is_anomaly:
            self.tuner.record_trigger(RULE_ANOMALY, blocked)
        if bot.classification is BotClass.BAD_BOT:
            self.tuner.record_trigger(RULE_BOT, blocked)
        if not rl.allowed:
            self.tuner.record_trigger(RULE_RATE_LIMIT, blocked)

        self._observe(action, anomaly, bot, time.perf_counter() - started)
        if action is not Action.ALLOW:
            logger.info("verdict %s source=%s path=%s status=%d", action.value, event.source_id, event.path, status)

        return Verdict(
            action=action,
            status=status,
            source_id=event.source_id,
            anomaly=anomaly,
            classification=bot,
            rate_limit=rl,
            reasons=reasons,
            headers=self.limiter.rate_limit_headers(rl),
            alerts=alerts,
        )

    def _payload(self, kind: str, event: RequestEvent, reason: str, meta: Dict[str, Any]) -> AlertPayload:
        if self.alerts is not None:
            return self.alerts.make_payload(kind, event.source_id, event.path, reason, meta)
        return AlertPayload(ts=self._clock(), kind=kind, source=event.source_id, path=event.path,
                            reason=reason, meta=meta)

    def _observe(self, action: Action, anomaly: AnomalyScore, bot: BotClassification, elapsed: float) -> None:
        evaluated = self._metric("evaluated")
        if evaluated is not None:
            evaluated.labels(action=action.value).inc()
        classifications = self._metric("classifications")
        if classifications is not None:
            classifications.labels(classification=bot.classification.value).inc()
        anomalies = self._metric("anomalies")
        if anomalies is not None and anomaly.is_anomaly:
            anomalies.inc()
        latency = self._metric("latency")
        if latency is not None:
            latency.observe(elapsed)

    async def publish(self, payloads: Iterable[AlertPayload]) -> int:
        if self.alerts is None:
            return 0
        sent = 0
        for p in payloads:
            if await self.alerts.emit(p):
                sent += 1
        return sent

    def publish_later(self, payloads: List[AlertPayload]) -> None:
        """Fire-and-forget delivery from inside a running event loop."""
        if not payloads or self.alerts is None:
            return
        task = asyncio.get_running_loop().create_task(self.publish(payloads))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for alert deliveries started by publish_later."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # --- feedback -------------------------------------------------------------

    def classification_feedback(self, source_id: str, label: BotClass | str) -> BotFeedback:
        fb = self.classifier.record_feedback(source_id, label)
        if fb.label is BotClass.HUMAN and fb.previous is BotClass.BAD_BOT:
            last = self.classifier.latest(source_id)
            seen = self.recorder.history(source_id)
            self.report_false_positive(
                RULE_BOT,
                source_id,
                path=seen[-1].path if seen else "",
                identifying_string=last.identifying_string if last else "",
                reason="classified as bad_bot, corrected to human",
            )
        return fb

    def report_false_positive(self, rule_id: str, source_id: str, path: str, **kwargs: Any) -> Optional[str]:
        report_id = self.tuner.report_false_positive(rule_id, source_id, path, **kwargs)
        fp = self._metric("fp_reports")
        if report_id is not None and fp is not None:
            fp.labels(rule=rule_id).inc()
        return report_id

    def _tuned(self, action: TuningAction) -> None:
        tuning = self._metric("tuning")
        if tuning is not None:
            tuning.labels(rule=action.rule_id).inc()
        if self.alerts is not None:
            payload = self.alerts.make_payload(
                KIND_THRESHOLD_TUNED, "auto-tuner", "", action.reason,
                {"rule": action.rule_id, "previous": action.previous_value, "new": action.new_value},
            )
            try:
                self.publish_later([payload])
            except RuntimeError:
                logger.warning("tuning alert for %s dropped: no running event loop", action.rule_id)

    # --- periodic jobs --------------------------------------------------------

    def sweep(self) -> SweepResult:
        now = self._clock()
        sources = self.recorder.evict(now)
        counters = self.limiter.evict(now)
        classifications = self.classifier.evict(self.recorder.sources())
        if self.alerts is not None:
            self.alerts.prune()
        tracked = len(self.recorder.sources())
        gauge = self._metric("sources")
        if gauge is not None:
            gauge.set(tracked)
        logger.info("sweep evicted sources=%d counters=%d classifications=%d tracked=%d",
                    sources, counters, classifications, tracked)
        return SweepResult(sources, counters, classifications, tracked)

    def run_auto_tune(self) -> TuneReport:
        report = self.tuner.run_auto_tune()
        logger.info("auto-tune run tuned=%d flagged=%d", report.tuned, len(report.recommendations))
        return report


def build_engine(settings, *, clock: Clock = system_clock, metrics: Optional[Dict[str, Any]] = None,
                 alerts: Optional[AlertManager] = None) -> ProtectionEngine:
    locks = StripedLock(settings.LOCK_STRIPES)
    thresholds = ThresholdTable(rid for rid, _ in DEFAULT_RULES)
    recorder = TelemetryRecorder(
        window_sec=settings.HISTORY_WINDOW_SEC,
        max_events=settings.HISTORY_MAX_EVENTS,
        log_max=settings.GLOBAL_LOG_MAX,
        locks=locks,
        clock=clock,
    )
    scorer = AnomalyScorer(
        recorder,
        threshold=settings.ANOMALY_THRESHOLD,
        baseline_rpm=settings.ANOMALY_BASELINE_RPM,
        log_max=settings.ANOMALY_LOG_MAX,
        thresholds=thresholds,
        clock=clock,
    )
    classifier = BotClassifier(
        recorder,
        good_bot_patterns=settings.good_bot_patterns(),
        history_max=settings.CLASSIFICATION_HISTORY_MAX,
        thresholds=thresholds,
        locks=locks,
        clock=clock,
    )
    credentials = CredentialStore(default_rate_limit=settings.DEFAULT_CREDENTIAL_RATE_LIMIT, clock=clock)
    limiter = RateLimiter(
        recorder,
        credentials,
        endpoints=default_endpoints(),
        window_sec=settings.RATE_WINDOW_SEC,
        discovery_window_sec=settings.DISCOVERY_WINDOW_SEC,
        discovery_min_hits=settings.DISCOVERY_MIN_HITS,
        thresholds=thresholds,
        locks=locks,
        clock=clock,
    )
    tuner = AutoTuner(
        thresholds,
        enabled=settings.AUTO_TUNE_ENABLED,
        min_triggers=settings.AUTO_TUNE_MIN_TRIGGERS,
        reports_max=settings.FP_REPORTS_MAX,
        clock=clock,
    )
    if settings.SEED_ADMIN_CREDENTIAL:
        admin = credentials.issue("Admin Key", scopes=["read", "write", "admin"], rate_limit=1000,
                                  key=settings.ADMIN_API_KEY or None)
        if settings.ADMIN_API_KEY:
            logger.info("seeded admin credential id=%s from ADMIN_API_KEY", admin.id)
        else:
            # generated key: this log line is the only place it is ever shown in full
            logger.warning("seeded admin credential id=%s key=%s (set ADMIN_API_KEY to pin it)", admin.id, admin.key)
    return ProtectionEngine(
        recorder=recorder,
        scorer=scorer,
        classifier=classifier,
        limiter=limiter,
        tuner=tuner,
        alerts=alerts,
        metrics=metrics,
        clock=clock,
    )
