from __future__ import annotations
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

METRICS_REGISTRY = CollectorRegistry()

REQUESTS_EVALUATED = Counter(
    "trafficguard_requests_evaluated_total",
    "Requests evaluated by the decision engine",
    ["action"],
    registry=METRICS_REGISTRY,
)
ANOMALIES_FLAGGED = Counter(
    "trafficguard_anomalies_flagged_total",
    "Sources scored at or above the anomaly threshold",
    registry=METRICS_REGISTRY,
)
BOT_CLASSIFICATIONS = Counter(
    "trafficguard_bot_classifications_total",
    "Bot classifier verdicts",
    ["classification"],
    registry=METRICS_REGISTRY,
)
RATE_LIMIT_DENIALS = Counter(
    "trafficguard_rate_limit_denied_total",
    "Requests denied by the endpoint rate limiter",
    ["endpoint"],
    registry=METRICS_REGISTRY,
)
TUNING_ACTIONS = Counter(
    "trafficguard_tuning_actions_total",
    "Threshold changes applied by the auto-tuner",
    ["rule"],
    registry=METRICS_REGISTRY,
)
FALSE_POSITIVE_REPORTS = Counter(
    "trafficguard_false_positive_reports_total",
    "False positive reports filed",
    ["rule"],
    registry=METRICS_REGISTRY,
)
TRACKED_SOURCES = Gauge(
    "trafficguard_tracked_sources",
    "Sources with a live telemetry history",
    registry=METRICS_REGISTRY,
)
DECISION_LATENCY = Histogram(
    "trafficguard_decision_latency_seconds",
    "Time spent producing one verdict",
    registry=METRICS_REGISTRY,
    buckets=(0.0001, 0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25),
)

ALERTS_EMITTED = Counter(
    "trafficguard_alerts_emitted_total",
    "Alerts delivered",
    ["sink"],
    registry=METRICS_REGISTRY,
)
ALERTS_SUPPRESSED = Counter(
    "trafficguard_alerts_suppressed_total",
    "Alerts suppressed by cooldown",
    registry=METRICS_REGISTRY,
)

TRACKED_SOURCES.set(0)


def get_metrics() -> dict[str, object]:
    return {
        "registry": METRICS_REGISTRY,
        "evaluated": REQUESTS_EVALUATED,
        "anomalies": ANOMALIES_FLAGGED,
        "classifications": BOT_CLASSIFICATIONS,
        "denied": RATE_LIMIT_DENIALS,
        "tuning": TUNING_ACTIONS,
        "fp_reports": FALSE_POSITIVE_REPORTS,
        "sources": TRACKED_SOURCES,
        "latency": DECISION_LATENCY,
        "alerts_emitted": ALERTS_EMITTED,
        "alerts_suppressed": ALERTS_SUPPRESSED,
    }
