# trafficguard/metrics/__init__.py
"""
Thin re-export layer. All collectors live in trafficguard.metrics.registry on
a dedicated CollectorRegistry; import them from here.
"""
from .registry import (
    METRICS_REGISTRY,
    REQUESTS_EVALUATED,
    ANOMALIES_FLAGGED,
    BOT_CLASSIFICATIONS,
    RATE_LIMIT_DENIALS,
    TUNING_ACTIONS,
    FALSE_POSITIVE_REPORTS,
    TRACKED_SOURCES,
    DECISION_LATENCY,
    ALERTS_EMITTED,
    ALERTS_SUPPRESSED,
    get_metrics,
)

__all__ = [
    "METRICS_REGISTRY",
    "REQUESTS_EVALUATED",
    "ANOMALIES_FLAGGED",
    "BOT_CLASSIFICATIONS",
    "RATE_LIMIT_DENIALS",
    "TUNING_ACTIONS",
    "FALSE_POSITIVE_REPORTS",
    "TRACKED_SOURCES",
    "DECISION_LATENCY",
    "ALERTS_EMITTED",
    "ALERTS_SUPPRESSED",
    "get_metrics",
]
