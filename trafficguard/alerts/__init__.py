from .base import (
    AlertPayload,
    AlertSink,
    AlertManager,
    KIND_ANOMALY,
    KIND_BAD_BOT,
    KIND_GUARD_BLOCK,
    KIND_RATE_LIMITED,
    KIND_THRESHOLD_TUNED,
)
from .sinks import LogSink, FileSink, WebhookSink, build_sinks
