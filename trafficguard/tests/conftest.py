# trafficguard/tests/conftest.py
import sys, pathlib
from dotenv import load_dotenv

# put the project root on sys.path (trafficguard/tests -> trafficguard -> ROOT: parents[2])
ROOT = pathlib.Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

load_dotenv()

import pytest

from trafficguard.core.concurrency import StripedLock
from trafficguard.core.settings import Settings
from trafficguard.detection.recorder import TelemetryRecorder
from trafficguard.tuning.thresholds import DEFAULT_RULES, ThresholdTable

# 2023-11-14 22:13:20 UTC
T0 = 1_700_000_000.0


class ManualClock:
    """Time only moves when a test says so."""
    def __init__(self, start: float = T0):
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, ts: float) -> float:
        self.now = float(ts)
        return self.now


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def locks():
    return StripedLock(8)


@pytest.fixture
def thresholds():
    return ThresholdTable(rid for rid, _ in DEFAULT_RULES)


@pytest.fixture
def recorder(clock, locks):
    return TelemetryRecorder(window_sec=300, max_events=1000, log_max=10000, locks=locks, clock=clock)


@pytest.fixture
def settings():
    # ignore any developer .env so tests see the defaults
    return Settings(
        _env_file=None,
        SEED_ADMIN_CREDENTIAL=False,
        ALERT_SINKS="",
        ALERT_COOLDOWN_SECONDS=1,
        ALERT_KEEP_RECENT=50,
        TRUSTED_PROXY_CIDRS="127.0.0.1/32",
        IP_SALT="test_salt",
    )
