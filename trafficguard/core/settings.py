from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List

class Settings(BaseSettings):
    APP_ENV: str = "dev"
    APP_VERSION: str = "0.1.0"
    HOST: str = "127.0.0.1"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    IP_SALT: str = "change_me"
    TRUSTED_PROXY_CIDRS: str = "127.0.0.1/32"

    ALERT_SINKS: str = "log"
    ALERT_FILE_PATH: str = "./alerts.log"
    ALERT_WEBHOOK_URLS: str = ""
    ALERT_COOLDOWN_SECONDS: int = 60
    ALERT_KEEP_RECENT: int = 200
    ALERT_RETRY_MAX: int = 3
    ALERT_RETRY_BACKOFF_MS: int = 250

    # telemetry
    HISTORY_WINDOW_SEC: int = 300
    HISTORY_MAX_EVENTS: int = 1000
    GLOBAL_LOG_MAX: int = 10000
    LOCK_STRIPES: int = 64

    # anomaly scorer
    ANOMALY_THRESHOLD: float = 70.0
    ANOMALY_BASELINE_RPM: float = 10.0
    ANOMALY_LOG_MAX: int = 1000

    # bot classifier
    CLASSIFICATION_HISTORY_MAX: int = 100
    GOOD_BOT_PATTERNS: str = (
        "googlebot,bingbot,slurp,duckduckbot,facebookexternalhit,"
        "twitterbot,linkedinbot,applebot,pinterestbot"
    )

    # rate limiter
    RATE_WINDOW_SEC: float = 1.0
    DISCOVERY_WINDOW_SEC: int = 300
    DISCOVERY_MIN_HITS: int = 10
    DEFAULT_CREDENTIAL_RATE_LIMIT: int = 100
    SEED_ADMIN_CREDENTIAL: bool = True
    ADMIN_API_KEY: str = ""  # key for the seeded admin credential; generated and logged when empty

    # auto-tuner
    AUTO_TUNE_ENABLED: bool = True
    AUTO_TUNE_MIN_TRIGGERS: int = 10
    FP_REPORTS_MAX: int = 1000

    # background jobs
    SWEEP_INTERVAL_SEC: int = 300
    AUTO_TUNE_INTERVAL_SEC: int = 3600

    # guard middleware (protects the hosting app itself)
    GUARD_ENABLED: bool = False
    GUARD_BLOCK_STATUS: int = 403
    GUARD_EXCLUDE_PATHS: str = "/metrics,/health,/_debug,/admin,/stats,/v1"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def sinks(self) -> List[str]:
        return [s.strip() for s in self.ALERT_SINKS.split(",") if s.strip()]

    def webhook_urls(self) -> List[str]:
        return [u.strip() for u in self.ALERT_WEBHOOK_URLS.split(",") if u.strip()]

    def good_bot_patterns(self) -> List[str]:
        return [p.strip() for p in self.GOOD_BOT_PATTERNS.split(",") if p.strip()]

    def guard_exclude_paths(self) -> List[str]:
        return [p.strip() for p in self.GUARD_EXCLUDE_PATHS.split(",") if p.strip()]

def get_settings() -> Settings:
    return Settings()  # fresh read of env and .env on every call
