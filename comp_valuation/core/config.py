import os
from pydantic import BaseModel


def _delays(raw: str) -> list[float]:
    return [float(d) for d in raw.split(",") if d.strip()]


class Settings(BaseModel):
    # Basic
    ENV: str = os.getenv("ENV", "dev")
    DEFAULT_CURRENCY: str = os.getenv("CURRENCY", "USD")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Data providers
    COMPS_PROVIDER: str = os.getenv("COMPS_PROVIDER", "mock")      # mock | http
    COMPS_BASE_URL: str | None = os.getenv("COMPS_BASE_URL")
    ASSETS_PROVIDER: str = os.getenv("ASSETS_PROVIDER", "mock")    # mock | http
    ASSETS_BASE_URL: str | None = os.getenv("ASSETS_BASE_URL")
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "15"))

    # Engine
    TREND_WINDOW_DAYS: int = int(os.getenv("TREND_WINDOW_DAYS", "30"))
    POLL_DELAYS_SECONDS: list[float] = _delays(os.getenv("POLL_DELAYS_SECONDS", "3,6,10,15"))
    HISTORY_MAX_POINTS: int = int(os.getenv("HISTORY_MAX_POINTS", "100"))
    HISTORY_DEFAULT_POINTS: int = int(os.getenv("HISTORY_DEFAULT_POINTS", "30"))
    BATCH_MAX_IDS: int = int(os.getenv("BATCH_MAX_IDS", "50"))

    # CORS
    ALLOW_ORIGINS: str = os.getenv("ALLOW_ORIGINS", "*")

    # Cache
    CACHE_MAXSIZE: int = int(os.getenv("CACHE_MAXSIZE", "4096"))
    USE_REDIS: bool = os.getenv("USE_REDIS", "false").lower() == "true"
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Metrics
    PROMETHEUS_ENABLED: bool = os.getenv("PROMETHEUS_ENABLED", "true").lower() == "true"

settings = Settings()
