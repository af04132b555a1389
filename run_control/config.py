import os
from functools import lru_cache

from dotenv import load_dotenv

load_dotenv()


class Settings:
    GENERATION_API_URL: str = os.getenv("GENERATION_API_URL", "http://localhost:8001")
    # plan requests fail with a timeout error after this interval; execution has no timeout
    PLAN_TIMEOUT_SECONDS: float = float(os.getenv("PLAN_TIMEOUT_SECONDS", "30"))
    HTTP_TIMEOUT_SECONDS: float = float(os.getenv("HTTP_TIMEOUT_SECONDS", "10"))
    # job manager retention
    PLAN_CACHE_TTL_SECONDS: float = float(os.getenv("PLAN_CACHE_TTL_SECONDS", "600"))
    JOB_RETENTION_SECONDS: float = float(os.getenv("JOB_RETENTION_SECONDS", "3600"))
    PRUNE_INTERVAL_SECONDS: float = float(os.getenv("PRUNE_INTERVAL_SECONDS", "300"))
    # event stream / log retention
    STREAM_QUEUE_SIZE: int = int(os.getenv("STREAM_QUEUE_SIZE", "256"))
    LOG_RETENTION_ENTRIES: int = int(os.getenv("LOG_RETENTION_ENTRIES", "5000"))
    SSE_KEEP_ALIVE_SECONDS: float = float(os.getenv("SSE_KEEP_ALIVE_SECONDS", "15"))
    DEFAULT_CONCURRENCY: int = int(os.getenv("DEFAULT_CONCURRENCY", "1"))
    # whether reset() also drops the artifacts selected for regeneration
    RESET_CLEARS_SELECTION: bool = bool(int(os.getenv("RESET_CLEARS_SELECTION", "0")))
    METRICS_PORT: int = int(os.getenv("METRICS_PORT", "0"))
    LOG_DIR: str = os.getenv("LOG_DIR", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
