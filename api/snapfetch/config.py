import os
from typing import Dict, List

from dotenv import find_dotenv, load_dotenv

# Load environment variables from .env if present (for local runs)
load_dotenv(find_dotenv(usecwd=True))


PLATFORM_TIMEOUT_ENV = {
    "instagram": "INSTAGRAM_TIMEOUT",
    "tiktok": "TIKTOK_TIMEOUT",
    "youtube": "YOUTUBE_TIMEOUT",
    "twitter": "TWITTER_TIMEOUT",
    "facebook": "FACEBOOK_TIMEOUT",
    "pinterest": "PINTEREST_TIMEOUT",
}


def _default_redis_url() -> str:
    """Use container hostname inside Docker, localhost when running locally."""
    in_docker = os.path.exists("/.dockerenv") or os.getenv("IN_DOCKER") == "1"
    return "redis://redis:6379/0" if in_docker else "redis://localhost:6379/0"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    """Runtime configuration read from the environment at construction time."""

    def __init__(self) -> None:
        self.app_env: str = os.getenv("APP_ENV", "production").lower()
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")
        self.redis_url: str = os.getenv("REDIS_URL", _default_redis_url())
        self.cors_origins: str = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000")

        self.queue_concurrency: int = _env_int("QUEUE_CONCURRENCY", 5)
        self.queue_max_attempts: int = _env_int("QUEUE_MAX_ATTEMPTS", 3)
        self.queue_backoff_delay: float = _env_float("QUEUE_BACKOFF_DELAY", 5.0)
        self.queue_lease_seconds: int = _env_int("QUEUE_LEASE_SECONDS", 600)
        self.queue_stalled_interval: float = _env_float("QUEUE_STALLED_INTERVAL", 30.0)
        self.queue_max_stalled_count: int = _env_int("QUEUE_MAX_STALLED_COUNT", 1)
        self.queue_completed_ttl: int = _env_int("QUEUE_COMPLETED_TTL", 3600)

        self.max_file_size_mb: float = _env_float("MAX_FILE_SIZE_MB", 500.0)
        self.download_timeout: float = _env_float("DOWNLOAD_TIMEOUT", 300.0)
        self.probe_timeout: float = _env_float("PROBE_TIMEOUT", 60.0)
        self.platform_timeouts: Dict[str, float] = {
            platform: _env_float(env_name, self.download_timeout)
            for platform, env_name in PLATFORM_TIMEOUT_ENV.items()
        }

        self.staging_dir: str = os.getenv("STAGING_DIR", "./downloads")
        self.staging_max_age_hours: float = _env_float("STAGING_MAX_AGE_HOURS", 24.0)
        self.staging_cleanup_interval: float = _env_float("STAGING_CLEANUP_INTERVAL", 3600.0)
        self.delete_after_download: bool = _env_bool("DELETE_AFTER_DOWNLOAD", False)

        self.ytdlp_bin: str = os.getenv("YTDLP_BIN", "yt-dlp")

    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    def platform_timeout(self, platform: str) -> float:
        return self.platform_timeouts.get(platform, self.download_timeout)


settings = Settings()
