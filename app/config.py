"""
Configuration management using Pydantic Settings
"""
from pydantic_settings import BaseSettings
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # Database
    DATABASE_URL: str
    STORE_TIMEOUT_SECONDS: int = 10
    STORE_RETRY_ATTEMPTS: int = 2  # first try + one transparent retry

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"
    CACHE_BACKEND: str = "redis"  # redis | memory | none

    # Application
    APP_NAME: str = "Assessment Service"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ALLOWED_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:8000"]

    # Quiz Settings
    DEFAULT_TIME_LIMIT_MINUTES: int = 60
    MANUAL_QUESTION_MAX_POINTS: int = 5
    AUTO_SUBMIT_GRACE_SECONDS: int = 30  # after expires_at, auto-submit answers are still merged

    # Cache TTLs (seconds)
    CACHE_TTL_QUIZ: int = 300
    CACHE_TTL_CLASS_LIST: int = 180
    CACHE_TTL_SCHOOL_LIST: int = 300
    CACHE_TTL_RESULTS: int = 180
    CACHE_TTL_RESULT: int = 300
    CACHE_TTL_COMPLETION: int = 180
    CACHE_TTL_IN_PROGRESS: int = 60
    CACHE_TTL_RESUME: int = 30
    CACHE_TTL_PROGRESS: int = 300
    CACHE_TTL_SUBJECT_AVERAGES: int = 300

    # Logging
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True


# Global settings instance
settings = Settings()
