from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "Moderation Queue"
    API_V1_STR: str = "/api/v1"
    LOG_LEVEL: str = "INFO"

    # Database
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "modqueue"
    DATABASE_URL: Optional[str] = None
    DATABASE_ECHO: bool = False

    @property
    def async_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"

    # JWT (tokens are issued by the platform auth service, verified here)
    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"

    # Scheduler trigger
    CRON_SECRET: Optional[str] = None

    # Vision
    ANTHROPIC_API_KEY: Optional[str] = None
    VISION_MODEL: str = "claude-sonnet-4-20250514"
    VISION_TIMEOUT_SECONDS: float = 25.0
    VISION_MAX_ANCHOR_IMAGES: int = 4

    # Worker
    WORKER_MAX_JOBS: int = 5
    WORKER_JOB_TIMEOUT_SECONDS: float = 30.0
    WORKER_STALE_MULTIPLIER: int = 10
    WORKER_MAX_ATTEMPTS: int = 3
    WORKER_POLL_INTERVAL_SECONDS: float = 0 # >0 runs an in-process loop instead of relying on the cron endpoint

    # Moderation policy (risk scores are 0-100, confidence is 0-1)
    MODERATION_ENABLED: bool = True
    MODERATION_AUTO_APPROVE_MAX_CELEBRITY_RISK: int = 30
    MODERATION_AUTO_APPROVE_MIN_FACE_CONSISTENCY: int = 70
    MODERATION_AUTO_APPROVE_MAX_DEEPFAKE_RISK: int = 30
    MODERATION_AUTO_APPROVE_MAX_REAL_PERSON_RISK: int = 40
    MODERATION_AUTO_APPROVE_MAX_MINOR_RISK: int = 30
    MODERATION_REVIEW_MIN_CELEBRITY_RISK: int = 50
    MODERATION_REVIEW_MIN_DEEPFAKE_RISK: int = 50
    MODERATION_REVIEW_MIN_MINOR_RISK: int = 50
    MODERATION_REVIEW_MAX_FACE_CONSISTENCY: int = 50
    MODERATION_HIGH_CELEBRITY_RISK: int = 80
    MODERATION_HIGH_DEEPFAKE_RISK: int = 80
    MODERATION_MIN_CONFIDENCE: float = 0.7
    MODERATION_MIN_ANCHORS: int = 3
    MODERATION_MAX_ANCHORS_PER_MODEL: int = 10

    @property
    def stale_job_seconds(self) -> float:
        return self.WORKER_JOB_TIMEOUT_SECONDS * self.WORKER_STALE_MULTIPLIER

settings = Settings()
