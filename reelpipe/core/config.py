# Application settings and environment variable loading (Pydantic BaseSettings)

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Database Settings (Required - no defaults for credentials)
    database_url: str

    # Redis Settings (Required - no defaults). Used as Celery broker/backend,
    # cache, view-counter buffer, realtime pub/sub and reel leases.
    redis_url: str

    # Media storage (local disk)
    uploads_dir: str = Field(default="uploads/reels")
    public_uploads_prefix: str = Field(default="/uploads/reels")
    ffmpeg_threads: int = Field(default=0)  # 0 = half of the CPU cores

    # Reel rules
    max_reel_duration: float = Field(default=60.0)  # seconds

    # Worker
    reel_worker_concurrency: int = Field(default=3)
    reel_worker_rate_limit: str = Field(default="5/s")
    reel_job_attempts: int = Field(default=3)
    retry_backoff_base: float = Field(default=1.0)  # seconds
    retry_backoff_max: float = Field(default=60.0)  # seconds
    reel_lease_ttl_seconds: int = Field(default=900)

    # Maintenance
    scheduler_timezone: str = Field(default="UTC")
    maintenance_retry_batch_size: int = Field(default=5)
    maintenance_retry_window_hours: int = Field(default=24)
    maintenance_retry_priority: int = Field(default=5)
    maintenance_retry_attempts: int = Field(default=1)
    maintenance_file_retention_days: int = Field(default=7)
    maintenance_queue_retention_hours: int = Field(default=24)
    alert_failed_jobs_threshold: int = Field(default=10)
    alert_waiting_jobs_threshold: int = Field(default=50)

    class Config:
        env_file = ".env"
        case_sensitive = False


# Global settings instance
settings = Settings()
