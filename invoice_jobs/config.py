"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Remote job service
    api_base_url: str = "http://localhost:8080/api"
    request_timeout_seconds: float = 30.0

    # Polling
    poll_interval_seconds: float = 1.0
    poll_backoff_factor: float = 1.0  # 1.0 keeps the interval fixed
    poll_max_interval_seconds: float = 30.0

    # Job service
    job_deadline_seconds: float = 60.0
    job_ttl_seconds: float = 120.0
    cleanup_interval_seconds: float = 60.0

    # CLI
    captcha_output: str = "captcha.png"
    log_level: str = "INFO"

    model_config = {
        "env_prefix": "INVOICE_JOBS_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


settings = Settings()
