"""
Runtime settings for the bulk onboarding pipeline.

Values come from the process environment, optionally seeded from backend/.env.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(dotenv_path=Path(__file__).parent.parent / ".env", override=False)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


@dataclass(frozen=True)
class OnboardingSettings:
    batch_size: int = 1000
    max_concurrent_batches: int = 10
    notification_workers: int = 4
    batch_stagger_seconds: float = 1.0
    batch_max_attempts: int = 3
    batch_backoff_seconds: float = 2.0
    # store retries for a batch's final status write, backoff capped at 5s
    final_write_attempts: int = 10
    job_ttl_seconds: int = 86400
    seconds_per_employee_estimate: float = 5.0
    progress_interval: int = 100
    max_upload_bytes: int = 100 * 1024 * 1024

    # "anthropic", "openai" or "none"
    recommender_provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_base_url: str = "https://api.anthropic.com"
    anthropic_model: str = "claude-3-5-sonnet-latest"
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_model: str = "gpt-4o-mini"
    recommender_timeout_seconds: float = 30.0

    # "memory" or "redis"
    job_store_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"

    login_url: str = "http://localhost:3000/employee/login"

    @classmethod
    def from_env(cls) -> "OnboardingSettings":
        return cls(
            batch_size=_env_int("ONBOARDING_BATCH_SIZE", cls.batch_size),
            max_concurrent_batches=_env_int("ONBOARDING_MAX_CONCURRENT_BATCHES", cls.max_concurrent_batches),
            notification_workers=_env_int("ONBOARDING_NOTIFICATION_WORKERS", cls.notification_workers),
            batch_stagger_seconds=_env_float("ONBOARDING_BATCH_STAGGER_SECONDS", cls.batch_stagger_seconds),
            batch_max_attempts=_env_int("ONBOARDING_BATCH_MAX_ATTEMPTS", cls.batch_max_attempts),
            batch_backoff_seconds=_env_float("ONBOARDING_BATCH_BACKOFF_SECONDS", cls.batch_backoff_seconds),
            final_write_attempts=_env_int("ONBOARDING_FINAL_WRITE_ATTEMPTS", cls.final_write_attempts),
            job_ttl_seconds=_env_int("ONBOARDING_JOB_TTL_SECONDS", cls.job_ttl_seconds),
            seconds_per_employee_estimate=_env_float(
                "ONBOARDING_SECONDS_PER_EMPLOYEE", cls.seconds_per_employee_estimate
            ),
            progress_interval=_env_int("ONBOARDING_PROGRESS_INTERVAL", cls.progress_interval),
            max_upload_bytes=_env_int("ONBOARDING_MAX_UPLOAD_BYTES", cls.max_upload_bytes),
            recommender_provider=_env_str("RECOMMENDER_PROVIDER", cls.recommender_provider).lower(),
            anthropic_api_key=_env_str("ANTHROPIC_API_KEY"),
            anthropic_base_url=_env_str("ANTHROPIC_BASE_URL", cls.anthropic_base_url).rstrip("/"),
            anthropic_model=_env_str("ANTHROPIC_MODEL", cls.anthropic_model),
            openai_api_key=_env_str("OPENAI_API_KEY"),
            openai_base_url=_env_str("OPENAI_BASE_URL", cls.openai_base_url),
            openai_model=_env_str("OPENAI_MODEL", cls.openai_model),
            recommender_timeout_seconds=_env_float("RECOMMENDER_TIMEOUT_SECONDS", cls.recommender_timeout_seconds),
            job_store_backend=_env_str("JOB_STORE_BACKEND", cls.job_store_backend).lower(),
            redis_url=_env_str("REDIS_URL", cls.redis_url),
            login_url=_env_str("EMPLOYEE_LOGIN_URL", cls.login_url),
        )
