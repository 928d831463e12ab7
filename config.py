import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        gemini_api_key: Optional[str],
        gemini_model: Optional[str],
        gemini_timeout_secs: float,
        model_cache_ttl_secs: int,
        resend_api_key: Optional[str],
        email_from: str,
        email_timeout_secs: float,
        budget_alert_threshold: float,
        recurring_throttle_limit: int,
        recurring_throttle_period_secs: int,
        job_max_retries: int,
        job_retry_base_secs: float,
        dispatch_interval_secs: int,
        dispatch_batch_size: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.gemini_timeout_secs = gemini_timeout_secs
        self.model_cache_ttl_secs = model_cache_ttl_secs
        self.resend_api_key = resend_api_key
        self.email_from = email_from
        self.email_timeout_secs = email_timeout_secs
        self.budget_alert_threshold = budget_alert_threshold
        self.recurring_throttle_limit = recurring_throttle_limit
        self.recurring_throttle_period_secs = recurring_throttle_period_secs
        self.job_max_retries = job_max_retries
        self.job_retry_base_secs = job_retry_base_secs
        self.dispatch_interval_secs = dispatch_interval_secs
        self.dispatch_batch_size = dispatch_batch_size


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("FINX_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _normalize_model(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    value = raw.strip()
    if value.startswith("models/"):
        value = value[len("models/") :]
    return value or None


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "finx.db"
    database_url = os.getenv("FINX_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("FINX_TIMEZONE", "UTC")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        gemini_api_key=os.getenv("GEMINI_API_KEY") or None,
        gemini_model=_normalize_model(os.getenv("GEMINI_MODEL")),
        gemini_timeout_secs=float(os.getenv("FINX_GEMINI_TIMEOUT_SECS", "30")),
        model_cache_ttl_secs=int(os.getenv("FINX_MODEL_CACHE_TTL_SECS", "600")),
        resend_api_key=os.getenv("RESEND_API_KEY") or None,
        email_from=os.getenv(
            "FINX_EMAIL_FROM", "Finance App <onboarding@resend.dev>"
        ),
        email_timeout_secs=float(os.getenv("FINX_EMAIL_TIMEOUT_SECS", "10")),
        budget_alert_threshold=float(os.getenv("FINX_BUDGET_ALERT_THRESHOLD", "80")),
        recurring_throttle_limit=int(
            os.getenv("FINX_RECURRING_THROTTLE_LIMIT", "10")
        ),
        recurring_throttle_period_secs=int(
            os.getenv("FINX_RECURRING_THROTTLE_PERIOD_SECS", "60")
        ),
        job_max_retries=int(os.getenv("FINX_JOB_MAX_RETRIES", "2")),
        job_retry_base_secs=float(os.getenv("FINX_JOB_RETRY_BASE_SECS", "1")),
        dispatch_interval_secs=int(os.getenv("FINX_DISPATCH_INTERVAL_SECS", "10")),
        dispatch_batch_size=int(os.getenv("FINX_DISPATCH_BATCH_SIZE", "100")),
    )
