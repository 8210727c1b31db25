import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        session_secret: str,
        google_client_id: Optional[str],
        google_client_secret: Optional[str],
        google_redirect_uri: str,
        vapid_public_key: Optional[str],
        vapid_private_key: Optional[str],
        vapid_subject: str,
        http_timeout_secs: float,
        notify_horizon_days: int,
        notify_dedup_hours: int,
        sweep_interval_minutes: int,
        seed_username: str,
        seed_password: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.session_secret = session_secret
        self.google_client_id = google_client_id
        self.google_client_secret = google_client_secret
        self.google_redirect_uri = google_redirect_uri
        self.vapid_public_key = vapid_public_key
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject
        self.http_timeout_secs = http_timeout_secs
        self.notify_horizon_days = notify_horizon_days
        self.notify_dedup_hours = notify_dedup_hours
        self.sweep_interval_minutes = sweep_interval_minutes
        self.seed_username = seed_username
        self.seed_password = seed_password

    @property
    def calendar_enabled(self) -> bool:
        return bool(self.google_client_id and self.google_client_secret)

    @property
    def push_enabled(self) -> bool:
        return bool(self.vapid_public_key and self.vapid_private_key)


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("MOVEIN_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "movein.db"
    database_url = os.getenv("MOVEIN_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("MOVEIN_TIMEZONE", "UTC")
    session_secret = os.getenv(
        "MOVEIN_SESSION_SECRET",
        "3f1c0a9d7e5b42c8a6d1f0e9b8c7a6d5e4f3a2b1c0d9e8f7a6b5c4d3e2f1a0b9",
    )
    google_client_id = os.getenv("MOVEIN_GOOGLE_CLIENT_ID")
    google_client_secret = os.getenv("MOVEIN_GOOGLE_CLIENT_SECRET")
    google_redirect_uri = os.getenv(
        "MOVEIN_GOOGLE_REDIRECT_URI",
        "http://localhost:5000/api/auth/google/callback",
    )
    vapid_public_key = os.getenv("MOVEIN_VAPID_PUBLIC_KEY")
    vapid_private_key = os.getenv("MOVEIN_VAPID_PRIVATE_KEY")
    vapid_subject = os.getenv("MOVEIN_VAPID_SUBJECT", "mailto:admin@example.org")
    http_timeout_secs = float(os.getenv("MOVEIN_HTTP_TIMEOUT_SECS", "10"))
    notify_horizon_days = int(os.getenv("MOVEIN_NOTIFY_HORIZON_DAYS", "5"))
    notify_dedup_hours = int(os.getenv("MOVEIN_NOTIFY_DEDUP_HOURS", "24"))
    sweep_interval_minutes = int(os.getenv("MOVEIN_SWEEP_INTERVAL_MINUTES", "60"))
    seed_username = os.getenv("MOVEIN_SEED_USERNAME", "Carlos")
    seed_password = os.getenv("MOVEIN_SEED_PASSWORD", "contrasena")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        session_secret=session_secret,
        google_client_id=google_client_id,
        google_client_secret=google_client_secret,
        google_redirect_uri=google_redirect_uri,
        vapid_public_key=vapid_public_key,
        vapid_private_key=vapid_private_key,
        vapid_subject=vapid_subject,
        http_timeout_secs=http_timeout_secs,
        notify_horizon_days=notify_horizon_days,
        notify_dedup_hours=notify_dedup_hours,
        sweep_interval_minutes=sweep_interval_minutes,
        seed_username=seed_username,
        seed_password=seed_password,
    )
