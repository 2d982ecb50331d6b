from pydantic_settings import BaseSettings
from pydantic import Field, validator
from typing import Dict, List
import secrets


class Settings(BaseSettings):
    # Application settings
    APP_NAME: str = "Timetable Sync Backend"
    DEBUG: bool = False
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    LOG_LEVEL: str = "INFO"

    # Security settings
    JWT_SECRET_KEY: str = Field(default_factory=lambda: secrets.token_urlsafe(32))
    JWT_ALGORITHM: str = "HS256"

    # CORS settings
    ALLOWED_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]

    # Database settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./timetable.db"
    DATABASE_ECHO: bool = False

    # WebUntis settings
    UNTIS_HOST: str = "mese.webuntis.com"
    UNTIS_DEFAULT_SCHOOL: str = ""
    UNTIS_CLIENT_NAME: str = "timetable-sync"
    UNTIS_REQUEST_TIMEOUT_SECONDS: float = 20.0

    # Credential encryption (base64 encoded 256-bit AES-GCM keys by version)
    CREDENTIAL_KEYS: Dict[int, str] = {}

    # School-local timezone used for range normalization
    DEFAULT_TIMEZONE: str = "Europe/Berlin"

    # Timetable cache settings
    TIMETABLE_CACHE_TTL_SECONDS: int = 300
    TIMETABLE_MAX_AGE_DAYS: int = 45
    TIMETABLE_MAX_HISTORY_PER_RANGE: int = 2
    TIMETABLE_PRUNE_INTERVAL_HOURS: int = 6
    HOLIDAY_CACHE_TTL_HOURS: int = 6

    # Background scheduler settings
    WARMUP_INTERVAL_MINUTES: int = 30
    WARMUP_INITIAL_DELAY_SECONDS: int = 10
    WARMUP_BATCH_SIZE: int = 5
    WARMUP_ACTIVE_LOOKBACK_DAYS: int = 20
    WARMUP_MAX_USERS: int = 500
    TIMETABLE_CHECK_INTERVAL_MINUTES: int = 30
    UPCOMING_CHECK_INTERVAL_SECONDS: int = 60
    ABSENCE_CHECK_INTERVAL_MINUTES: int = 60
    ABSENCE_INITIAL_DELAY_SECONDS: int = 15
    ABSENCE_WINDOW_MONTHS: int = 3
    EXAM_REFRESH_INTERVAL_HOURS: int = 6
    EXAM_REFRESH_INITIAL_DELAY_SECONDS: int = 60
    EXAM_LOOKAHEAD_DAYS: int = 31
    NOTIFICATION_CLEANUP_INTERVAL_MINUTES: int = 60

    # Web Push (VAPID)
    WEB_PUSH_VAPID_PUBLIC_KEY: str = ""
    WEB_PUSH_VAPID_PRIVATE_KEY: str = ""
    WEB_PUSH_VAPID_SUBJECT: str = "mailto:admin@example.org"
    WEB_PUSH_TTL_SECONDS: int = 86400

    # Notification settings
    NOTIFICATION_LEGACY_DEDUPE_DAYS: int = 30
    UPCOMING_NOTIFICATION_EXPIRY_MINUTES: int = 60
    ACCESS_REQUEST_EXPIRY_DAYS: int = 7

    @validator("ALLOWED_ORIGINS", pre=True)
    def parse_origins(cls, v):
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v

    @validator("DATABASE_URL")
    def validate_database_url(cls, v):
        if not v:
            raise ValueError("DATABASE_URL is required")
        return v

    @validator("TIMETABLE_MAX_HISTORY_PER_RANGE")
    def validate_history(cls, v):
        if v < 1:
            raise ValueError("TIMETABLE_MAX_HISTORY_PER_RANGE must be at least 1")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
