import os
from datetime import timedelta, timezone

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict

load_dotenv()

PLACEHOLDER_API_KEY = "your-api-key-here"


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_path: str = "ptodo.db"
    guest_dir: str = ".guest"
    guest_task_limit: int = 5
    reminder_interval_seconds: float = 5.0
    # Oldest undelivered reminders are dropped past this many per user
    pending_reminder_limit: int = 50

    anthropic_api_key: str | None = None
    model: str = "claude-sonnet-4-5"

    # Users are assumed to live in one fixed timezone
    user_timezone_name: str = "Asia/Ho_Chi_Minh"
    user_utc_offset_hours: int = 7
    default_due_hour: int = 17

    telegram_bot_token: str | None = None
    calendar_event_minutes: int = 60

    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:5173"]

    @property
    def user_timezone(self) -> timezone:
        return timezone(timedelta(hours=self.user_utc_offset_hours), self.user_timezone_name)

    @property
    def has_api_key(self) -> bool:
        return bool(self.anthropic_api_key) and self.anthropic_api_key != PLACEHOLDER_API_KEY

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("PTODO_CORS_ORIGINS", "http://localhost:5173")
        return cls(
            database_path=os.getenv("PTODO_DATABASE_PATH", "ptodo.db"),
            guest_dir=os.getenv("PTODO_GUEST_DIR", ".guest"),
            guest_task_limit=_env_int("PTODO_GUEST_TASK_LIMIT", 5),
            reminder_interval_seconds=_env_float("PTODO_REMINDER_INTERVAL", 5.0),
            pending_reminder_limit=_env_int("PTODO_PENDING_REMINDER_LIMIT", 50),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY"),
            model=os.getenv("PTODO_MODEL", "claude-sonnet-4-5"),
            user_timezone_name=os.getenv("PTODO_USER_TIMEZONE", "Asia/Ho_Chi_Minh"),
            user_utc_offset_hours=_env_int("PTODO_USER_UTC_OFFSET", 7),
            default_due_hour=_env_int("PTODO_DEFAULT_DUE_HOUR", 17),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN"),
            calendar_event_minutes=_env_int("PTODO_CALENDAR_EVENT_MINUTES", 60),
            log_level=os.getenv("PTODO_LOG_LEVEL", "INFO"),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
        )
