import os
from pydantic_settings import BaseSettings
from dotenv import load_dotenv

load_dotenv()

class Settings(BaseSettings):
    APP_NAME: str = "Deadline Reminders"
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    # Database
    MONGO_URI: str = os.getenv("MONGO_URI", "mongodb://localhost:27017")
    DB_NAME: str = os.getenv("DB_NAME", "todo")

    # Scheduler
    ENABLE_SCHEDULER: bool = os.getenv("ENABLE_SCHEDULER", "false").lower() == "true"
    REMINDER_INTERVAL_MINUTES: int = 1
    OVERDUE_INTERVAL_MINUTES: int = 30
    WATER_INTERVAL_MINUTES: int = 10
    TOKEN_REFRESH_INTERVAL_MINUTES: int = 15
    GENERATION_HOUR: int = 0 # Local hour in REMINDER_TIMEZONE

    # Timezone used for quiet hours, water slots and "today" of the generator
    REMINDER_TIMEZONE: str = os.getenv("REMINDER_TIMEZONE", "UTC")
    QUIET_HOURS_START: int = 22
    QUIET_HOURS_END: int = 9

    # Optional bearer token required by the /cron trigger endpoints
    CRON_SECRET: str = os.getenv("CRON_SECRET", "")

    # Web Push (VAPID)
    VAPID_PRIVATE_KEY: str = os.getenv("VAPID_PRIVATE_KEY", "")
    VAPID_SUBJECT: str = os.getenv("VAPID_SUBJECT", "mailto:todo-app@example.com")
    NOTIFICATION_ICON: str = "/icon-192.png"

    # Reminder Configuration
    OVERDUE_REMINDER_INTERVAL_HOURS: int = 4
    # Water reminder slots (hour in 24h format) - 9am, 12pm, 2pm, 4pm
    WATER_REMINDER_HOURS: list = [9, 12, 14, 16]
    WATER_REMINDER_WINDOW_MINUTES: int = 5
    WATER_REMINDER_LOOKBACK_HOURS: int = 2

    # Google OAuth
    GOOGLE_CLIENT_ID: str = os.getenv("GOOGLE_CLIENT_ID", "")
    GOOGLE_CLIENT_SECRET: str = os.getenv("GOOGLE_CLIENT_SECRET", "")
    GOOGLE_TOKEN_URI: str = "https://oauth2.googleapis.com/token"
    TOKEN_REFRESH_BUFFER_MINUTES: int = 5
    TOKEN_REFRESH_MAX_ATTEMPTS: int = 3
    TOKEN_REFRESH_BASE_DELAY_SECONDS: float = 1.0

    # Task Generation
    COMMON_TASK_TARGET: int = 4
    TASK_LOOKAHEAD_DAYS: int = 30

    # Pydantic Settings Config
    model_config = {"env_file": ".env", "extra": "ignore"}

settings = Settings()
