from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    PROJECT_NAME: str = "Pulse Collector"
    API_PREFIX: str = "/api"
    ENVIRONMENT: str = "development"  # "development", "staging" or "production"

    # Storage
    DATABASE_URL: str = "sqlite:///./pulse.db"

    # Error tracking (disabled when empty)
    SENTRY_DSN: str = ""

    # Admission control (fixed windows)
    IP_RATE_LIMIT: int = 100
    IP_RATE_WINDOW_SECONDS: int = 60
    PROJECT_RATE_LIMIT: int = 1000
    PROJECT_RATE_WINDOW_SECONDS: int = 60
    RATE_LIMIT_SWEEP_SECONDS: int = 60

    # Sessions
    SESSION_TIMEOUT_SECONDS: int = 30 * 60
    SESSION_FINALIZE_INTERVAL_SECONDS: int = 300
    RUN_SCHEDULER: bool = True

    # Geo lookup: "none" answers Unknown for every address, "ipapi" queries GEO_API_URL
    GEO_PROVIDER: str = "none"
    GEO_API_URL: str = "https://ipapi.co/{ip}/json/"
    GEO_TIMEOUT_SECONDS: float = 2.0

    # Worker threads used for database writes
    THREADPOOL_MAX_WORKERS: int = 40

    # Force JSON log output outside production
    LOG_JSON: bool = False

    model_config = SettingsConfigDict(case_sensitive=True, env_file=".env", extra="ignore")


settings = Settings()
