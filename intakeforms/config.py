"""Engine configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings read from ``INTAKE_*`` environment variables or ``.env``."""

    model_config = SettingsConfigDict(env_prefix="INTAKE_", env_file=".env", extra="ignore")

    # Environment (dev exposes raw infra error details to callers)
    ENV: str = "dev"

    # Database
    DATABASE_URL: str = "sqlite:///./intake_forms.db"
    DB_TIMEOUT_SECONDS: int = 30
    DB_ECHO: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"

    # Synchronization client
    AUTOSAVE_INTERVAL_SECONDS: float = 30.0
    API_BASE_URL: str = "http://localhost:8000"
    API_TIMEOUT_SECONDS: float = 10.0

    @property
    def is_dev(self) -> bool:
        return self.ENV.lower() in ("dev", "development")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
