from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PRODUCTION = "production"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"

AUTH_MODE_JWT = "jwt"
AUTH_MODE_TRUSTED = "trusted"


class Settings(BaseSettings):
    """
    Runtime configuration for the proposal approval service.
    Values come from the environment or a local .env file.
    """

    APP_NAME: str = "Proposal Approval API"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    ENVIRONMENT: str = ENV_DEVELOPMENT

    DATABASE_URL: str = "sqlite:///./proposals.db"

    # Bounded compare-and-swap attempts on the reviewer approval map
    APPROVAL_CAS_MAX_ATTEMPTS: int = 3

    # "jwt" verifies HS256 bearer tokens; "trusted" treats the bearer value as the
    # caller's email and is only meant for local development and tests.
    AUTH_MODE: str = AUTH_MODE_JWT
    AUTH_JWT_SECRET: Optional[str] = None
    AUTH_JWT_AUDIENCE: str = "authenticated"

    DOCUMENT_ANALYSIS_URL: Optional[str] = None
    DOCUMENT_ANALYSIS_TIMEOUT_SECONDS: float = 60.0

    NOTIFICATION_WEBHOOK_URL: Optional[str] = None
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == ENV_PRODUCTION


@lru_cache
def get_settings() -> Settings:
    """Returns a singleton instance of the application settings."""
    return Settings()
