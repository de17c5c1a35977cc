"""
Server configuration loaded from E2E_* environment variables.
"""

from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_SECRET = "change-me-in-production"


class Settings(BaseSettings):
    """Issuer, directory and relay configuration"""

    # Database
    database_url: str = "sqlite+aiosqlite:///./chat.db"

    # Tokens
    jwt_secret: str = DEFAULT_SECRET
    jwt_algorithm: str = "HS256"
    session_token_minutes: int = 60
    scoped_token_minutes: int = 15

    # Local auth: "open" accepts any user id, "password" requires an account
    local_auth_mode: Literal["open", "password"] = "open"

    # Public identifier handed to clients alongside transport credentials
    transport_api_key: str = "local-relay"
    default_role: str = "user"

    # Server
    environment: str = "development"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(env_prefix="E2E_")

    @model_validator(mode="after")
    def validate_settings(self):
        """Refuse the default secret outside development and cap token lifetimes."""
        if self.environment != "development" and self.jwt_secret == DEFAULT_SECRET:
            raise ValueError("E2E_JWT_SECRET must be set outside development")
        if not 0 < self.scoped_token_minutes <= 24 * 60:
            raise ValueError("scoped_token_minutes must be between 1 and 1440")
        if not 0 < self.session_token_minutes <= 24 * 60:
            raise ValueError("session_token_minutes must be between 1 and 1440")
        return self


settings = Settings()
