"""
Runtime configuration, loaded once from the environment (and .env if present).
"""
from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEV_SESSION_SECRET = "dev-only-session-secret-change-me"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    environment: Literal["development", "testing", "production"] = "development"
    session_secret: SecretStr = SecretStr(DEV_SESSION_SECRET)
    session_max_age: int = Field(default=60 * 60 * 24 * 7, ge=60)

    # WebAuthn relying party
    rp_name: str = Field(default="Athena Forum", validation_alias=AliasChoices("webauthn_rp_name", "rp_name"))
    rp_id: str = Field(default="localhost", validation_alias=AliasChoices("webauthn_rp_id", "rp_id"))
    origin: str = Field(default="http://localhost:3000", validation_alias=AliasChoices("webauthn_origin", "origin"))
    challenge_ttl_seconds: int = Field(default=300, ge=1)

    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"

    chat_cache_max_entries: int = Field(default=1000, ge=1)
    chat_cache_ttl_seconds: int = Field(default=3600, ge=1)

    # Comma-separated
    allowed_origins: str = "http://localhost:3000"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def allowed_origins_list(self) -> list[str]:
        return [o.strip() for o in self.allowed_origins.split(",") if o.strip()]

    @model_validator(mode="after")
    def require_real_secret_in_production(self) -> "Settings":
        secret = self.session_secret.get_secret_value()
        if self.is_production and (not secret or secret == DEV_SESSION_SECRET):
            raise ValueError("SESSION_SECRET must be set in production")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
