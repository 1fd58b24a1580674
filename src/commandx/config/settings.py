"""Configuration settings for CommandX back-office jobs."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class FlatSettings(BaseSettings):
    """Flat settings read from environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Hosted database / storage
    supabase_url: str = Field(
        default="http://localhost:54321", validation_alias="SUPABASE_URL"
    )
    supabase_service_role_key: SecretStr = Field(
        ..., validation_alias="SUPABASE_SERVICE_ROLE_KEY"
    )
    store_timeout: float = Field(default=30.0, validation_alias="STORE_TIMEOUT")
    store_max_retries: int = Field(default=3, validation_alias="STORE_MAX_RETRIES")

    # QuickBooks Online
    quickbooks_client_id: str = Field(..., validation_alias="QUICKBOOKS_CLIENT_ID")
    quickbooks_client_secret: SecretStr = Field(
        ..., validation_alias="QUICKBOOKS_CLIENT_SECRET"
    )
    quickbooks_api_base: str = Field(
        default="https://quickbooks.api.intuit.com/v3/company",
        validation_alias="QUICKBOOKS_API_BASE",
    )
    quickbooks_auth_url: str = Field(
        default="https://appcenter.intuit.com/connect/oauth2",
        validation_alias="QUICKBOOKS_AUTH_URL",
    )
    quickbooks_token_url: str = Field(
        default="https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer",
        validation_alias="QUICKBOOKS_TOKEN_URL",
    )
    quickbooks_minor_version: str = Field(
        default="65", validation_alias="QUICKBOOKS_MINOR_VERSION"
    )
    quickbooks_timeout: float = Field(default=30.0, validation_alias="QUICKBOOKS_TIMEOUT")
    quickbooks_max_retries: int = Field(default=3, validation_alias="QUICKBOOKS_MAX_RETRIES")

    # Payroll defaults (company_settings rows override the first two)
    default_overtime_multiplier: float = Field(
        default=1.5, validation_alias="DEFAULT_OVERTIME_MULTIPLIER"
    )
    default_weekly_overtime_threshold: float = Field(
        default=40.0, validation_alias="DEFAULT_WEEKLY_OVERTIME_THRESHOLD"
    )
    default_holiday_multiplier: float = Field(
        default=2.0, validation_alias="DEFAULT_HOLIDAY_MULTIPLIER"
    )

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO", validation_alias="LOG_LEVEL"
    )
    log_format: Literal["json", "console"] = Field(
        default="console", validation_alias="LOG_FORMAT"
    )


@lru_cache
def get_settings() -> FlatSettings:
    """Get cached settings instance."""
    return FlatSettings()
