"""
Configuration management using Pydantic Settings
Handles environment variables and validation
"""
from functools import lru_cache
from typing import Optional

from pydantic import ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Environment
    environment: str = Field(default="development")
    debug: bool = Field(default=False)
    testing: bool = Field(default=False)

    # Application
    app_name: str = "OneReport"
    app_version: str = "0.1.0"
    app_url: str = Field(default="http://localhost:3000", description="Public URL of the web app (redirect pages)")
    api_base_url: str = Field(default="http://localhost:8000", description="Public URL of this API (gateway callbacks)")

    # Database
    database_url: str = Field(default="sqlite:///./onereport.db")
    database_echo: bool = Field(default=False)

    # Payment gateway (PayU)
    payu_mode: str = Field(default="test")
    payu_merchant_key: str = Field(default="")
    payu_merchant_salt: Optional[SecretStr] = Field(default=None)

    # Billing
    subscription_period_months: int = Field(default=1, ge=1, le=24)
    invoice_allocation_max_retries: int = Field(default=5, ge=1)

    # Deferred invoice/email work
    deferred_queue_size: int = Field(default=100, ge=1)
    deferred_workers: int = Field(default=2, ge=1)
    deferred_shutdown_timeout: float = Field(default=10.0, ge=0)

    # Email settings
    sendgrid_api_key: Optional[SecretStr] = Field(default=None)
    from_email: str = Field(default="noreply@oneclientreport.com")
    from_name: str = Field(default="One Client Report")
    support_email: str = Field(default="support@oneclientreport.com")

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="json")  # json or text

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("payu_mode")
    @classmethod
    def validate_payu_mode(cls, v):
        if v not in ("test", "production"):
            raise ValueError('PAYU_MODE must be either "test" or "production"')
        return v

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, v, info):
        if info.data.get("testing") and not v.startswith("sqlite"):
            # Force SQLite for testing
            return "sqlite:///./test.db"
        return v

    @model_validator(mode="after")
    def validate_production_settings(self):
        """Validate production-specific settings after all fields are set"""
        if self.environment == "production":
            if not self.payu_merchant_key:
                raise ValueError("PAYU_MERCHANT_KEY is required in production")
            if not self.payu_merchant_salt or not self.payu_merchant_salt.get_secret_value():
                raise ValueError("PAYU_MERCHANT_SALT is required in production")
            if self.payu_mode != "production":
                raise ValueError("Production environment must use PAYU_MODE=production")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def email_enabled(self) -> bool:
        return bool(self.sendgrid_api_key and self.sendgrid_api_key.get_secret_value())

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra environment variables
        frozen=True,
    )

    def model_dump(self, **kwargs):
        """Override to mask sensitive fields when serializing"""
        data = super().model_dump(**kwargs)

        sensitive_fields = [
            "payu_merchant_key",
            "payu_merchant_salt",
            "sendgrid_api_key",
        ]

        for field in sensitive_fields:
            if field in data and data[field]:
                if hasattr(data[field], "get_secret_value"):
                    value = data[field].get_secret_value()
                else:
                    value = str(data[field])

                # Keep first 4 chars for identification
                if len(value) > 4:
                    data[field] = value[:4] + "*" * (len(value) - 4)
                else:
                    data[field] = "*" * len(value)

        return data


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


# Global settings instance
settings = get_settings()
