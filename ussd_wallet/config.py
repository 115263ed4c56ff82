"""
Application configuration management using Pydantic Settings.
All settings are loaded from environment variables (or .env).

Production refuses to start with the development OTP secret or without
webhook secrets for the registered providers.
"""

from decimal import Decimal
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEVELOPMENT_OTP_SECRET = "development-otp-secret-change-in-production"


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Database Configuration
    # =========================================================================
    postgres_user: str = Field(default="wallet_user")
    postgres_password: str = Field(default="wallet_password")
    postgres_db: str = Field(default="wallet_db")
    postgres_host: str = Field(default="localhost")
    postgres_port: int = Field(default=5432)
    database_url_override: str = Field(default="")

    @property
    def database_url(self) -> str:
        """Construct PostgreSQL connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+psycopg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    # =========================================================================
    # Redis (sessions, OTPs, auth markers, rate counters)
    # =========================================================================
    redis_url: str = Field(default="redis://localhost:6379/0")

    # =========================================================================
    # USSD Gateway
    # =========================================================================
    app_name: str = Field(default="Zawadi Wallet")
    ussd_service_code: str = Field(default="*384*123#")
    session_ttl_seconds: int = Field(default=3600)
    ussd_request_limit: int = Field(default=60)
    ussd_request_window_seconds: int = Field(default=60)

    # =========================================================================
    # Authorization (OTP, auth sessions, recent auth)
    # =========================================================================
    otp_secret: str = Field(default=DEVELOPMENT_OTP_SECRET)
    otp_length: int = Field(default=6)
    otp_ttl_minutes: int = Field(default=5)
    otp_max_attempts: int = Field(default=3)
    otp_rate_limit: int = Field(default=3)
    otp_rate_window_seconds: int = Field(default=900)
    auth_session_ttl_minutes: int = Field(default=30)
    recent_auth_ttl_seconds: int = Field(default=600)

    # =========================================================================
    # Twilio SMS Configuration
    # =========================================================================
    twilio_account_sid: str = Field(default="")
    twilio_auth_token: str = Field(default="")
    twilio_sms_from: str = Field(default="")

    # =========================================================================
    # Custody Service (stable-value token and vaults)
    # =========================================================================
    custody_base_url: str = Field(default="http://localhost:8080")
    custody_api_key: str = Field(default="")
    custody_timeout_seconds: float = Field(default=30.0)
    custody_webhook_secret: str = Field(default="")
    custody_confirmations_required: int = Field(default=3)
    token_symbol: str = Field(default="USDX")
    treasury_address: str = Field(default="")
    vault_addresses: list[str] = Field(default_factory=list)

    # =========================================================================
    # Settlement Providers
    # =========================================================================
    provider_timeout_seconds: float = Field(default=30.0)
    default_collection_provider: Literal["kotanipay", "yellowcard"] = Field(
        default="yellowcard"
    )

    kotani_base_url: str = Field(default="https://sandbox-api.kotanipay.io/api/v3")
    kotani_api_key: str = Field(default="")
    kotani_integrator_id: str = Field(default="")
    kotani_webhook_secret: str = Field(default="")

    yellowcard_base_url: str = Field(default="https://sandbox.api.yellowcard.io")
    yellowcard_api_key: str = Field(default="")
    yellowcard_secret_key: str = Field(default="")
    yellowcard_webhook_secret: str = Field(default="")

    # =========================================================================
    # Business Rules
    # =========================================================================
    transfer_fee: Decimal = Field(default=Decimal("0.1"))
    min_transfer_amount: Decimal = Field(default=Decimal("1"))
    min_withdrawal_amount: Decimal = Field(default=Decimal("1"))
    min_investment_amount: Decimal = Field(default=Decimal("10"))
    max_retry_count: int = Field(default=3)

    # Minimum deposit per local currency
    deposit_minimums: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "KES": Decimal("10"),
            "UGX": Decimal("1000"),
            "TZS": Decimal("1000"),
            "GHS": Decimal("1"),
            "NGN": Decimal("100"),
            "ZAR": Decimal("10"),
        }
    )

    # Units of local currency per one token
    fx_rates: dict[str, Decimal] = Field(
        default_factory=lambda: {
            "KES": Decimal("130"),
            "UGX": Decimal("3700"),
            "TZS": Decimal("2600"),
            "GHS": Decimal("15.5"),
            "NGN": Decimal("1550"),
            "ZAR": Decimal("18.5"),
            "ZMW": Decimal("27"),
            "MWK": Decimal("1733.36"),
        }
    )

    # =========================================================================
    # Webhook Configuration
    # =========================================================================
    webhook_base_url: str = Field(default="")  # e.g., https://abc123.ngrok.io
    webhook_path_prefix: str = Field(default="/api/v1/webhooks")

    def provider_callback_url(self, provider: str) -> str:
        """Full callback URL for a settlement provider."""
        return f"{self.webhook_base_url}{self.webhook_path_prefix}/{provider}"

    # =========================================================================
    # Logging Configuration
    # =========================================================================
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO"
    )
    log_format: Literal["json", "console"] = Field(default="json")

    # =========================================================================
    # Application Settings
    # =========================================================================
    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @model_validator(mode="after")
    def check_production_secrets(self) -> "Settings":
        if not self.is_production:
            return self
        missing = [
            name
            for name in (
                "kotani_webhook_secret",
                "yellowcard_webhook_secret",
                "custody_webhook_secret",
            )
            if not getattr(self, name)
        ]
        if self.otp_secret == DEVELOPMENT_OTP_SECRET:
            missing.append("otp_secret")
        if missing:
            raise ValueError(f"Production requires: {', '.join(missing)}")
        return self


# Global settings instance
settings = Settings()
