"""
Configuration settings for the application
"""
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Normalized Plan IDs
PLAN_BETA_MONTHLY = "beta-monthly"
PLAN_BETA_YEARLY = "beta-yearly"
PLAN_REGULAR_MONTHLY = "regular-monthly"
PLAN_REGULAR_YEARLY = "regular-yearly"

# Trial / beta program constants
TRIAL_DURATION_DAYS = 14
MAX_BETA_USERS = 100
SUBSCRIPTION_MIRROR_DAYS = 365


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,  # Allow both field name and alias
        extra="ignore",
    )

    # Stripe billing configuration
    stripe_secret_key: Optional[str] = Field(default=None, alias="STRIPE_SECRET_KEY")
    stripe_publishable_key: Optional[str] = Field(default=None, alias="STRIPE_PUBLISHABLE_KEY")
    stripe_webhook_secret: Optional[str] = Field(default=None, alias="STRIPE_WEBHOOK_SECRET")

    # Stripe price identifiers for the four subscription plans
    stripe_beta_monthly_price_id: Optional[str] = Field(default=None, alias="STRIPE_BETA_MONTHLY_PRICE_ID")
    stripe_beta_yearly_price_id: Optional[str] = Field(default=None, alias="STRIPE_BETA_YEARLY_PRICE_ID")
    stripe_regular_monthly_price_id: Optional[str] = Field(default=None, alias="STRIPE_REGULAR_MONTHLY_PRICE_ID")
    stripe_regular_yearly_price_id: Optional[str] = Field(default=None, alias="STRIPE_REGULAR_YEARLY_PRICE_ID")

    # Identity provider (Supabase auth) configuration
    supabase_url: Optional[str] = Field(default=None, alias="SUPABASE_URL")
    supabase_jwt_secret: Optional[str] = Field(default=None, alias="SUPABASE_JWT_SECRET")
    jwt_audience: str = Field(default="authenticated", alias="JWT_AUDIENCE")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")

    # Rate limiting (defaults: 100 requests per 15 minutes per IP)
    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")
    rate_limit_max_requests: int = Field(default=100, alias="RATE_LIMIT_MAX_REQUESTS")
    rate_limit_window_seconds: int = Field(default=900, alias="RATE_LIMIT_WINDOW_SECONDS")

    # CORS configuration
    allowed_origins: str = Field(
        default="http://localhost:3000,http://localhost:8081,http://localhost:19006",
        alias="ALLOWED_ORIGINS",
    )

    # Render.com deployment configuration
    render: Optional[str] = Field(default=None, alias="RENDER")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="./logs", alias="LOG_DIR")

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]


# Instantiate settings object
settings = Settings()

LOGS_DIR = Path(settings.log_dir)

# Determine if we're in production mode
IS_PRODUCTION = bool(settings.render) or bool(settings.env and settings.env.lower() == "production")
