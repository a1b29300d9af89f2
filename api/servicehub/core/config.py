"""Application configuration from environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_name: str = "ServiceHub"
    debug: bool = True
    secret_key: str = "dev-secret-change-in-production"
    api_prefix: str = "/api/v1"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://servicehub:servicehub@db:5432/servicehub"
    database_echo: bool = False

    # Redis (Celery broker for notification delivery)
    redis_url: str = "redis://redis:6379/0"

    # Auth (tokens are issued elsewhere; we only decode them)
    jwt_algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    # Email / SMTP
    smtp_host: str = "localhost"
    smtp_port: int = 1025
    smtp_from: str = "noreply@servicehub.in"
    frontend_url: str = "http://localhost:5173"

    # Payment gateway (Razorpay). Empty keys leave the adapter unconfigured.
    gateway_key_id: str = ""
    gateway_key_secret: str = ""
    gateway_webhook_secret: str = ""
    gateway_base_url: str = "https://api.razorpay.com/v1"
    gateway_timeout_seconds: float = 10.0
    gateway_currency: str = "INR"

    # Pricing
    tax_rate: float = 0.18
    platform_fee_rate: float = 0.05

    model_config = {"env_prefix": "SH_", "env_file": ".env", "extra": "ignore"}


settings = Settings()
