from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App/Base URL used in email links
    FRONTEND_URL: str = "http://localhost:5173"
    APP_NAME: str = "Starter Kit"

    # Email (SMTP). Leave SMTP_HOST empty to disable sending.
    SMTP_HOST: str = ""
    SMTP_PORT: int = 587
    SMTP_USER: str = ""
    SMTP_PASSWORD: str = ""
    SMTP_FROM: str = ""
    SMTP_START_TLS: bool = True
    EMAIL_DEV_MODE: bool = False  # log instead of sending

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_PREMIUM_PRICE_ID: str = ""  # maps to the "pro" plan
    STRIPE_ENTERPRISE_PRICE_ID: str = ""

    # Logging
    LOG_LEVEL: str = "INFO"  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    LOG_JSON: bool = True
    LOG_FILE: str = "logs/app.log"
    LOG_MAX_BYTES: int = 5_000_000  # 5 MB
    LOG_BACKUP_COUNT: int = 5

    # AWS S3 Storage (optional; local filesystem if not configured)
    AWS_REGION: str = ""
    AWS_ACCESS_KEY_ID: str = ""  # Optional; uses IAM role on EC2
    AWS_SECRET_ACCESS_KEY: str = ""  # Optional; uses IAM role on EC2
    AWS_S3_BUCKET: str = ""  # If empty, uses local filesystem

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()

# SMTP credentials without a host are almost always a typo in .env
if (settings.SMTP_USER or settings.SMTP_PASSWORD) and not settings.SMTP_HOST:
    import warnings

    warnings.warn("SMTP_USER/SMTP_PASSWORD set but SMTP_HOST is empty; email sending is disabled.")
