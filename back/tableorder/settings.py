from decimal import Decimal
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    App configuration.

    This project uses `config.env` (non-dot env file) because some environments
    block creating `.env*` files. If you do have a `.env`, it will also be read.
    """

    model_config = SettingsConfigDict(
        # Prefer reading env files from the repository root, regardless of CWD.
        # Also allow local relative paths for flexibility.
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = Field(default="development", validation_alias="ENVIRONMENT")

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="pos", validation_alias="DB_USER")
    db_password: str = Field(default="pos", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="pos", validation_alias="DB_NAME")
    database_url_override: str | None = Field(default=None, validation_alias="DATABASE_URL")

    secret_key: str = Field(default="CHANGE_THIS_IN_PRODUCTION", validation_alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", validation_alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    # Table sessions
    session_cookie_name: str = Field(default="table_session", validation_alias="SESSION_COOKIE_NAME")
    session_ttl_hours: int = Field(default=4, validation_alias="SESSION_TTL_HOURS")
    cart_expiry_hours: int = Field(default=24, validation_alias="CART_EXPIRY_HOURS")

    # Payments
    usd_vnd_rate: Decimal = Field(default=Decimal("25000"), validation_alias="USD_VND_RATE")
    payment_expiry_minutes: int = Field(default=15, validation_alias="PAYMENT_EXPIRY_MINUTES")
    payment_warning_seconds: int = Field(default=120, validation_alias="PAYMENT_WARNING_SECONDS")
    stripe_secret_key: str = Field(default="", validation_alias="STRIPE_SECRET_KEY")
    stripe_publishable_key: str = Field(default="", validation_alias="STRIPE_PUBLISHABLE_KEY")
    stripe_currency: str = Field(default="usd", validation_alias="STRIPE_CURRENCY")
    sepay_webhook_secret: str = Field(default="", validation_alias="SEPAY_WEBHOOK_SECRET")

    # Realtime (empty REDIS_URL disables publishing)
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    api_url: str = Field(default="http://localhost:8020", validation_alias="API_URL")

    frontend_url: str = Field(default="http://localhost:3000", validation_alias="FRONTEND_URL")

    # CORS configuration
    cors_origins: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS"
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # SQLModel uses SQLAlchemy under the hood; this uses the psycopg driver (v3).
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
