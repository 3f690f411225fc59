from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    Payment service configuration.

    Values come from the environment, then `config.env` / `.env` at the
    repository root (or the current directory).
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # A full SQLAlchemy URL wins over the individual DB_* parts
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")
    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="tablepay", validation_alias="DB_USER")
    db_password: str = Field(default="tablepay", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="tablepay", validation_alias="DB_NAME")

    stripe_secret_key: str = Field(default="", validation_alias="STRIPE_SECRET_KEY")
    stripe_webhook_secret: str = Field(default="", validation_alias="STRIPE_WEBHOOK_SECRET")
    stripe_currency: str = Field(default="eur", validation_alias="STRIPE_CURRENCY")

    # Public URL of the diner/admin front-end, used for redirect links
    app_url: str = Field(default="http://localhost:5173", validation_alias="APP_URL")

    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")

    cors_origins: str = Field(default="*", validation_alias="CORS_ORIGINS")
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    checkout_rate_limit: int = Field(default=5, validation_alias="CHECKOUT_RATE_LIMIT")
    checkout_rate_window_seconds: int = Field(
        default=60, validation_alias="CHECKOUT_RATE_WINDOW_SECONDS"
    )
    checkout_attempt_retention_days: int = Field(
        default=7, validation_alias="CHECKOUT_ATTEMPT_RETENTION_DAYS"
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
