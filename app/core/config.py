from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ENV: str = "development"

    DATABASE_URL: str
    DB_ECHO: bool = False
    # dev convenience: create tables on startup instead of running migrations
    DB_CREATE_ALL: bool = False

    JWT_SECRET: str
    JWT_ACCESS_MINUTES: int = 60
    JWT_ALG: str = "HS256"
    AUTH_COOKIE_NAME: str = "token"

    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_MAX_NETWORK_RETRIES: int = 2
    PAYMENT_CURRENCY: str = "usd"
    GATEWAY_TIMEOUT_SECONDS: float = 15.0

    FRONTEND_URL: str = "http://localhost:3000"
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

    STALE_ORDER_MINUTES: int = 25
    ORDER_SWEEP_INTERVAL_SECONDS: int = 600
    ORDER_SWEEP_ENABLED: bool = True

    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"


settings = Settings()
