import os

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    sqlalchemy_echo: bool
    db_drop_and_recreate: bool  # If True: drops all tables and recreates (dev mode)

    database_url: str
    cors_origins: list[str]

    auth_api_host: str
    auth_project_id: str
    auth_server_key: str

    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_price_basic: str | None = None
    stripe_price_pro: str | None = None
    stripe_test_mode_only: bool = False  # refuse live keys outside production

    app_base_url: str = "http://localhost:3000"  # checkout success/cancel + portal return

    # Self-hosting: set False to skip credit checks on extraction
    billing_enabled: bool = True
    billing_currency: str = "usd"
    basic_plan_credits: int = 10_000
    pro_plan_credits: int = 20_000
    basic_price_cents: int = 1000
    pro_price_cents: int = 2000

    # Recency window for treating a subscription deletion as part of a checkout replace.
    # Tunable safety margin, not a correctness guarantee.
    checkout_guard_window_seconds: int = 300
    checkout_intent_ttl_seconds: int = 24 * 60 * 60

    log_dir: str = "logs"
    log_level: str = "INFO"
    metrics_db_path: str | None = None

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=[os.getenv("ENV_FILE", ""), ".env"],
        extra="ignore",
        env_nested_delimiter="__",
    )


def get_settings() -> Settings:  # ty: ignore[invalid-return-type]
    """This is only used for dependency references, see __init__.py:

    app.dependency_overrides[get_settings] = lambda: Settings()  # type: ignore
    """
    ...
