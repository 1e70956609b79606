from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_JWT_SECRET = "orderflow-jwt-secret"
DEFAULT_MPESA_CALLBACK_TOKEN = "orderflow-mpesa-callback-token"
ALLOWED_APP_MODES = {"demo", "pilot", "production"}
MIN_SECRET_LENGTH = 32


class Settings(BaseSettings):
    app_name: str = "Orderflow Checkout Service"
    app_mode: str = Field(default="demo", validation_alias="ORDERFLOW_APP_MODE")

    database_url: str = Field(
        default="sqlite+pysqlite:///./test.db",
        validation_alias="ORDERFLOW_DATABASE_URL",
    )
    testing: bool = Field(default=False, validation_alias="ORDERFLOW_TESTING")
    auto_create_schema: bool = Field(default=True, validation_alias="ORDERFLOW_AUTO_CREATE_SCHEMA")
    require_migrations: bool = Field(
        default=False, validation_alias="ORDERFLOW_REQUIRE_MIGRATIONS"
    )
    cors_allowed_origins: str = "http://localhost:3000,http://localhost:5173"

    jwt_secret: str = DEFAULT_JWT_SECRET
    allowed_roles: str = "CUSTOMER,STAFF,ADMIN"

    payment_poll_interval_s: float = 3.0
    payment_poll_max_attempts: int = 20

    mpesa_mock_mode: bool = Field(default=True, validation_alias="ORDERFLOW_MPESA_MOCK_MODE")
    mpesa_base_url: str = "https://sandbox.safaricom.co.ke"
    mpesa_consumer_key: str = ""
    mpesa_consumer_secret: str = ""
    mpesa_shortcode: str = ""
    mpesa_passkey: str = ""
    mpesa_callback_url: str = ""
    mpesa_callback_token: str = Field(
        default=DEFAULT_MPESA_CALLBACK_TOKEN,
        validation_alias="MPESA_CALLBACK_TOKEN",
    )
    mpesa_account_prefix: str = "ORDER"
    mpesa_transaction_desc: str = "Order payment"
    mpesa_timeout_s: float = 10.0
    mpesa_max_retries: int = 2
    mpesa_backoff_s: float = 0.5
    mpesa_token_ttl_s: float = 3000.0

    resend_api_key: str = ""
    resend_base_url: str = "https://api.resend.com"
    email_from: str = "Orders <orders@example.com>"
    admin_email: str = "admin@example.com"
    email_timeout_s: float = 10.0
    store_name: str = "Orderflow Store"
    storefront_url: str = "http://localhost:5173"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    @field_validator("app_mode")
    @classmethod
    def validate_app_mode(cls, value: str) -> str:
        mode = value.lower().strip()
        if mode not in ALLOWED_APP_MODES:
            allowed = ", ".join(sorted(ALLOWED_APP_MODES))
            raise ValueError(f"ORDERFLOW_APP_MODE must be one of: {allowed}")
        return mode

    @field_validator("payment_poll_max_attempts")
    @classmethod
    def validate_poll_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("payment_poll_max_attempts must be >= 1")
        return value


settings = Settings()


def allowed_origins() -> list[str]:
    return [origin.strip() for origin in settings.cors_allowed_origins.split(",") if origin.strip()]


def allowed_roles_list() -> list[str]:
    return [value.strip() for value in settings.allowed_roles.split(",") if value.strip()]


def is_production_mode() -> bool:
    return settings.app_mode == "production"


def ensure_secure_runtime_settings() -> None:
    """Fail fast when production-like runtime uses insecure defaults."""
    if settings.testing:
        return
    if settings.jwt_secret == DEFAULT_JWT_SECRET:
        raise RuntimeError(
            "JWT_SECRET must be set to a non-default value when ORDERFLOW_TESTING is false"
        )
    if len(settings.jwt_secret) < MIN_SECRET_LENGTH:
        raise RuntimeError(
            "JWT_SECRET must be at least "
            f"{MIN_SECRET_LENGTH} characters when ORDERFLOW_TESTING is false"
        )
    if settings.mpesa_callback_token == DEFAULT_MPESA_CALLBACK_TOKEN:
        raise RuntimeError(
            "MPESA_CALLBACK_TOKEN must be set to a non-default value "
            "when ORDERFLOW_TESTING is false"
        )
    if not settings.mpesa_mock_mode and not all(
        (
            settings.mpesa_consumer_key,
            settings.mpesa_consumer_secret,
            settings.mpesa_shortcode,
            settings.mpesa_passkey,
            settings.mpesa_callback_url,
        )
    ):
        raise RuntimeError(
            "M-Pesa credentials are required when ORDERFLOW_MPESA_MOCK_MODE is false"
        )
    if is_production_mode() and settings.mpesa_mock_mode:
        raise RuntimeError("ORDERFLOW_MPESA_MOCK_MODE must be false in production mode")
    if is_production_mode() and _is_sqlite_url(settings.database_url):
        raise RuntimeError("ORDERFLOW_DATABASE_URL must use postgres in production mode")


def _is_sqlite_url(database_url: str) -> bool:
    value = database_url.strip().lower()
    return value.startswith("sqlite")
