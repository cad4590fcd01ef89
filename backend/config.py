"""Application configuration using pydantic-settings."""

from typing import Any

from pydantic import field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from services.credential_manager import CREDENTIAL_KEYS, get_credential


class KeychainSettingsSource(PydanticBaseSettingsSource):
    """Load credential fields from the OS keychain via ``keyring``.

    Only fields whose uppercase name appears in
    :data:`~services.credential_manager.CREDENTIAL_KEYS` are looked up.
    All other fields return ``None`` so the next source in the chain
    handles them.
    """

    def get_field_value(
        self, field: FieldInfo, field_name: str
    ) -> tuple[Any, str, bool]:
        env_name = field_name.upper()
        if env_name not in CREDENTIAL_KEYS:
            return None, field_name, False
        value = get_credential(env_name)
        return value, field_name, False

    def __call__(self) -> dict[str, Any]:
        d: dict[str, Any] = {}
        for field_name, field_info in self.settings_cls.model_fields.items():
            value, key, is_complex = self.get_field_value(field_info, field_name)
            if value is not None:
                d[key] = value
        return d


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            KeychainSettingsSource(settings_cls),
            env_settings,
            dotenv_settings,
            file_secret_settings,
        )

    # Database
    DATABASE_URL: str = "sqlite:///./banklink.db"

    # Open Banking aggregator (credentials may live in the keychain)
    AGGREGATOR_CLIENT_ID: str = ""
    AGGREGATOR_CLIENT_SECRET: str = ""
    AGGREGATOR_TOKEN_URL: str = "https://oauth.tarabutgateway.io/sandbox/token"
    AGGREGATOR_API_URL: str = "https://api.sandbox.tarabutgateway.io"
    AGGREGATOR_REDIRECT_URI: str = "http://localhost:8000/api/bank-link/callback"
    AGGREGATOR_TIMEOUT_SECONDS: float = 30.0

    # Where the browser lands after the callback
    FRONTEND_URL: str = "http://localhost:5173"

    # Ledger sync
    INITIAL_SYNC_LOOKBACK_DAYS: int = 90
    TRANSACTION_BATCH_SIZE: int = 50
    TOKEN_REFRESH_BUFFER_MINUTES: int = 5
    # Scheduled sync skips connections whose accounts were all synced this recently
    SCHEDULED_SYNC_STALE_HOURS: int = 4

    # Audit trail
    AUDIT_LOGGING_ENABLED: bool = True

    # Cookie set by the authentication layer
    SESSION_COOKIE_NAME: str = "banklink_owner"

    @field_validator("TRANSACTION_BATCH_SIZE")
    @classmethod
    def validate_batch_size(cls, v: int) -> int:
        """Reject batch sizes that would stall the upsert loop."""
        if v < 1:
            raise ValueError(f"TRANSACTION_BATCH_SIZE must be >= 1, got {v}")
        return v

    @field_validator("FRONTEND_URL", mode="before")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize LOG_LEVEL to an uppercase Python logging level."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"LOG_LEVEL must be one of {valid}, got {v!r}")
        return v.upper()

    # App settings
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"


settings = Settings()
