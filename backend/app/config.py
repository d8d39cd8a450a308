from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Banter API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    database_user: str = Field(default="banter", env="DB_USER")
    database_password: str = Field(default="banter", env="DB_PASSWORD")
    database_host: str = Field(default="db", env="DB_HOST")
    database_port: int = Field(default=3306, env="DB_PORT")
    database_name: str = Field(default="banter", env="DB_NAME")
    database_url_override: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="Full SQLAlchemy URL; takes precedence over the DB_* settings",
    )

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60 * 24 * 30, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    otp_length: int = Field(default=4, env="OTP_LENGTH", description="Number of digits in generated OTPs")
    otp_echo_enabled: bool = Field(
        default=False,
        env="OTP_ECHO_ENABLED",
        description="Return the plain OTP in the registration response (development only).",
    )

    message_encryption_key: str | None = Field(
        default=None,
        env="MESSAGE_ENCRYPTION_KEY",
        description="Base64 encoded AES key (16, 24 or 32 bytes) used to encrypt message bodies at rest.",
    )

    chat_history_default_limit: int = Field(default=25, env="CHAT_HISTORY_DEFAULT_LIMIT")
    chat_history_max_limit: int = Field(default=100, env="CHAT_HISTORY_MAX_LIMIT")
    chat_message_max_length: int = Field(default=4000, env="CHAT_MESSAGE_MAX_LENGTH")

    websocket_keepalive_timeout_seconds: float = Field(
        default=30, env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS"
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25, env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS"
    )
    websocket_outbound_queue_size: int = Field(
        default=256,
        env="WEBSOCKET_OUTBOUND_QUEUE_SIZE",
        description="Maximum number of pending outbound events per connection.",
    )

    push_notifications_enabled: bool = Field(
        default=False,
        env="PUSH_NOTIFICATIONS_ENABLED",
        description="Toggle push notifications for participants not viewing a chat.",
    )
    fcm_endpoint: AnyHttpUrl = Field(
        default="https://fcm.googleapis.com/fcm/send",
        env="FCM_ENDPOINT",
        description="Firebase Cloud Messaging HTTP endpoint.",
    )
    fcm_server_key: str | None = Field(default=None, env="FCM_SERVER_KEY")
    push_timeout_seconds: float = Field(default=5.0, env="PUSH_TIMEOUT_SECONDS")

    realtime_redis_url: str | None = Field(
        default=None,
        env="REALTIME_REDIS_URL",
        description="Redis URL used to fan realtime events out across instances.",
    )
    realtime_namespace: str = Field(default="banter.realtime", env="REALTIME_NAMESPACE")
    realtime_node_id: str | None = Field(default=None, env="REALTIME_NODE_ID")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("otp_length")
    @classmethod
    def ensure_otp_length(cls, value: int) -> int:
        if value < 4 or value > 8:
            raise ValueError("OTP length must be between 4 and 8 digits")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()
