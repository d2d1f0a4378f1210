from __future__ import annotations

import re

import httpx
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_REQUIRED_FIELDS = {
    "db_host": "DB_HOST",
    "db_name": "DB_NAME",
    "db_user": "DB_USER",
    "db_password": "DB_PASSWORD",
    "webhook_url": "WEBHOOK_URL",
}
_PLACEHOLDER_MARKERS = ("your_", "your-webhook-endpoint.com")
_PLACEHOLDER_VALUES = {"n8n_user", "your_password"}
_HEADER_NAME_PATTERN = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")
_HEADER_VALUE_PATTERN = re.compile(r"^[\x20-\x7e\t]*$")


def _sql_quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _is_placeholder(field_name: str, value: str) -> bool:
    if any(marker in value for marker in _PLACEHOLDER_MARKERS):
        return True
    if value in _PLACEHOLDER_VALUES:
        return True
    return field_name != "db_host" and "localhost" in value


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_host: str = Field(alias="DB_HOST")
    db_port: int = Field(alias="DB_PORT")
    db_name: str = Field(alias="DB_NAME")
    db_user: str = Field(alias="DB_USER")
    db_password: str = Field(alias="DB_PASSWORD")
    db_ssl: bool = Field(default=False, alias="DB_SSL")
    connect_timeout_s: int = Field(default=10, alias="CONNECT_TIMEOUT_S")

    webhook_url: str = Field(alias="WEBHOOK_URL")
    webhook_timeout_ms: int = Field(default=10000, alias="WEBHOOK_TIMEOUT")
    webhook_auth_header: str | None = Field(default=None, alias="WEBHOOK_AUTH_HEADER")
    webhook_auth_value: str | None = Field(default=None, alias="WEBHOOK_AUTH_VALUE")

    max_reconnect_attempts: int = Field(default=10, alias="MAX_RECONNECT_ATTEMPTS")
    reconnect_delay_ms: int = Field(default=5000, alias="RECONNECT_DELAY")

    debug: bool = Field(default=False, alias="DEBUG")

    @field_validator("db_host", "db_name", "db_user", "db_password", "webhook_url")
    @classmethod
    def _strip_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("must not be blank")
        return value

    @field_validator("db_port")
    @classmethod
    def _validate_port(cls, value: int) -> int:
        if value < 1 or value > 65535:
            raise ValueError("DB_PORT must be between 1 and 65535")
        return value

    @field_validator("webhook_url")
    @classmethod
    def _validate_webhook_url(cls, value: str) -> str:
        try:
            url = httpx.URL(value)
        except httpx.InvalidURL as exc:
            raise ValueError(f"WEBHOOK_URL is not a valid URL: {exc}") from exc
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError("WEBHOOK_URL must be an absolute http(s) URL")
        return value

    @field_validator("webhook_timeout_ms")
    @classmethod
    def _validate_webhook_timeout(cls, value: int) -> int:
        if value < 1:
            raise ValueError("WEBHOOK_TIMEOUT must be > 0")
        return value

    @field_validator("max_reconnect_attempts")
    @classmethod
    def _validate_reconnect_attempts(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MAX_RECONNECT_ATTEMPTS must be >= 1")
        return value

    @field_validator("reconnect_delay_ms")
    @classmethod
    def _validate_reconnect_delay(cls, value: int) -> int:
        if value < 0:
            raise ValueError("RECONNECT_DELAY must be >= 0")
        return value

    @field_validator("webhook_auth_header", "webhook_auth_value")
    @classmethod
    def _blank_as_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value

    @field_validator("webhook_auth_header")
    @classmethod
    def _validate_auth_header_name(cls, value: str | None) -> str | None:
        if value is not None and not _HEADER_NAME_PATTERN.fullmatch(value):
            raise ValueError("WEBHOOK_AUTH_HEADER must be a valid ASCII HTTP header name")
        return value

    @field_validator("webhook_auth_value")
    @classmethod
    def _validate_auth_header_value(cls, value: str | None) -> str | None:
        if value is not None and not _HEADER_VALUE_PATTERN.fullmatch(value):
            raise ValueError(
                "WEBHOOK_AUTH_VALUE must contain only printable ASCII characters"
            )
        return value

    @model_validator(mode="after")
    def _reject_placeholders(self) -> Settings:
        placeholders = [
            env_name
            for field_name, env_name in _REQUIRED_FIELDS.items()
            if _is_placeholder(field_name, getattr(self, field_name))
        ]
        if placeholders:
            raise ValueError(
                "placeholder values must be replaced with real configuration: "
                + ", ".join(placeholders)
            )
        return self

    @property
    def postgres_conninfo(self) -> str:
        sslmode = "require" if self.db_ssl else "disable"
        # Keepalives surface a silently dropped server as a read error on the LISTEN socket.
        return (
            f"host={self.db_host} port={self.db_port} user={_sql_quote(self.db_user)} "
            f"password={_sql_quote(self.db_password)} dbname={_sql_quote(self.db_name)} "
            f"sslmode={sslmode} connect_timeout={self.connect_timeout_s} "
            "keepalives=1 keepalives_idle=30 keepalives_interval=10 keepalives_count=3"
        )

    @property
    def webhook_timeout_s(self) -> float:
        return self.webhook_timeout_ms / 1000.0

    @property
    def reconnect_delay_s(self) -> float:
        return self.reconnect_delay_ms / 1000.0

    @property
    def auth_headers(self) -> dict[str, str]:
        if self.webhook_auth_header and self.webhook_auth_value:
            return {self.webhook_auth_header: self.webhook_auth_value}
        return {}
