import logging

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    # Verification Configuration
    # 既定の公開鍵参照（PEM ファイルパス / PEM 文字列 / base64 DER）。空ならリクエスト側で必須
    verify_public_key: str = Field(default="", validation_alias="VERIFY_PUBLIC_KEY")

    # Registry Configuration
    registry_timeout_seconds: float = Field(default=30.0, gt=0)
    # 1 イメージあたりに読む署名レイヤー数の上限
    registry_max_signatures: int = Field(default=64, ge=1)
    # 署名ペイロード (blob) の同時取得数
    registry_fetch_concurrency: int = Field(default=8, ge=1)
    # 開発用途でのみ HTTP レジストリを許可するフラグ
    allow_insecure_registry: bool = Field(
        default=False, validation_alias="ALLOW_INSECURE_REGISTRY"
    )

    # CORS Configuration
    cors_origins: str = "http://localhost:3000"

    # Application Configuration
    log_level: str = "INFO"

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        """未知のレベル名は INFO にフォールバックする。"""
        normalized = value.strip().upper()
        if normalized not in _LOG_LEVELS:
            logger.warning("未知の LOG_LEVEL %r を INFO として扱います。", value)
            return "INFO"
        return normalized

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins from comma-separated string."""
        return [origin.strip() for origin in self.cors_origins.split(",")]


settings = Settings()
