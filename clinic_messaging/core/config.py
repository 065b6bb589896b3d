from __future__ import annotations

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    storage_backend: Literal["mongo", "memory"] = Field(default="mongo", validation_alias="STORAGE_BACKEND")
    mongo_url: str = Field(default="mongodb://localhost:27017", validation_alias="MONGO_URL")
    mongo_db_name: str = Field(default="clinic", validation_alias="MONGO_DB_NAME")
    # multi-document transactions need a replica set or sharded cluster
    mongo_transactions: bool = Field(default=False, validation_alias="MONGO_TRANSACTIONS")

    jwt_secret: str = Field(default="change-me", validation_alias="JWT_SECRET")
    jwt_algorithm: str = Field(default="HS256", validation_alias="JWT_ALGORITHM")
    jwt_audience: Optional[str] = Field(default=None, validation_alias="JWT_AUDIENCE")
    jwt_expire_minutes: int = Field(default=60, validation_alias="JWT_EXPIRE_MINUTES")

    redis_url: Optional[str] = Field(default=None, validation_alias="REDIS_URL")

    hide_conversation_existence: bool = Field(default=False, validation_alias="HIDE_CONVERSATION_EXISTENCE")
    summary_repair_grace_seconds: int = Field(default=30, ge=0, validation_alias="SUMMARY_REPAIR_GRACE_SECONDS")
    message_preview_chars: int = Field(default=200, ge=1, validation_alias="MESSAGE_PREVIEW_CHARS")
    max_message_chars: int = Field(default=5000, ge=1, validation_alias="MAX_MESSAGE_CHARS")

    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")
    log_format: str = Field(
        default="%(asctime)s %(levelname)s [%(request_id)s] %(name)s: %(message)s",
        validation_alias="LOG_FORMAT",
    )

    host: str = Field(default="0.0.0.0", validation_alias="HOST")
    port: int = Field(default=8000, validation_alias="PORT")
    reload: bool = Field(default=False, validation_alias="RELOAD")

    api_prefix: str = Field(default="", validation_alias="API_PREFIX")
    cors_origins: str = Field(default="*", validation_alias="CORS_ORIGINS")

    @computed_field
    @property
    def cors_origin_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
