from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    port: int = 8081
    database_url: str = ""
    redis_url: str = ""
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    cache_enabled: bool = True
    storage_backend: Literal["postgres", "memory"] = "postgres"
    log_level: str = "info"
    environment: str = "development"
    cors_origins: str = "*"

    postgres_user: str = "clipvote"
    postgres_password: str = "password"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "clipvote"
    postgres_sslmode: str = "prefer"

    # Per-voter fixed window
    rate_limit_votes: int = Field(default=30, ge=1, le=10_000)
    rate_limit_window: int = Field(default=300, ge=1, le=86_400)
    rate_limit_purge_interval: int = Field(default=900, ge=10, le=86_400)

    # Abuse heuristics
    flag_min_votes: int = Field(default=10, ge=1, le=100_000)
    flag_downvote_ratio: float = Field(default=0.9, gt=0.0, le=1.0)
    flag_votes_per_hour: int = Field(default=50, ge=1, le=100_000)
    flag_new_account_seconds: int = Field(default=3600, ge=0, le=30 * 86_400)
    flag_new_account_min_votes: int = Field(default=10, ge=1, le=100_000)

    settings_cache_ttl: float = Field(default=30.0, ge=0.0, le=3600.0)
    settings_failure_policy: Literal["open", "closed"] = "open"
    rate_limit_failure_policy: Literal["open", "closed"] = "open"
    suspension_check_failure_policy: Literal["open", "closed"] = "open"

    admin_key: str = ""
    bot_key: str = ""
    identity_secret: str = ""

    model_config = {"env_file": ".env"}

    @staticmethod
    def _read_secret(secret_name: str, fallback: str) -> str:
        secret_path = Path(f"/run/secrets/{secret_name}")
        if secret_path.is_file():
            return secret_path.read_text().strip()
        return fallback

    def model_post_init(self, __context: object) -> None:
        if not self.database_url:
            password = self._read_secret("postgres_password", self.postgres_password)
            self.database_url = (
                f"postgres://{self.postgres_user}:{password}"
                f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
                f"?sslmode={self.postgres_sslmode}"
            )

        if not self.redis_url and self.cache_enabled:
            redis_pw = self._read_secret("redis_password", self.redis_password)
            if redis_pw:
                self.redis_url = f"redis://:{redis_pw}@{self.redis_host}:{self.redis_port}"
            else:
                self.redis_url = f"redis://{self.redis_host}:{self.redis_port}"

        self.admin_key = self._read_secret("admin_key", self.admin_key)
        self.bot_key = self._read_secret("bot_key", self.bot_key)
        self.identity_secret = self._read_secret("identity_secret", self.identity_secret)


settings = Settings()
