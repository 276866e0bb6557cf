from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[3]

DEFAULT_HOME_DIR = Path.home() / ".switchboard"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="SWITCHBOARD_",
        env_file=(BASE_DIR / ".env", BASE_DIR / ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    home_dir: Path = DEFAULT_HOME_DIR
    # Derived from home_dir when unset.
    accounts_dir: Path | None = None
    routing_config_path: Path | None = None

    # Account selection policy. These are tuning knobs, not protocol constants.
    sticky_window_seconds: float = Field(default=60.0, ge=0)
    token_refresh_skew_seconds: float = Field(default=5 * 60.0, ge=0)
    optimistic_reset_threshold_ms: int = Field(default=2_000, ge=0)
    optimistic_reset_wait_ms: int = Field(default=500, ge=0)
    refresh_failure_backoff_ms: int = Field(default=60_000, gt=0)
    reset_time_buffer_ms: int = Field(default=2_000, ge=0)
    quota_validation_enabled: bool = True

    oauth_token_url: str = "https://oauth2.googleapis.com/token"
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    token_refresh_timeout_seconds: float = 30.0
    quota_base_url: str = "https://cloudcode-pa.googleapis.com/v1internal"
    quota_fetch_timeout_seconds: float = 10.0
    quota_fetch_max_retries: int = Field(default=1, ge=0)
    model_sync_ttl_seconds: float = Field(default=60.0, ge=0)
    model_sync_timeout_seconds: float = Field(default=0.8, gt=0)

    http_client_connector_limit: int = Field(default=100, gt=0)
    http_client_connector_limit_per_host: int = Field(default=20, gt=0)
    http_client_keepalive_timeout_seconds: float = Field(default=15.0, gt=0)

    startup_log_config: bool = False
    startup_log_env: bool = False
    access_log_enabled: bool = False
    debug_routing_logs: bool = False

    @field_validator("home_dir", "accounts_dir", "routing_config_path", mode="before")
    @classmethod
    def _expand_paths(cls, value: str | Path | None) -> Path | None:
        if value is None or value == "":
            return None
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("path settings must be strings or paths")

    @model_validator(mode="after")
    def _derive_paths(self) -> Settings:
        if self.accounts_dir is None:
            self.accounts_dir = self.home_dir / "accounts"
        if self.routing_config_path is None:
            self.routing_config_path = self.home_dir / "routing.json"
        return self


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
