from pathlib import Path

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Get the directory where this config.py file is located
_config_dir = Path(__file__).parent
_env_file = _config_dir.parent / ".env"  # services/core/.env


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=str(_env_file),
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Server (health surface)
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"

    # Storage
    sqlite_path: str = "data/trades.db"

    # Feed
    binance_ws_url: str = "wss://stream.binance.com:9443/stream"
    binance_symbols: str = "btcusdt,ethusdt"  # comma-separated, any case

    # Batching
    batch_size: int = Field(default=100, ge=1, le=1000)
    batch_timeout: float = Field(default=1.0, gt=0)  # seconds

    # Reconnect policy (seconds)
    reconnect_delay: float = Field(default=1.0, ge=0.1)
    max_reconnect_delay: float = 30.0
    backoff_multiplier: float = Field(default=2.0, ge=1.0)
    max_reconnect_attempts: int = Field(default=10, ge=1)

    # Liveness window: max silence on an open socket before forcing a reconnect
    liveness_timeout: float = Field(default=30.0, gt=0)
    open_timeout: float = Field(default=10.0, gt=0)

    # Bound on the final flush during shutdown
    shutdown_timeout: float = Field(default=5.0, gt=0)

    @field_validator("binance_symbols")
    @classmethod
    def _symbols_not_empty(cls, v: str) -> str:
        if not [s for s in v.split(",") if s.strip()]:
            raise ValueError("At least one trading symbol must be configured")
        return v

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level

    @model_validator(mode="after")
    def _delay_bounds(self) -> "Settings":
        if self.max_reconnect_delay < self.reconnect_delay:
            raise ValueError("max_reconnect_delay must be >= reconnect_delay")
        return self

    def get_symbols(self) -> list[str]:
        """Get Binance symbols (lowercase, de-duplicated, in configured order)."""
        return list(dict.fromkeys(s.strip().lower() for s in self.binance_symbols.split(",") if s.strip()))


def get_settings() -> Settings:
    return Settings()
